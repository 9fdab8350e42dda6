"""
Custom Exceptions for the Event Check-in Scanner

This module defines custom exception classes that provide specific
error handling for the failure scenarios of scanning, transfer and sync.
"""


class CheckInException(Exception):
    """
    Base exception for the check-in scanner

    All custom exceptions in the system inherit from this base class
    for consistent error handling.
    """

    def __init__(self, message: str, error_code: str = None):
        """
        Initialize check-in exception

        Args:
            message: Human-readable error message
            error_code: Optional error code for programmatic handling
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code

    def __str__(self) -> str:
        """String representation of the exception"""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class ParticipantNotFoundException(CheckInException):
    """
    Raised when a participant is not found in the local store

    Used by lookups that must find a record; the verification engine
    reports missing registrations as a rejected outcome instead.
    """

    def __init__(self, uid: str, event_id: str = None):
        """
        Initialize participant not found exception

        Args:
            uid: The identifier that was not found
            event_id: Optional event the lookup was scoped to
        """
        if event_id:
            message = f"Participant '{uid}' not found for event '{event_id}'"
        else:
            message = f"Participant '{uid}' not found"
        super().__init__(message, "PARTICIPANT_NOT_FOUND")
        self.uid = uid
        self.event_id = event_id


class DataValidationException(CheckInException):
    """
    Raised when data validation fails

    This exception is thrown when input data doesn't meet
    the required validation criteria.
    """

    def __init__(self, field_name: str, validation_error: str):
        """
        Initialize data validation exception

        Args:
            field_name: Name of the field that failed validation
            validation_error: Description of the validation error
        """
        message = f"Validation error in field '{field_name}': {validation_error}"
        super().__init__(message, "VALIDATION_ERROR")
        self.field_name = field_name
        self.validation_error = validation_error


class RemoteDirectoryUnavailable(CheckInException):
    """
    Raised when the remote directory cannot be reached

    Callers must treat this as "unknown", never as a negative answer.
    """

    def __init__(self, operation: str, details: str):
        """
        Initialize remote directory unavailable exception

        Args:
            operation: The remote operation that failed
            details: Detailed error information
        """
        message = f"Remote directory unavailable during {operation}: {details}"
        super().__init__(message, "REMOTE_UNAVAILABLE")
        self.operation = operation
        self.details = details


class TransferException(CheckInException):
    """Base class for bulk transfer import failures"""


class InvalidChunkException(TransferException):
    """Raised when a scanned transfer chunk is malformed"""

    def __init__(self, reason: str):
        super().__init__(f"Invalid QR code format: {reason}", "INVALID_CHUNK")
        self.reason = reason


class EventMismatchException(TransferException):
    """Raised when a transfer chunk belongs to another event"""

    def __init__(self, chunk_event: str, current_event: str):
        message = (
            f'QR code is for event "{chunk_event}" '
            f'but current event is "{current_event}"'
        )
        super().__init__(message, "EVENT_MISMATCH")
        self.chunk_event = chunk_event
        self.current_event = current_event


class DuplicateChunkException(TransferException):
    """
    Raised when a part of a transfer session is scanned twice

    Kept distinct from an invalid chunk so the operator can tell
    "already imported" apart from "unreadable".
    """

    def __init__(self, part: int):
        super().__init__(f"Part {part} already imported", "DUPLICATE_CHUNK")
        self.part = part


class InvalidActionException(CheckInException):
    """
    Raised when an operator action is not offered by the pending scan

    For example confirming entry when no scan awaits confirmation.
    """

    def __init__(self, action: str, reason: str):
        """
        Initialize invalid action exception

        Args:
            action: The operator action that was attempted
            reason: Why the action cannot be applied
        """
        message = f"Cannot {action}: {reason}"
        super().__init__(message, "INVALID_ACTION")
        self.action = action
        self.reason = reason


class SyncInProgressException(CheckInException):
    """Raised when a push is requested while another push is running"""

    def __init__(self):
        super().__init__("A push to the remote directory is already running", "SYNC_IN_PROGRESS")
