"""
Event Check-in Scanner Package

Offline-capable participant verification for event entrances. Staff scan
participants' QR codes; the scanner checks registration, payment and prior
attendance against a device-local store, consults the remote registration
directory when it can, and keeps the two in sync.

Main Components:
- models: Participant records, remote registrations, scan payloads, transfer chunks
- repositories: Local participant store (Redis, in-memory)
- directory: Remote registration directory (Google Sheets, in-memory)
- services: Verification engine and on-spot registration
- transfer: Multi-QR export/import of participant e-mails
- sync: Pull/push reconciliation with the remote directory
- exceptions: Custom exception classes for error handling
- app: Flask JSON API

Usage:
    from checkin_scanner import create_app

    app = create_app()
    app.run()
"""

__version__ = "1.0.0"

from .app import create_app, create_development_app, create_production_app
from .models import EventPolicy, Participant, RemoteRegistration, ScanPayload, Source
from .repositories import InMemoryParticipantStore, RedisParticipantStore, StoreFactory
from .directory import GoogleSheetsDirectory, InMemoryDirectory
from .services import Decision, RegistrationService, VerificationService
from .transfer import BulkTransferCodec
from .sync import SyncService
from .exceptions import (
    CheckInException,
    ParticipantNotFoundException,
    DataValidationException,
    RemoteDirectoryUnavailable,
    InvalidChunkException,
    EventMismatchException,
    DuplicateChunkException,
    InvalidActionException,
    SyncInProgressException,
)

__all__ = [
    # App factory functions
    'create_app',
    'create_development_app',
    'create_production_app',

    # Data models
    'EventPolicy',
    'Participant',
    'RemoteRegistration',
    'ScanPayload',
    'Source',

    # Stores and directories
    'InMemoryParticipantStore',
    'RedisParticipantStore',
    'StoreFactory',
    'GoogleSheetsDirectory',
    'InMemoryDirectory',

    # Services
    'Decision',
    'RegistrationService',
    'VerificationService',
    'BulkTransferCodec',
    'SyncService',

    # Exceptions
    'CheckInException',
    'ParticipantNotFoundException',
    'DataValidationException',
    'RemoteDirectoryUnavailable',
    'InvalidChunkException',
    'EventMismatchException',
    'DuplicateChunkException',
    'InvalidActionException',
    'SyncInProgressException',
]
