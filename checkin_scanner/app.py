"""
Main Application Module for the Event Check-in Scanner

This module contains the Flask application class that wires the local
store, the remote directory and the services together and exposes them as
a JSON API to the scanning client.
"""

import json
import logging
import os
from datetime import timedelta
from typing import Optional

from flask import Flask, jsonify, request, session

from .directory import GoogleSheetsDirectory, InMemoryDirectory, RemoteDirectory
from .exceptions import (
    CheckInException,
    DataValidationException,
    DuplicateChunkException,
    EventMismatchException,
    InvalidActionException,
    InvalidChunkException,
    ParticipantNotFoundException,
    RemoteDirectoryUnavailable,
    SyncInProgressException,
)
from .logging_setup import setup_logging
from .models import EventPolicy
from .repositories import ParticipantStore, StoreFactory
from .services import RegistrationService, VerificationService
from .sync import SyncService
from .transfer import BulkTransferCodec

logger = logging.getLogger(__name__)

DEFAULT_PAID_EVENTS = "Paper Presentation,FinTech 360°,WealthX"


def default_config() -> dict:
    """Configuration defaults, read from the environment"""
    return {
        'SECRET_KEY': os.environ.get("FLASK_SECRET_KEY", "dev-secret-key"),
        'PERMANENT_SESSION_LIFETIME': timedelta(days=1),
        'DEBUG': os.environ.get("DEBUG_MODE", "False") == "True",
        'STORE_BACKEND': os.environ.get("STORE_BACKEND", "redis"),
        'REDIS_HOST': os.environ.get("REDIS_HOST", "localhost"),
        'REDIS_PORT': int(os.environ.get("REDIS_PORT", 6379)),
        'REDIS_DB': int(os.environ.get("REDIS_DB", 0)),
        'REDIS_NAMESPACE': os.environ.get("REDIS_NAMESPACE", "checkin"),
        'DIRECTORY_BACKEND': os.environ.get("DIRECTORY_BACKEND", "sheets"),
        'GOOGLE_SERVICE_ACCOUNT_JSON': os.environ.get("GOOGLE_SERVICE_ACCOUNT_JSON"),
        'REGISTRATIONS_SPREADSHEET': os.environ.get("REGISTRATIONS_SPREADSHEET", "Registrations"),
        'PARTICIPANTS_SPREADSHEET': os.environ.get("PARTICIPANTS_SPREADSHEET", "Event_Participants"),
        'PAID_EVENTS': [
            name.strip() for name in os.environ.get("PAID_EVENTS", DEFAULT_PAID_EVENTS).split(",")
            if name.strip()
        ],
        'CURRENT_EVENT': os.environ.get("CURRENT_EVENT"),
        'TIMEZONE': os.environ.get("TIMEZONE", "Asia/Kolkata"),
        'LOG_LEVEL': os.environ.get("LOG_LEVEL", "INFO"),
        'LOG_FILE': os.environ.get("LOG_FILE"),
        'CONFIGURE_LOGGING': True,
    }


class CheckInScannerApp:
    """
    Main Flask application class for the check-in scanner

    This class orchestrates all services and handles the JSON API used by
    the scanning client.
    """

    def __init__(self, config: Optional[dict] = None,
                 store: Optional[ParticipantStore] = None,
                 directory: Optional[RemoteDirectory] = None):
        """
        Initialize the check-in scanner application

        Args:
            config: Optional configuration dictionary
            store: Optional pre-built local store (overrides STORE_BACKEND)
            directory: Optional pre-built remote directory
        """
        self.app = Flask(__name__)
        self.config = self._configure_app(config)

        if self.config['CONFIGURE_LOGGING']:
            setup_logging(self.config['LOG_LEVEL'], self.config['LOG_FILE'])

        self.policy = EventPolicy(paid_events=list(self.config['PAID_EVENTS']))
        self.store = store or self._create_store()
        self.directory = directory or self._create_directory()

        self.verification_service = VerificationService(self.store, self.directory, self.policy)
        self.registration_service = RegistrationService(self.store, self.policy)
        self.transfer_codec = BulkTransferCodec(self.store, timezone=self.config['TIMEZONE'])
        self.sync_service = SyncService(self.store, self.directory)

        self._register_routes()
        self._register_error_handlers()

    def _configure_app(self, config: Optional[dict] = None) -> dict:
        """
        Configure Flask application settings

        Args:
            config: Optional configuration dictionary
        """
        settings = default_config()
        if config:
            settings.update(config)

        self.app.secret_key = settings['SECRET_KEY']
        self.app.permanent_session_lifetime = settings['PERMANENT_SESSION_LIFETIME']
        self.app.config['DEBUG'] = settings['DEBUG']
        return settings

    def _create_store(self) -> ParticipantStore:
        return StoreFactory.create_store(
            self.config['STORE_BACKEND'],
            host=self.config['REDIS_HOST'],
            port=self.config['REDIS_PORT'],
            db=self.config['REDIS_DB'],
            namespace=self.config['REDIS_NAMESPACE'],
            timezone=self.config['TIMEZONE'],
        )

    def _create_directory(self) -> RemoteDirectory:
        backend = self.config['DIRECTORY_BACKEND'].lower()
        if backend == 'memory':
            return InMemoryDirectory(self.policy)
        if backend == 'sheets':
            raw_info = self.config['GOOGLE_SERVICE_ACCOUNT_JSON']
            if not raw_info:
                raise ValueError("GOOGLE_SERVICE_ACCOUNT_JSON is required for the sheets directory")
            return GoogleSheetsDirectory.from_service_account_info(
                json.loads(raw_info),
                self.policy,
                registrations_spreadsheet=self.config['REGISTRATIONS_SPREADSHEET'],
                participants_spreadsheet=self.config['PARTICIPANTS_SPREADSHEET'],
            )
        raise ValueError(f"Unsupported directory backend: {backend}")

    def _register_routes(self) -> None:
        """Register all Flask routes"""
        self.app.add_url_rule("/health", "health", self.health)
        self.app.add_url_rule("/event", "set_event", self.set_event, methods=["POST"])

        self.app.add_url_rule("/scan", "scan", self.scan, methods=["POST"])
        self.app.add_url_rule("/scan/confirm", "confirm", self.confirm, methods=["POST"])
        self.app.add_url_rule("/scan/payment", "confirm_payment", self.confirm_payment, methods=["POST"])
        self.app.add_url_rule("/scan/cancel", "cancel", self.cancel, methods=["POST"])

        self.app.add_url_rule("/register", "register", self.register, methods=["POST"])
        self.app.add_url_rule("/participants", "participants", self.participants, methods=["GET"])
        self.app.add_url_rule("/participants", "clear_participants", self.clear_participants,
                              methods=["DELETE"])
        self.app.add_url_rule("/participants/recent", "recent_participants", self.recent_participants)
        self.app.add_url_rule("/participants/<uid>", "participant", self.participant)

        self.app.add_url_rule("/export", "export", self.export)
        self.app.add_url_rule("/import", "import_chunk", self.import_chunk, methods=["POST"])
        self.app.add_url_rule("/import", "clear_import", self.clear_import, methods=["DELETE"])
        self.app.add_url_rule("/import/progress", "import_progress", self.import_progress)

        self.app.add_url_rule("/sync/pull", "sync_pull", self.sync_pull, methods=["POST"])
        self.app.add_url_rule("/sync/push", "sync_push", self.sync_push, methods=["POST"])
        self.app.add_url_rule("/sync/initial", "sync_initial", self.sync_initial, methods=["POST"])

    def _register_error_handlers(self) -> None:
        """Register error handlers for custom exceptions"""

        def error_response(e: CheckInException, status: int):
            return jsonify({"error": e.message, "error_code": e.error_code}), status

        @self.app.errorhandler(ParticipantNotFoundException)
        def handle_not_found(e):
            return error_response(e, 404)

        @self.app.errorhandler(DataValidationException)
        @self.app.errorhandler(InvalidChunkException)
        @self.app.errorhandler(EventMismatchException)
        def handle_bad_request(e):
            return error_response(e, 400)

        @self.app.errorhandler(DuplicateChunkException)
        @self.app.errorhandler(InvalidActionException)
        @self.app.errorhandler(SyncInProgressException)
        def handle_conflict(e):
            return error_response(e, 409)

        @self.app.errorhandler(RemoteDirectoryUnavailable)
        def handle_remote_unavailable(e):
            return error_response(e, 503)

        @self.app.errorhandler(CheckInException)
        def handle_checkin_exception(e):
            logger.error("Unhandled application error: %s", e)
            return error_response(e, 500)

    def _current_event(self) -> str:
        """
        Event the operator is working on

        Raises:
            DataValidationException: If no event has been selected
        """
        event = session.get("event") or self.config.get('CURRENT_EVENT')
        if not event:
            raise DataValidationException("event", "No event selected")
        return event

    @staticmethod
    def _json_body() -> dict:
        body = request.get_json(silent=True)
        return body if isinstance(body, dict) else {}

    def health(self):
        return jsonify({
            "status": "ok",
            "event": session.get("event") or self.config.get('CURRENT_EVENT'),
            "scanner_busy": self.verification_service.busy,
            "unsynced_on_spot": len(self.store.unsynced_on_spot()),
        })

    def set_event(self):
        """Select the event this operator is admitting people to"""
        event = str(self._json_body().get("event") or "").strip()
        if not event:
            raise DataValidationException("event", "Please select an event")
        session.permanent = True
        session["event"] = event
        return jsonify({"event": event, "paid": self.policy.is_paid(event)})

    def scan(self):
        """Verify one scanned QR payload"""
        payload = self._json_body().get("payload")
        if not isinstance(payload, str):
            raise DataValidationException("payload", "Scanned text is required")
        outcome = self.verification_service.scan(payload, self._current_event())
        return jsonify(outcome.to_dict())

    def confirm(self):
        return jsonify(self.verification_service.confirm().to_dict())

    def confirm_payment(self):
        amount = self._json_body().get("amount")
        return jsonify(self.verification_service.confirm_payment(amount).to_dict())

    def cancel(self):
        return jsonify(self.verification_service.cancel().to_dict())

    def register(self):
        """On-spot registration at the desk"""
        form = self._json_body()
        participant, credential = self.registration_service.register(
            form, self._current_event(), prefilled_uid=form.get("uid") or None,
        )
        return jsonify({"participant": participant.to_dict(), "qr_payload": credential}), 201

    def participants(self):
        event = request.args.get("event")
        records = self.store.records_for_event(event) if event else self.store.all_records()
        return jsonify({"participants": [p.to_dict() for p in records], "count": len(records)})

    def participant(self, uid: str):
        """Local records of one identity, optionally limited to ?event="""
        records = self.store.find_or_raise(uid, request.args.get("event"))
        return jsonify({"participants": [p.to_dict() for p in records]})

    def recent_participants(self):
        limit = request.args.get("limit", default=50, type=int)
        records = self.store.recent_on_spot(limit)
        return jsonify({"participants": [p.to_dict() for p in records]})

    def clear_participants(self):
        return jsonify({"cleared": self.store.clear_all()})

    def export(self):
        result = self.transfer_codec.export_emails(self._current_event())
        data = result.to_dict()
        data["summary"] = self.transfer_codec.export_summary()
        return jsonify(data)

    def import_chunk(self):
        payload = self._json_body().get("payload")
        if not isinstance(payload, str):
            raise DataValidationException("payload", "Scanned text is required")
        result = self.transfer_codec.import_chunk(payload, self._current_event())
        return jsonify(result.to_dict())

    def import_progress(self):
        timestamp = request.args.get("timestamp", "")
        return jsonify(self.transfer_codec.progress(self._current_event(), timestamp))

    def clear_import(self):
        return jsonify({"cleared_sessions": self.transfer_codec.clear()})

    def sync_pull(self):
        return jsonify({"created": self.sync_service.pull()})

    def sync_push(self):
        return jsonify({"pushed": self.sync_service.push()})

    def sync_initial(self):
        force = bool(self._json_body().get("force"))
        if force:
            ran = self.sync_service.force_initial_import()
        else:
            ran = self.sync_service.run_initial_import()
        return jsonify({"ran": ran})

    def run(self, host: str = '127.0.0.1', port: int = 5000, debug: bool = None) -> None:
        """
        Run the Flask application

        Args:
            host: Host address to bind to
            port: Port number to listen on
            debug: Debug mode (overrides config if provided)
        """
        if debug is not None:
            self.app.config['DEBUG'] = debug

        self.app.run(host=host, port=port, debug=self.app.config['DEBUG'])


def create_app(config: Optional[dict] = None, **kwargs) -> CheckInScannerApp:
    """
    Factory function to create and configure the application

    Args:
        config: Optional configuration dictionary
        **kwargs: Optional pre-built store / directory

    Returns:
        Configured CheckInScannerApp instance
    """
    return CheckInScannerApp(config, **kwargs)


def create_development_app() -> CheckInScannerApp:
    """
    Create application configured for development

    Uses in-memory store and directory so no services are required.
    """
    dev_config = {
        'DEBUG': True,
        'STORE_BACKEND': 'memory',
        'DIRECTORY_BACKEND': 'memory',
        'LOG_LEVEL': 'DEBUG',
    }
    return create_app(dev_config)


def create_production_app() -> CheckInScannerApp:
    """Create application configured for production"""
    return create_app({'DEBUG': False})


if __name__ == "__main__":
    create_development_app().run(debug=True)
