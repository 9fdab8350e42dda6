"""
Remote Directory Clients for the Event Check-in Scanner

The remote directory is the authoritative system of record for web
registrations and payments. It is reached over the network, so every call
may fail; failures surface as RemoteDirectoryUnavailable and callers treat
them as "unknown", never as a negative answer.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import google.auth.exceptions
import gspread
import requests
from google.oauth2.service_account import Credentials
from gspread.utils import rowcol_to_a1

from .exceptions import RemoteDirectoryUnavailable
from .models import (
    EventPolicy,
    Participant,
    Payment,
    PaymentStatus,
    RemoteRegistration,
    compact_event_name,
)

logger = logging.getLogger(__name__)

SCOPE = ["https://www.googleapis.com/auth/spreadsheets", "https://www.googleapis.com/auth/drive"]

REGISTRATION_COLUMNS = [
    "UID", "Name", "Email", "Phone", "College", "Degree", "Department", "Year", "Events", "Payments",
]
PARTICIPANT_COLUMNS = [
    "Event", "UID", "Name", "Phone", "Email", "Checked_In", "Checkin_Time", "Source",
]


def on_spot_payment_id(uid: str, event_name: str) -> str:
    """Deterministic id so repeated cash confirmations write one payment"""
    return f"onspot_{uid}_{compact_event_name(event_name)}"


def participant_mirror(participant: Participant) -> Dict:
    """Check-in mirror stored at events/{event_id}/participants/{uid}"""
    return {
        'name': participant.name,
        'phone': participant.phone,
        'email': participant.email,
        'checkedIn': participant.checked_in,
        'checkinTime': participant.checkin_time,
        'source': participant.source.value,
    }


class RemoteDirectory(ABC):
    """
    Abstract base class for remote directory clients

    Backends implement document access; the payment policy shared by all
    backends lives here.
    """

    def __init__(self, policy: EventPolicy):
        self.policy = policy

    @abstractmethod
    def get_registration(self, uid: str) -> Optional[RemoteRegistration]:
        """
        Fetch one registration document

        Raises:
            RemoteDirectoryUnavailable: If the directory cannot be reached
        """

    @abstractmethod
    def list_registrations(self) -> List[RemoteRegistration]:
        """Enumerate every registration document"""

    @abstractmethod
    def push_participants(self, participants: List[Participant]) -> None:
        """
        Write or overwrite the check-in mirror of each participant

        The whole list is one batch: on failure the caller must assume
        nothing was committed. Re-pushing the same records is harmless.

        Raises:
            RemoteDirectoryUnavailable: If the batch could not be committed
        """

    @abstractmethod
    def _record_payment(self, uid: str, event_name: str, payment: Payment) -> None:
        """Store a payment entry (and the event) on the uid's document"""

    def check_payment(self, uid: str, event_name: str) -> PaymentStatus:
        """
        Check whether uid has cleared payment for an event

        Free events the person registered for are trivially cleared.

        Raises:
            RemoteDirectoryUnavailable: If the directory cannot be reached
        """
        registration = self.get_registration(uid)
        if registration is None or not registration.is_registered_for(event_name):
            return PaymentStatus(is_paid=False, verified=False)
        if not self.policy.is_paid(event_name):
            return PaymentStatus(is_paid=False, verified=True)
        verified = registration.has_verified_payment(event_name)
        return PaymentStatus(is_paid=verified, verified=verified)

    def register_on_spot_payment(self, uid: str, event_name: str, amount: float) -> bool:
        """
        Record a cash payment collected at the event desk

        Idempotent: the payment id is derived from (uid, event).

        Returns:
            True if the payment is stored remotely, False if the write failed
        """
        payment = Payment(
            event_names=[event_name],
            verified=True,
            amount=amount,
            id=on_spot_payment_id(uid, event_name),
            method="CASH",
        )
        try:
            self._record_payment(uid, event_name, payment)
        except RemoteDirectoryUnavailable as e:
            logger.warning("On-spot payment for %s at %s not recorded: %s", uid, event_name, e)
            return False
        logger.info("Recorded on-spot payment of %s for %s at %s", amount, uid, event_name)
        return True


def _add_payment(registration: RemoteRegistration, event_name: str, payment: Payment) -> bool:
    """Attach payment and event to a document; False if already present"""
    if any(existing.id == payment.id for existing in registration.payments):
        return False
    registration.payments.append(payment)
    if event_name not in registration.events:
        registration.events.append(event_name)
    return True


class InMemoryDirectory(RemoteDirectory):
    """
    In-memory directory implementation for testing

    Set ``offline`` to simulate lost connectivity. Every call is appended
    to ``calls`` so tests can assert that no remote round trip happened.
    """

    def __init__(self, policy: EventPolicy, registrations: Optional[List[RemoteRegistration]] = None):
        super().__init__(policy)
        self.registrations: Dict[str, RemoteRegistration] = {
            r.uid: r for r in registrations or []
        }
        self.participants: Dict[tuple, Dict] = {}
        self.offline = False
        self.calls: List[str] = []

    def _connect(self, operation: str) -> None:
        self.calls.append(operation)
        if self.offline:
            raise RemoteDirectoryUnavailable(operation, "network is unreachable")

    def add_registration(self, registration: RemoteRegistration) -> None:
        self.registrations[registration.uid] = registration

    def get_registration(self, uid: str) -> Optional[RemoteRegistration]:
        self._connect("get_registration")
        return self.registrations.get(uid)

    def list_registrations(self) -> List[RemoteRegistration]:
        self._connect("list_registrations")
        return list(self.registrations.values())

    def push_participants(self, participants: List[Participant]) -> None:
        self._connect("push_participants")
        for participant in participants:
            self.participants[(participant.event_id, participant.uid)] = participant_mirror(participant)

    def _record_payment(self, uid: str, event_name: str, payment: Payment) -> None:
        self._connect("record_payment")
        registration = self.registrations.setdefault(uid, RemoteRegistration(uid=uid))
        _add_payment(registration, event_name, payment)


class GoogleSheetsDirectory(RemoteDirectory):
    """
    Google Sheets backed directory

    Registrations live one per row with ``Events`` and ``Payments`` cells
    holding JSON arrays. The check-in mirror is a second sheet keyed by
    (Event, UID). Worksheets are opened lazily so a device can start
    without connectivity.
    """

    def __init__(self, client: gspread.Client, policy: EventPolicy,
                 registrations_spreadsheet: str = "Registrations",
                 participants_spreadsheet: str = "Event_Participants",
                 worksheet: str = "Sheet1"):
        super().__init__(policy)
        self.client = client
        self.registrations_spreadsheet = registrations_spreadsheet
        self.participants_spreadsheet = participants_spreadsheet
        self.worksheet_name = worksheet
        self._worksheets: Dict[str, gspread.Worksheet] = {}

    @classmethod
    def from_service_account_info(cls, service_account_info: Dict, policy: EventPolicy,
                                  **kwargs) -> 'GoogleSheetsDirectory':
        creds = Credentials.from_service_account_info(service_account_info, scopes=SCOPE)
        return cls(gspread.authorize(creds), policy, **kwargs)

    def _remote_call(self, operation: str, func, *args):
        try:
            return func(*args)
        except (gspread.exceptions.GSpreadException,
                requests.exceptions.RequestException,
                google.auth.exceptions.TransportError) as e:
            logger.warning("Sheets %s failed: %s", operation, e)
            raise RemoteDirectoryUnavailable(operation, str(e)) from e

    def _sheet(self, spreadsheet: str) -> gspread.Worksheet:
        if spreadsheet not in self._worksheets:
            self._worksheets[spreadsheet] = self.client.open(spreadsheet).worksheet(self.worksheet_name)
        return self._worksheets[spreadsheet]

    def _registration_rows(self) -> List[Dict]:
        return self._sheet(self.registrations_spreadsheet).get_all_records()

    def get_registration(self, uid: str) -> Optional[RemoteRegistration]:
        rows = self._remote_call("get_registration", self._registration_rows)
        for row in rows:
            if str(row.get("UID", "")).strip() == uid:
                return registration_from_row(row)
        return None

    def list_registrations(self) -> List[RemoteRegistration]:
        rows = self._remote_call("list_registrations", self._registration_rows)
        return [registration_from_row(row) for row in rows if str(row.get("UID", "")).strip()]

    def _record_payment(self, uid: str, event_name: str, payment: Payment) -> None:
        self._remote_call("record_payment", self._write_payment, uid, event_name, payment)

    def _write_payment(self, uid: str, event_name: str, payment: Payment) -> None:
        sheet = self._sheet(self.registrations_spreadsheet)
        rows = sheet.get_all_records()
        for index, row in enumerate(rows):
            if str(row.get("UID", "")).strip() != uid:
                continue
            registration = registration_from_row(row)
            if not _add_payment(registration, event_name, payment):
                return
            row_number = index + 2
            events_col = REGISTRATION_COLUMNS.index("Events") + 1
            sheet.batch_update([{
                'range': f"{rowcol_to_a1(row_number, events_col)}:{rowcol_to_a1(row_number, events_col + 1)}",
                'values': [[
                    json.dumps(registration.events),
                    json.dumps([p.to_dict() for p in registration.payments]),
                ]],
            }])
            return

        registration = RemoteRegistration(uid=uid)
        _add_payment(registration, event_name, payment)
        sheet.append_row(registration_to_row(registration))

    def push_participants(self, participants: List[Participant]) -> None:
        self._remote_call("push_participants", self._write_participants, participants)

    def _write_participants(self, participants: List[Participant]) -> None:
        sheet = self._sheet(self.participants_spreadsheet)
        existing = {}
        for row_number, values in enumerate(sheet.get_all_values()[1:], start=2):
            if len(values) >= 2:
                existing[(values[0], values[1])] = row_number

        updates, appends = [], []
        last_col = len(PARTICIPANT_COLUMNS)
        for participant in participants:
            values = participant_to_row(participant)
            row_number = existing.get((participant.event_id, participant.uid))
            if row_number is None:
                appends.append(values)
            else:
                updates.append({
                    'range': f"{rowcol_to_a1(row_number, 1)}:{rowcol_to_a1(row_number, last_col)}",
                    'values': [values],
                })

        if updates:
            sheet.batch_update(updates)
        if appends:
            sheet.append_rows(appends)


def _json_list(cell) -> List:
    if isinstance(cell, list):
        return cell
    text = str(cell or "").strip()
    if not text:
        return []
    try:
        value = json.loads(text)
    except ValueError:
        return [item.strip() for item in text.split(",") if item.strip()]
    return value if isinstance(value, list) else []


def registration_from_row(row: Dict) -> RemoteRegistration:
    return RemoteRegistration(
        uid=str(row.get("UID", "")).strip(),
        name=str(row.get("Name", "")),
        email=str(row.get("Email", "")),
        phone=str(row.get("Phone", "")),
        college=str(row.get("College", "")),
        degree=str(row.get("Degree", "")),
        department=str(row.get("Department", "")),
        year=str(row.get("Year", "")),
        events=[str(e) for e in _json_list(row.get("Events"))],
        payments=[Payment.from_dict(p) for p in _json_list(row.get("Payments")) if isinstance(p, dict)],
    )


def registration_to_row(registration: RemoteRegistration) -> List:
    return [
        registration.uid, registration.name, registration.email, registration.phone,
        registration.college, registration.degree, registration.department, registration.year,
        json.dumps(registration.events),
        json.dumps([p.to_dict() for p in registration.payments]),
    ]


def participant_to_row(participant: Participant) -> List:
    mirror = participant_mirror(participant)
    return [
        participant.event_id,
        participant.uid,
        mirror['name'],
        mirror['phone'],
        mirror['email'],
        "TRUE" if mirror['checkedIn'] else "FALSE",
        mirror['checkinTime'] or "",
        mirror['source'],
    ]
