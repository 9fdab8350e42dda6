"""
Data Models for the Event Check-in Scanner

This module contains the data model classes that represent the core entities
of the check-in system: local participant records, remote registration
documents, scanned QR payloads and bulk transfer chunks. These classes use
dataclasses for clean, type-safe data representation.
"""

import json
import re
from dataclasses import dataclass, asdict, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Asia/Kolkata"

OTHER_OPTION = "Other"


def compact_event_name(event_name: str) -> str:
    """Event name with all whitespace removed, as used inside identifiers"""
    return re.sub(r"\s+", "", event_name or "")


def current_timestamp(timezone: str = DEFAULT_TIMEZONE) -> str:
    """ISO-8601 timestamp in the configured local timezone"""
    return datetime.now(ZoneInfo(timezone)).isoformat()


@dataclass
class EventPolicy:
    """Event configuration shared by the scanner components"""
    paid_events: List[str] = field(default_factory=list)

    def is_paid(self, event_name: str) -> bool:
        return event_name in self.paid_events


class Source(Enum):
    """Where a participant record was created"""
    WEB = "WEB"
    ONSPOT = "ONSPOT"


@dataclass
class Participant:
    """
    Local participant record

    One record exists per (uid, event_id) pair. WEB records come from the
    remote directory (or a payload vouched for by it); ONSPOT records were
    created at a registration desk and stay unsynced until pushed.
    payment_override marks an admission granted without payment
    verification.
    """
    uid: str
    event_id: str
    name: str = ""
    phone: str = ""
    email: str = ""
    college: str = ""
    college_other: str = ""
    degree: str = ""
    degree_other: str = ""
    department: str = ""
    department_other: str = ""
    year: str = ""
    source: Source = Source.WEB
    sync_status: bool = True
    payment_verified: bool = False
    participated: bool = False
    checked_in: bool = False
    payment_override: bool = False
    checkin_time: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.uid, self.event_id)

    @classmethod
    def from_dict(cls, data: Dict) -> 'Participant':
        """
        Create Participant instance from stored dictionary data

        Args:
            data: Dictionary produced by to_dict()

        Returns:
            Participant instance
        """
        values = dict(data)
        values['source'] = Source(values.get('source', Source.WEB.value))
        for flag in ('sync_status', 'payment_verified', 'participated', 'checked_in', 'payment_override'):
            values[flag] = bool(values.get(flag, False))
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in values.items() if k in known})

    def to_dict(self) -> Dict:
        """
        Convert participant to dictionary for JSON serialization

        Returns:
            Dictionary representation of the participant
        """
        data = asdict(self)
        data['source'] = self.source.value
        return data


@dataclass
class Payment:
    """A payment entry of a remote registration"""
    event_names: List[str]
    verified: bool = False
    amount: Optional[float] = None
    id: Optional[str] = None
    method: Optional[str] = None

    def covers(self, event_name: str) -> bool:
        """True if this is a verified payment for the given event"""
        return self.verified and event_name in self.event_names

    @classmethod
    def from_dict(cls, data: Dict) -> 'Payment':
        names = data.get('eventNames') or []
        return cls(
            event_names=[str(name) for name in names] if isinstance(names, list) else [],
            verified=data.get('verified') is True,
            amount=data.get('amount'),
            id=data.get('id'),
            method=data.get('method'),
        )

    def to_dict(self) -> Dict:
        data = {'eventNames': list(self.event_names), 'verified': self.verified}
        if self.amount is not None:
            data['amount'] = self.amount
        if self.id is not None:
            data['id'] = self.id
        if self.method is not None:
            data['method'] = self.method
        return data


def has_verified_payment(payments: List[Payment], event_name: str) -> bool:
    """Any single verified payment naming the event is sufficient"""
    return any(payment.covers(event_name) for payment in payments)


@dataclass
class RemoteRegistration:
    """
    Registration document held by the remote directory

    One document per person, listing every event they registered for
    and every payment made.
    """
    uid: str
    name: str = ""
    email: str = ""
    phone: str = ""
    college: str = ""
    degree: str = ""
    department: str = ""
    year: str = ""
    events: List[str] = field(default_factory=list)
    payments: List[Payment] = field(default_factory=list)

    def is_registered_for(self, event_name: str) -> bool:
        return event_name in self.events

    def has_verified_payment(self, event_name: str) -> bool:
        return has_verified_payment(self.payments, event_name)

    def to_participant(self, uid: str, event_id: str) -> Participant:
        """
        Synthesize a local WEB record for one of this person's events

        Args:
            uid: Local identifier to store the record under
            event_id: Event the record applies to

        Returns:
            Participant marked as already synced
        """
        return Participant(
            uid=uid,
            event_id=event_id,
            name=self.name or "Unknown",
            phone=self.phone,
            email=self.email,
            college=self.college,
            degree=self.degree,
            department=self.department,
            year=self.year,
            source=Source.WEB,
            sync_status=True,
            payment_verified=self.has_verified_payment(event_id),
        )


@dataclass
class PaymentStatus:
    """Result of a remote payment check"""
    is_paid: bool
    verified: bool


class PayloadKind(Enum):
    """Interpretation of a scanned QR payload, decided once at decode time"""
    STRUCTURED = "structured"
    LEGACY = "legacy"
    BARE = "bare"


PROFILE_FIELDS = ('email', 'phone', 'college', 'dept', 'year')


@dataclass
class ScanPayload:
    """
    A decoded QR payload

    STRUCTURED payloads carry a full identity record. LEGACY payloads are
    structured records from the single-event era that carry a bare
    transactionId instead of a payments list. BARE payloads are plain
    identifiers (anything that is not a JSON object with uid and name).
    """
    kind: PayloadKind
    uid: str
    name: str = ""
    profile: Dict[str, str] = field(default_factory=dict)
    events: List[str] = field(default_factory=list)
    payments: List[Payment] = field(default_factory=list)
    transaction_id: Optional[str] = None

    @classmethod
    def decode(cls, raw: str) -> 'ScanPayload':
        """
        Decode scanned text into a tagged payload

        Decode failures are not errors: the trimmed text becomes a
        bare identifier.

        Args:
            raw: Text emitted by the camera collaborator

        Returns:
            ScanPayload instance
        """
        text = (raw or "").strip()
        try:
            data = json.loads(text)
        except ValueError:
            data = None

        if not isinstance(data, dict) or not _non_empty_str(data.get('uid')) \
                or not _non_empty_str(data.get('name')):
            return cls(kind=PayloadKind.BARE, uid=text)

        events = data.get('events')
        payments = data.get('payments')
        transaction_id = data.get('transactionId')
        kind = PayloadKind.STRUCTURED
        if _non_empty_str(transaction_id) and not isinstance(payments, list):
            kind = PayloadKind.LEGACY

        return cls(
            kind=kind,
            uid=data['uid'].strip(),
            name=data['name'].strip(),
            profile={
                key: str(data[key]) for key in PROFILE_FIELDS
                if data.get(key) not in (None, "")
            },
            events=[str(e) for e in events] if isinstance(events, list) else [],
            payments=[
                Payment.from_dict(p) for p in payments if isinstance(p, dict)
            ] if isinstance(payments, list) else [],
            transaction_id=transaction_id if _non_empty_str(transaction_id) else None,
        )

    @property
    def is_structured(self) -> bool:
        return self.kind != PayloadKind.BARE

    def proves_payment_for(self, event_name: str) -> bool:
        """
        Payload-level proof of payment for one event

        The legacy branch accepts a bare transactionId on a payload listing
        exactly this one event. It is weaker than the payments check and is
        kept only for QR codes issued before payments were itemised.
        """
        if has_verified_payment(self.payments, event_name):
            return True
        return (
            self.kind == PayloadKind.LEGACY
            and self.events == [event_name]
            and bool(self.transaction_id)
        )

    def prefill(self) -> Dict[str, str]:
        """Profile fields for pre-filling a registration form"""
        data = {'uid': self.uid, 'name': self.name}
        data.update(self.profile)
        return data

    def to_participant(self, event_id: str, payment_verified: bool) -> Participant:
        return Participant(
            uid=self.uid,
            event_id=event_id,
            name=self.name,
            phone=self.profile.get('phone', ""),
            email=self.profile.get('email', ""),
            college=self.profile.get('college', ""),
            department=self.profile.get('dept', ""),
            year=self.profile.get('year', ""),
            source=Source.WEB,
            sync_status=True,
            payment_verified=payment_verified,
        )


def _non_empty_str(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


@dataclass
class TransferChunk:
    """One part of a bulk e-mail transfer"""
    part: int
    total: int
    event: str
    timestamp: str
    emails: List[str]

    @property
    def session_key(self) -> tuple:
        return (self.event, self.timestamp)

    def to_dict(self) -> Dict:
        return {
            'part': self.part,
            'total': self.total,
            'event': self.event,
            'timestamp': self.timestamp,
            'emails': list(self.emails),
        }

    def encode(self) -> str:
        """Compact JSON text, ready for the QR collaborator to rasterize"""
        return json.dumps(self.to_dict(), separators=(',', ':'))
