"""
Bulk Transfer Codec

Moves the set of participant e-mails between devices as a series of QR
codes. An export is split into parts that each fit one scannable code; an
import reassembles the parts of one export (a session, identified by event
and export timestamp) in any order and inserts the e-mails once every part
has arrived.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .exceptions import (
    DataValidationException,
    DuplicateChunkException,
    EventMismatchException,
    InvalidChunkException,
)
from .models import DEFAULT_TIMEZONE, Participant, Source, TransferChunk, compact_event_name, current_timestamp
from .repositories import ParticipantStore

logger = logging.getLogger(__name__)

# Largest encoded chunk that still scans reliably
MAX_QR_SIZE = 1800


@dataclass
class ExportResult:
    payloads: List[str]
    total_parts: int
    total_emails: int
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'payloads': self.payloads,
            'total_parts': self.total_parts,
            'total_emails': self.total_emails,
            'timestamp': self.timestamp,
        }


@dataclass
class ImportResult:
    total_imported: int = 0
    duplicates: int = 0
    errors: int = 0
    parts: List[int] = field(default_factory=list)
    total_parts: int = 0
    complete: bool = False

    def to_dict(self) -> Dict:
        return {
            'total_imported': self.total_imported,
            'duplicates': self.duplicates,
            'errors': self.errors,
            'parts': self.parts,
            'total_parts': self.total_parts,
            'complete': self.complete,
        }


def imported_uid(email: str, event: str) -> str:
    """Deterministic uid so importing the same e-mail twice is a no-op"""
    return f"IMPORT_{compact_event_name(event)}_{re.sub(r'[@.]', '_', email)}"


def parse_chunk(text: str) -> TransferChunk:
    """
    Parse and validate scanned chunk text

    Raises:
        InvalidChunkException: If the text is not a well-formed chunk
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        raise InvalidChunkException("not a JSON document")
    if not isinstance(data, dict):
        raise InvalidChunkException("not a JSON object")

    part, total = data.get('part'), data.get('total')
    for name, value in (('part', part), ('total', total)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise InvalidChunkException(f"'{name}' must be a positive integer")
    if part > total:
        raise InvalidChunkException(f"part {part} exceeds total {total}")

    event = data.get('event')
    if not isinstance(event, str) or not event:
        raise InvalidChunkException("'event' is missing")
    emails = data.get('emails')
    if not isinstance(emails, list) or not all(isinstance(e, str) for e in emails):
        raise InvalidChunkException("'emails' must be a list of strings")

    timestamp = data.get('timestamp') or ""
    return TransferChunk(part=part, total=total, event=event, timestamp=str(timestamp), emails=emails)


class TransferSessionStore:
    """
    Buffers chunks of in-progress imports, keyed by (event, timestamp)

    Sessions are evicted when finalized, or all at once by clear().
    """

    def __init__(self):
        self._sessions: Dict[tuple, Dict[int, TransferChunk]] = {}

    def add(self, chunk: TransferChunk) -> List[TransferChunk]:
        """
        Buffer a chunk

        Returns:
            Chunks received so far for its session, sorted by part

        Raises:
            DuplicateChunkException: If this part was already received
            InvalidChunkException: If its total disagrees with earlier parts
        """
        session = self._sessions.setdefault(chunk.session_key, {})
        if chunk.part in session:
            raise DuplicateChunkException(chunk.part)
        if session and next(iter(session.values())).total != chunk.total:
            raise InvalidChunkException("total does not match earlier parts of this export")
        session[chunk.part] = chunk
        return [session[part] for part in sorted(session)]

    def parts(self, key: tuple) -> List[int]:
        return sorted(self._sessions.get(key, {}))

    def total(self, key: tuple) -> Optional[int]:
        session = self._sessions.get(key)
        return next(iter(session.values())).total if session else None

    def discard(self, key: tuple) -> None:
        self._sessions.pop(key, None)

    def clear(self) -> int:
        count = len(self._sessions)
        self._sessions.clear()
        return count


class BulkTransferCodec:
    """Exports local e-mails as QR chunks and imports them back"""

    def __init__(self, store: ParticipantStore, timezone: str = DEFAULT_TIMEZONE,
                 max_size: int = MAX_QR_SIZE):
        self.store = store
        self.timezone = timezone
        self.max_size = max_size
        self.sessions = TransferSessionStore()

    def unique_emails(self) -> List[str]:
        emails = (p.email for p in self.store.all_records())
        return list(dict.fromkeys(e for e in emails if e))

    def export_summary(self) -> Dict[str, int]:
        records = self.store.all_records()
        emails = {p.email for p in records if p.email}
        return {'total_participants': len(records), 'total_emails': len(emails)}

    def export_emails(self, event: str) -> ExportResult:
        """
        Export all local e-mails as encoded chunks

        Every chunk of one export carries the same timestamp. Chunks are
        packed greedily so each encoded chunk stays within max_size.

        Raises:
            DataValidationException: If a single e-mail cannot fit a chunk
        """
        emails = self.unique_emails()
        if not emails:
            return ExportResult(payloads=[], total_parts=0, total_emails=0)

        timestamp = current_timestamp(self.timezone)
        # widest total the export can have, so sizes never grow afterwards
        widest_total = int("9" * len(str(len(emails))))

        groups: List[List[str]] = []
        current: List[str] = []
        current_size = 0
        for email in emails:
            encoded_len = len(json.dumps(email))
            if current and current_size + 1 + encoded_len <= self.max_size:
                current.append(email)
                current_size += 1 + encoded_len
                continue
            if current:
                groups.append(current)
            base = len(TransferChunk(len(groups) + 1, widest_total, event, timestamp, []).encode())
            if base + encoded_len > self.max_size:
                raise DataValidationException("emails", f"{email} does not fit in one QR code")
            current, current_size = [email], base + encoded_len
        groups.append(current)

        payloads = [
            TransferChunk(index + 1, len(groups), event, timestamp, group).encode()
            for index, group in enumerate(groups)
        ]
        logger.info("Exported %d e-mails for %s in %d parts", len(emails), event, len(payloads))
        return ExportResult(payloads=payloads, total_parts=len(payloads),
                            total_emails=len(emails), timestamp=timestamp)

    def import_chunk(self, text: str, event: str) -> ImportResult:
        """
        Import one scanned chunk

        Args:
            text: Scanned chunk text
            event: Current operating event

        Returns:
            ImportResult; complete only once every part of the session arrived

        Raises:
            InvalidChunkException: Malformed chunk
            EventMismatchException: Chunk exported for another event
            DuplicateChunkException: Part already received for this session
        """
        chunk = parse_chunk(text)
        if chunk.event != event:
            raise EventMismatchException(chunk.event, event)

        received = self.sessions.add(chunk)
        parts = [c.part for c in received]
        if len(received) < chunk.total:
            return ImportResult(parts=parts, total_parts=chunk.total)

        self.sessions.discard(chunk.session_key)
        result = self._import_emails([e for c in received for e in c.emails], event)
        result.parts = parts
        result.total_parts = chunk.total
        result.complete = True
        logger.info("Import for %s complete: %d new, %d duplicates, %d errors",
                    event, result.total_imported, result.duplicates, result.errors)
        return result

    def _import_emails(self, emails: List[str], event: str) -> ImportResult:
        result = ImportResult()
        for email in emails:
            email = email.strip()
            if not email:
                result.errors += 1
                continue
            participant = Participant(
                uid=imported_uid(email, event),
                event_id=event,
                name=email.split('@')[0],
                email=email,
                source=Source.WEB,
                sync_status=True,
            )
            if self.store.insert_if_absent(participant):
                result.total_imported += 1
            else:
                result.duplicates += 1
        return result

    def progress(self, event: str, timestamp: str) -> Dict:
        key = (event, timestamp)
        return {
            'parts_received': self.sessions.parts(key),
            'total_parts': self.sessions.total(key),
        }

    def clear(self) -> int:
        """Abandon every buffered import session"""
        return self.sessions.clear()
