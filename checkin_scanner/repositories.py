"""
Local Participant Store for the Event Check-in Scanner

This module implements the Repository pattern for the device-local replica
of participant records. It provides an abstraction layer between the
verification logic and the storage engine, with a Redis implementation for
the device and an in-memory one for tests and development.

Records are keyed by the composite (uid, event_id). Storage-layer errors
are logged and degrade to an empty result or a no-op; they never reach
the scan flow.
"""

import functools
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, List, Optional

import redis

from .exceptions import ParticipantNotFoundException
from .models import DEFAULT_TIMEZONE, Participant, Source, compact_event_name, current_timestamp

logger = logging.getLogger(__name__)


def legacy_composite_uid(uid: str, event_id: str) -> str:
    """Identifier under the legacy ``{uid}_{eventNameNoSpaces}`` scheme"""
    return f"{uid}_{compact_event_name(event_id)}"


def _glob_escape(text: str) -> str:
    """Escape Redis glob metacharacters for SCAN MATCH"""
    return re.sub(r"([*?\[\]\\])", r"\\\1", text)


def degrade_on_storage_error(default=None):
    """
    Log storage errors and return a fallback instead of raising

    Args:
        default: Callable producing the fallback value (e.g. ``list``)
    """
    def decorator(method):
        @functools.wraps(method)
        def wrapper(self, *args, **kwargs):
            try:
                return method(self, *args, **kwargs)
            except redis.exceptions.RedisError as e:
                logger.error("Local store %s failed: %s", method.__name__, e)
                return default() if default else None
        return wrapper
    return decorator


class ParticipantStore(ABC):
    """
    Abstract base class for local participant stores

    Subclasses implement the storage primitives; lookups that combine
    strategies (such as the legacy uid lookup) live here.
    """

    # The ``{uid}_{event}`` composition predates composite keys. It is a
    # compatibility shim and can be switched off once no legacy rows remain.
    legacy_uid_lookup = True

    def __init__(self, timezone: str = DEFAULT_TIMEZONE):
        self.timezone = timezone

    @abstractmethod
    def insert_if_absent(self, participant: Participant) -> bool:
        """
        Insert a record unless (uid, event_id) already exists

        An existing record is never overwritten, so re-imports cannot
        clobber participated or payment_verified with stale data.

        Returns:
            True if a new record was created
        """

    @abstractmethod
    def get(self, uid: str, event_id: str) -> Optional[Participant]:
        """Exact (uid, event_id) lookup"""

    @abstractmethod
    def find_by_uid(self, uid: str) -> Optional[Participant]:
        """Most recently created record for an identity, any event"""

    @abstractmethod
    def records_for_uid(self, uid: str) -> List[Participant]:
        pass

    @abstractmethod
    def all_records(self) -> List[Participant]:
        pass

    @abstractmethod
    def records_for_event(self, event_id: str) -> List[Participant]:
        pass

    @abstractmethod
    def unsynced_on_spot(self) -> List[Participant]:
        """All ONSPOT records not yet pushed to the remote directory"""

    @abstractmethod
    def recent_on_spot(self, limit: int = 50) -> List[Participant]:
        """ONSPOT records, newest first"""

    @abstractmethod
    def clear_all(self) -> int:
        """Administrative reset; returns the number of records removed"""

    @abstractmethod
    def get_flag(self, name: str) -> bool:
        pass

    @abstractmethod
    def set_flag(self, name: str) -> None:
        pass

    @abstractmethod
    def clear_flag(self, name: str) -> None:
        pass

    @abstractmethod
    def _save(self, participant: Participant) -> None:
        """Persist changes to an existing record"""

    @abstractmethod
    def _records_with_uid_prefix(self, prefix: str) -> List[Participant]:
        """Records whose uid starts with prefix, oldest first"""

    def find_by_uid_and_event(self, uid: str, event_id: str) -> Optional[Participant]:
        """
        Look up a participant for one event

        Tries the exact pair first, then the legacy composite identifier
        ``{uid}_{eventNameNoSpaces}`` under the same event.
        """
        participant = self.get(uid, event_id)
        if participant is None and self.legacy_uid_lookup:
            participant = self.get(legacy_composite_uid(uid, event_id), event_id)
        return participant

    def find_by_identity(self, uid: str) -> Optional[Participant]:
        """
        Most recent record for an identity under any event

        Like find_by_uid, but also matches records stored under the legacy
        composite identifier of any event.
        """
        participant = self.find_by_uid(uid)
        if participant is None and self.legacy_uid_lookup:
            legacy = self._legacy_records(uid)
            participant = legacy[-1] if legacy else None
        return participant

    def _legacy_records(self, uid: str) -> List[Participant]:
        return [
            p for p in self._records_with_uid_prefix(f"{uid}_")
            if p.uid == legacy_composite_uid(uid, p.event_id)
        ]

    def find_or_raise(self, uid: str, event_id: str = None) -> List[Participant]:
        """
        Records of an identity, for one event or for all of them

        Raises:
            ParticipantNotFoundException: If no record matches
        """
        if event_id:
            found = self.find_by_uid_and_event(uid, event_id)
            records = [found] if found else []
        else:
            records = self.records_for_uid(uid)
            if not records and self.legacy_uid_lookup:
                records = self._legacy_records(uid)
        if not records:
            raise ParticipantNotFoundException(uid, event_id)
        return records

    def mark_participated(self, uid: str, event_id: str, override: bool = False) -> bool:
        """
        Record admission for one event

        Only the record for this event is touched; records of the same
        uid under other events keep their state.

        Args:
            uid: Participant identifier
            event_id: Event the admission applies to
            override: Admitted by an operator without payment verification;
                stored on the record together with the check-in time

        Returns:
            True if a record was updated
        """
        participant = self.find_by_uid_and_event(uid, event_id)
        if participant is None:
            logger.warning("Cannot mark %s participated for %s: no local record", uid, event_id)
            return False
        participant.participated = True
        participant.checked_in = True
        participant.checkin_time = current_timestamp(self.timezone)
        if override:
            participant.payment_override = True
        self._save(participant)
        return True

    def set_payment_verified(self, uid: str, verified: bool, event_id: str = None) -> int:
        """
        Set payment_verified on the uid's records

        Args:
            uid: Participant identifier
            verified: New flag value
            event_id: Limit the update to this event's record

        Returns:
            Number of records updated
        """
        return self._update_flag(uid, event_id, 'payment_verified', verified)

    def mark_synced(self, uid: str, event_id: str = None) -> int:
        """Mark the uid's records (or one event's record) as pushed"""
        return self._update_flag(uid, event_id, 'sync_status', True)

    def _update_flag(self, uid: str, event_id: Optional[str], flag: str, value: bool) -> int:
        if event_id is not None:
            found = self.find_by_uid_and_event(uid, event_id)
            records = [found] if found else []
        else:
            records = self.records_for_uid(uid)
        for participant in records:
            setattr(participant, flag, value)
            self._save(participant)
        return len(records)

    def _stamp(self, participant: Participant) -> Participant:
        """Copy of a new record with its creation time filled in"""
        return replace(
            participant,
            created_at=participant.created_at or current_timestamp(self.timezone),
        )


class InMemoryParticipantStore(ParticipantStore):
    """
    In-memory store implementation for testing

    This class provides a simple dictionary-backed store, useful for
    unit testing and development.
    """

    def __init__(self, timezone: str = DEFAULT_TIMEZONE):
        super().__init__(timezone)
        self._records: Dict[tuple, Dict] = {}
        self._flags = set()

    def insert_if_absent(self, participant: Participant) -> bool:
        if participant.key in self._records:
            return False
        self._records[participant.key] = self._stamp(participant).to_dict()
        return True

    def get(self, uid: str, event_id: str) -> Optional[Participant]:
        data = self._records.get((uid, event_id))
        return Participant.from_dict(data) if data else None

    def find_by_uid(self, uid: str) -> Optional[Participant]:
        matches = self.records_for_uid(uid)
        return matches[-1] if matches else None

    def records_for_uid(self, uid: str) -> List[Participant]:
        return [Participant.from_dict(d) for key, d in self._records.items() if key[0] == uid]

    def all_records(self) -> List[Participant]:
        return sorted(
            (Participant.from_dict(d) for d in self._records.values()),
            key=lambda p: p.name.lower(),
        )

    def records_for_event(self, event_id: str) -> List[Participant]:
        return [Participant.from_dict(d) for key, d in self._records.items() if key[1] == event_id]

    def _records_with_uid_prefix(self, prefix: str) -> List[Participant]:
        return [Participant.from_dict(d) for key, d in self._records.items() if key[0].startswith(prefix)]

    def unsynced_on_spot(self) -> List[Participant]:
        return [
            Participant.from_dict(d) for d in self._records.values()
            if d['source'] == Source.ONSPOT.value and not d['sync_status']
        ]

    def recent_on_spot(self, limit: int = 50) -> List[Participant]:
        on_spot = [
            Participant.from_dict(d) for d in self._records.values()
            if d['source'] == Source.ONSPOT.value
        ]
        on_spot.reverse()
        return on_spot[:limit]

    def clear_all(self) -> int:
        count = len(self._records)
        self._records.clear()
        return count

    def get_flag(self, name: str) -> bool:
        return name in self._flags

    def set_flag(self, name: str) -> None:
        self._flags.add(name)

    def clear_flag(self, name: str) -> None:
        self._flags.discard(name)

    def _save(self, participant: Participant) -> None:
        if participant.key in self._records:
            self._records[participant.key] = participant.to_dict()


class RedisParticipantStore(ParticipantStore):
    """
    Redis-backed store

    Layout, under a configurable namespace:

    - ``{ns}:participants`` hash, field ``["uid", "event"]`` -> record JSON
    - ``{ns}:uid:{uid}`` sorted set of fields by insertion sequence
    - ``{ns}:event:{event}`` set of fields
    - ``{ns}:onspot`` sorted set of ONSPOT fields by insertion sequence
    - ``{ns}:unsynced`` set of ONSPOT fields awaiting push
    - ``{ns}:seq`` insertion counter, ``{ns}:flag:{name}`` markers
    """

    def __init__(self, client: redis.Redis, namespace: str = "checkin",
                 timezone: str = DEFAULT_TIMEZONE):
        """
        Initialize Redis store

        Args:
            client: Redis client created with ``decode_responses=True``
            namespace: Key prefix for every key this store owns
            timezone: Timezone for check-in and creation timestamps
        """
        super().__init__(timezone)
        self.client = client
        self.namespace = namespace

    def _key(self, *parts: str) -> str:
        return ":".join((self.namespace,) + parts)

    @property
    def _records_key(self) -> str:
        return self._key("participants")

    @staticmethod
    def _field(uid: str, event_id: str) -> str:
        return json.dumps([uid, event_id])

    @degrade_on_storage_error(default=bool)
    def insert_if_absent(self, participant: Participant) -> bool:
        """
        Insert the record and its index entries in one MULTI/EXEC

        A failed transaction leaves neither the record nor any index entry
        behind, so the insert can simply be retried.
        """
        record = self._stamp(participant)
        field = self._field(record.uid, record.event_id)
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(self._records_key)
                    if pipe.hexists(self._records_key, field):
                        return False
                    seq = pipe.incr(self._key("seq"))

                    pipe.multi()
                    pipe.hset(self._records_key, field, json.dumps(record.to_dict()))
                    pipe.zadd(self._key("uid", record.uid), {field: seq})
                    pipe.sadd(self._key("event", record.event_id), field)
                    if record.source == Source.ONSPOT:
                        pipe.zadd(self._key("onspot"), {field: seq})
                        if not record.sync_status:
                            pipe.sadd(self._key("unsynced"), field)
                    pipe.execute()
                    return True
                except redis.exceptions.WatchError:
                    # another write touched the records hash; check again
                    continue

    @degrade_on_storage_error()
    def get(self, uid: str, event_id: str) -> Optional[Participant]:
        data = self.client.hget(self._records_key, self._field(uid, event_id))
        return Participant.from_dict(json.loads(data)) if data else None

    @degrade_on_storage_error()
    def find_by_uid(self, uid: str) -> Optional[Participant]:
        latest = self.client.zrevrange(self._key("uid", uid), 0, 0)
        return self._load(latest)[0] if latest else None

    @degrade_on_storage_error(default=list)
    def records_for_uid(self, uid: str) -> List[Participant]:
        return self._load(self.client.zrange(self._key("uid", uid), 0, -1))

    @degrade_on_storage_error(default=list)
    def _records_with_uid_prefix(self, prefix: str) -> List[Participant]:
        scored = []
        for key in self.client.scan_iter(match=self._key("uid", _glob_escape(prefix)) + "*"):
            scored.extend(self.client.zrange(key, 0, -1, withscores=True))
        scored.sort(key=lambda item: item[1])
        return self._load([field for field, _ in scored])

    @degrade_on_storage_error(default=list)
    def all_records(self) -> List[Participant]:
        records = [
            Participant.from_dict(json.loads(data))
            for data in self.client.hvals(self._records_key)
        ]
        return sorted(records, key=lambda p: p.name.lower())

    @degrade_on_storage_error(default=list)
    def records_for_event(self, event_id: str) -> List[Participant]:
        return self._load(sorted(self.client.smembers(self._key("event", event_id))))

    @degrade_on_storage_error(default=list)
    def unsynced_on_spot(self) -> List[Participant]:
        return self._load(sorted(self.client.smembers(self._key("unsynced"))))

    @degrade_on_storage_error(default=list)
    def recent_on_spot(self, limit: int = 50) -> List[Participant]:
        return self._load(self.client.zrevrange(self._key("onspot"), 0, limit - 1))

    @degrade_on_storage_error(default=int)
    def clear_all(self) -> int:
        count = self.client.hlen(self._records_key)
        keys = [self._records_key, self._key("seq"), self._key("onspot"), self._key("unsynced")]
        for pattern in (self._key("uid", "*"), self._key("event", "*")):
            keys.extend(self.client.scan_iter(match=pattern))
        self.client.delete(*keys)
        logger.info("Cleared %d local participant records", count)
        return count

    @degrade_on_storage_error(default=bool)
    def get_flag(self, name: str) -> bool:
        return self.client.get(self._key("flag", name)) == "true"

    @degrade_on_storage_error()
    def set_flag(self, name: str) -> None:
        self.client.set(self._key("flag", name), "true")

    @degrade_on_storage_error()
    def clear_flag(self, name: str) -> None:
        self.client.delete(self._key("flag", name))

    @degrade_on_storage_error()
    def _save(self, participant: Participant) -> None:
        field = self._field(participant.uid, participant.event_id)
        pipe = self.client.pipeline()
        pipe.hset(self._records_key, field, json.dumps(participant.to_dict()))
        if participant.source == Source.ONSPOT and participant.sync_status:
            pipe.srem(self._key("unsynced"), field)
        pipe.execute()

    def _load(self, fields: List[str]) -> List[Participant]:
        if not fields:
            return []
        values = self.client.hmget(self._records_key, fields)
        return [Participant.from_dict(json.loads(v)) for v in values if v]


class StoreFactory:
    """
    Factory class for creating participant store instances

    This class provides a centralized way to create the configured
    store backend.
    """

    @staticmethod
    def create_redis_store(host: str = "localhost", port: int = 6379, db: int = 0,
                           namespace: str = "checkin",
                           timezone: str = DEFAULT_TIMEZONE) -> RedisParticipantStore:
        client = redis.Redis(host=host, port=port, db=db, decode_responses=True)
        return RedisParticipantStore(client, namespace=namespace, timezone=timezone)

    @staticmethod
    def create_memory_store(timezone: str = DEFAULT_TIMEZONE) -> InMemoryParticipantStore:
        return InMemoryParticipantStore(timezone=timezone)

    @staticmethod
    def create_store(backend: str, **kwargs) -> ParticipantStore:
        """
        Create a store based on backend name

        Args:
            backend: 'redis' or 'memory'
            **kwargs: Backend-specific arguments

        Returns:
            ParticipantStore instance

        Raises:
            ValueError: If the backend is not supported
        """
        if backend.lower() == 'redis':
            return StoreFactory.create_redis_store(**kwargs)

        elif backend.lower() == 'memory':
            return StoreFactory.create_memory_store(timezone=kwargs.get('timezone', DEFAULT_TIMEZONE))

        else:
            raise ValueError(f"Unsupported store backend: {backend}")
