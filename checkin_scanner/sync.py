"""
Sync Reconciler

Moves participant records between the local store and the remote
directory. Pull copies every remote registration into the local store
(one record per registered event); push uploads on-spot registrations
that the remote directory has not seen yet.

Two devices that admit the same person before either one syncs will both
record the admission. Nothing here orders or merges such admissions; the
gap closes only as far as the remote check-in mirror is overwritten by the
last push.
"""

import logging
import threading

from .directory import RemoteDirectory
from .exceptions import SyncInProgressException
from .models import compact_event_name
from .repositories import ParticipantStore

logger = logging.getLogger(__name__)

INITIAL_IMPORT_FLAG = "initial_import_complete"


def local_uid(remote_uid: str, event_name: str) -> str:
    """Stable per-(identity, event) identifier for pulled records"""
    return f"{remote_uid}_{compact_event_name(event_name)}"


class SyncService:
    """Bidirectional batch sync between local store and remote directory"""

    def __init__(self, store: ParticipantStore, directory: RemoteDirectory):
        self.store = store
        self.directory = directory
        self._push_lock = threading.Lock()

    def pull(self) -> int:
        """
        Copy remote registrations into the local store

        Existing local records are left as they are, so admissions and
        payments recorded on this device are never reverted. An identity
        already stored for an event, under its plain or composite uid, gets
        no second record.

        Returns:
            Number of records newly created

        Raises:
            RemoteDirectoryUnavailable: If the directory cannot be reached
        """
        logger.info("Starting sync from remote directory...")
        created = seen = 0
        for registration in self.directory.list_registrations():
            for event_name in registration.events:
                seen += 1
                # a scan may already have stored this person under the plain uid
                if self.store.find_by_uid_and_event(registration.uid, event_name):
                    continue
                participant = registration.to_participant(local_uid(registration.uid, event_name), event_name)
                if self.store.insert_if_absent(participant):
                    created += 1
        logger.info("Sync complete. %d registrations seen, %d new local records.", seen, created)
        return created

    def push(self) -> int:
        """
        Upload unsynced on-spot registrations as one batch

        Records are marked synced only after the whole batch is committed;
        on failure they stay eligible for the next push.

        Returns:
            Number of records pushed

        Raises:
            SyncInProgressException: If another push is running
            RemoteDirectoryUnavailable: If the batch could not be committed
        """
        if not self._push_lock.acquire(blocking=False):
            raise SyncInProgressException()
        try:
            unsynced = self.store.unsynced_on_spot()
            if not unsynced:
                logger.info("No unsynced on-spot registrations found.")
                return 0

            logger.info("Found %d unsynced participants. Uploading...", len(unsynced))
            self.directory.push_participants(unsynced)

            for participant in unsynced:
                self.store.mark_synced(participant.uid, participant.event_id)
            logger.info("Pushed %d on-spot registrations", len(unsynced))
            return len(unsynced)
        finally:
            self._push_lock.release()

    def run_initial_import(self) -> bool:
        """
        Pull once per device

        Returns:
            True if the import ran, False if it had already completed
        """
        if self.store.get_flag(INITIAL_IMPORT_FLAG):
            logger.info("Initial import already complete, skipping...")
            return False
        created = self.pull()
        self.store.set_flag(INITIAL_IMPORT_FLAG)
        logger.info("Initial import complete: %d participant records", created)
        return True

    def force_initial_import(self) -> bool:
        self.store.clear_flag(INITIAL_IMPORT_FLAG)
        return self.run_initial_import()
