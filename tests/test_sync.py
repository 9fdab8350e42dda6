import threading

import pytest

from checkin_scanner.directory import InMemoryDirectory
from checkin_scanner.exceptions import RemoteDirectoryUnavailable, SyncInProgressException
from checkin_scanner.sync import INITIAL_IMPORT_FLAG, SyncService, local_uid
from conftest import FREE_EVENT, PAID_EVENT, make_on_spot, make_participant, make_registration


@pytest.fixture
def sync(store, directory):
    return SyncService(store, directory)


class BlockingDirectory(InMemoryDirectory):
    """Directory whose push waits until released"""

    def __init__(self, policy):
        super().__init__(policy)
        self.entered = threading.Event()
        self.release = threading.Event()

    def push_participants(self, participants):
        self.entered.set()
        self.release.wait(timeout=5)
        super().push_participants(participants)


class TestPull:
    def test_creates_one_record_per_registered_event(self, sync, store, directory):
        directory.add_registration(make_registration(
            "U1", events=[FREE_EVENT, PAID_EVENT], paid_for=[PAID_EVENT]))

        assert sync.pull() == 2

        free = store.get("U1_QuizNight", FREE_EVENT)
        paid = store.get("U1_Hack", PAID_EVENT)
        assert not free.payment_verified
        assert paid.payment_verified
        assert paid.sync_status and not paid.participated

    def test_pulled_records_are_found_by_plain_uid(self, sync, store, directory):
        directory.add_registration(make_registration("U1", events=["Paper Presentation"]))
        sync.pull()

        assert local_uid("U1", "Paper Presentation") == "U1_PaperPresentation"
        assert store.find_by_uid_and_event("U1", "Paper Presentation") is not None

    def test_pull_keeps_local_admissions(self, sync, store, directory):
        directory.add_registration(make_registration("U1", events=[FREE_EVENT]))
        sync.pull()
        store.mark_participated("U1", FREE_EVENT)

        assert sync.pull() == 0

        assert store.get("U1_QuizNight", FREE_EVENT).participated

    def test_identity_scanned_before_pull_gets_no_second_record(self, sync, store, directory):
        store.insert_if_absent(make_participant("U1", FREE_EVENT, participated=True))
        directory.add_registration(make_registration("U1", events=[FREE_EVENT, PAID_EVENT]))

        assert sync.pull() == 1

        assert [p.uid for p in store.records_for_event(FREE_EVENT)] == ["U1"]
        assert store.get("U1_QuizNight", FREE_EVENT) is None
        assert store.get("U1_Hack", PAID_EVENT) is not None

    def test_offline_pull_raises(self, sync, directory):
        directory.offline = True

        with pytest.raises(RemoteDirectoryUnavailable):
            sync.pull()


class TestPush:
    def test_pushes_unsynced_on_spot_records(self, sync, store, directory):
        store.insert_if_absent(make_on_spot("ONSPOT-1", participated=True, checked_in=True))
        store.insert_if_absent(make_participant("WEB-1"))

        assert sync.push() == 1

        assert (FREE_EVENT, "ONSPOT-1") in directory.participants
        assert (FREE_EVENT, "WEB-1") not in directory.participants
        assert store.unsynced_on_spot() == []
        assert sync.push() == 0

    def test_failed_push_leaves_records_unsynced(self, sync, store, directory):
        store.insert_if_absent(make_on_spot("ONSPOT-1"))
        directory.offline = True

        with pytest.raises(RemoteDirectoryUnavailable):
            sync.push()

        assert [p.uid for p in store.unsynced_on_spot()] == ["ONSPOT-1"]
        directory.offline = False
        assert sync.push() == 1

    def test_nothing_to_push_makes_no_remote_call(self, sync, directory):
        assert sync.push() == 0
        assert directory.calls == []

    def test_concurrent_push_is_refused(self, memory_store, policy):
        directory = BlockingDirectory(policy)
        sync = SyncService(memory_store, directory)
        memory_store.insert_if_absent(make_on_spot("ONSPOT-1"))

        worker = threading.Thread(target=sync.push)
        worker.start()
        try:
            assert directory.entered.wait(timeout=5)
            with pytest.raises(SyncInProgressException):
                sync.push()
        finally:
            directory.release.set()
            worker.join(timeout=5)

        assert memory_store.unsynced_on_spot() == []


class TestInitialImport:
    def test_runs_once(self, sync, store, directory):
        directory.add_registration(make_registration("U1", events=[FREE_EVENT]))

        assert sync.run_initial_import()
        assert store.get_flag(INITIAL_IMPORT_FLAG)
        assert not sync.run_initial_import()
        assert directory.calls == ["list_registrations"]

    def test_failed_import_does_not_set_the_flag(self, sync, store, directory):
        directory.offline = True

        with pytest.raises(RemoteDirectoryUnavailable):
            sync.run_initial_import()

        assert not store.get_flag(INITIAL_IMPORT_FLAG)

    def test_force_runs_again(self, sync, directory):
        sync.run_initial_import()

        assert sync.force_initial_import()
        assert directory.calls == ["list_registrations", "list_registrations"]
