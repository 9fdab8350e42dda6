import fakeredis
import pytest
import redis

from checkin_scanner.exceptions import ParticipantNotFoundException
from checkin_scanner.models import Source
from checkin_scanner.repositories import (
    InMemoryParticipantStore,
    RedisParticipantStore,
    StoreFactory,
    legacy_composite_uid,
)
from conftest import FREE_EVENT, PAID_EVENT, make_on_spot, make_participant


def test_insert_if_absent_keeps_the_first_insert(store):
    assert store.insert_if_absent(make_participant("U1", FREE_EVENT, name="Asha"))
    store.mark_participated("U1", FREE_EVENT)

    assert not store.insert_if_absent(make_participant("U1", FREE_EVENT, name="Someone Else"))

    record = store.get("U1", FREE_EVENT)
    assert record.name == "Asha"
    assert record.participated


def test_same_uid_may_exist_once_per_event(store):
    store.insert_if_absent(make_participant("U1", FREE_EVENT))
    store.insert_if_absent(make_participant("U1", PAID_EVENT))

    assert len(store.records_for_uid("U1")) == 2


def test_mark_participated_is_scoped_to_one_event(store):
    store.insert_if_absent(make_participant("U1", FREE_EVENT))
    store.insert_if_absent(make_participant("U1", PAID_EVENT))

    assert store.mark_participated("U1", FREE_EVENT)

    admitted = store.get("U1", FREE_EVENT)
    assert admitted.participated and admitted.checked_in
    assert admitted.checkin_time
    untouched = store.get("U1", PAID_EVENT)
    assert not untouched.participated and not untouched.checked_in


def test_mark_participated_without_record_is_a_no_op(store):
    assert not store.mark_participated("missing", FREE_EVENT)


def test_lookup_matches_legacy_composite_uid(store):
    store.insert_if_absent(make_participant(legacy_composite_uid("U1", "Quiz Night"), "Quiz Night"))

    found = store.find_by_uid_and_event("U1", "Quiz Night")

    assert found.uid == "U1_QuizNight"
    assert store.find_by_uid_and_event("U1", PAID_EVENT) is None


def test_legacy_lookup_can_be_switched_off(store):
    store.insert_if_absent(make_participant("U1_QuizNight", "Quiz Night"))
    store.legacy_uid_lookup = False

    assert store.find_by_uid_and_event("U1", "Quiz Night") is None


def test_find_by_uid_returns_most_recent_record(store):
    store.insert_if_absent(make_participant("U1", FREE_EVENT))
    store.insert_if_absent(make_participant("U1", PAID_EVENT))

    assert store.find_by_uid("U1").event_id == PAID_EVENT
    assert store.find_by_uid("nobody") is None


def test_unsynced_on_spot_and_mark_synced(store):
    store.insert_if_absent(make_on_spot("ONSPOT-1"))
    store.insert_if_absent(make_on_spot("ONSPOT-2", sync_status=True))
    store.insert_if_absent(make_participant("WEB-1"))

    assert [p.uid for p in store.unsynced_on_spot()] == ["ONSPOT-1"]

    assert store.mark_synced("ONSPOT-1", FREE_EVENT) == 1

    assert store.unsynced_on_spot() == []
    assert store.get("ONSPOT-1", FREE_EVENT).sync_status


def test_set_payment_verified_for_one_event_or_all(store):
    store.insert_if_absent(make_participant("U1", FREE_EVENT))
    store.insert_if_absent(make_participant("U1", PAID_EVENT))

    assert store.set_payment_verified("U1", True, PAID_EVENT) == 1
    assert not store.get("U1", FREE_EVENT).payment_verified

    assert store.set_payment_verified("U1", True) == 2
    assert store.get("U1", FREE_EVENT).payment_verified


def test_listing_queries(store):
    store.insert_if_absent(make_participant("U2", FREE_EVENT, name="Bala"))
    store.insert_if_absent(make_participant("U1", FREE_EVENT, name="asha"))
    store.insert_if_absent(make_participant("U3", PAID_EVENT, name="Chitra"))

    assert [p.name for p in store.all_records()] == ["asha", "Bala", "Chitra"]
    assert {p.uid for p in store.records_for_event(FREE_EVENT)} == {"U1", "U2"}


def test_recent_on_spot_is_newest_first(store):
    store.insert_if_absent(make_on_spot("ONSPOT-1"))
    store.insert_if_absent(make_participant("WEB-1"))
    store.insert_if_absent(make_on_spot("ONSPOT-2"))

    assert [p.uid for p in store.recent_on_spot()] == ["ONSPOT-2", "ONSPOT-1"]
    assert [p.uid for p in store.recent_on_spot(limit=1)] == ["ONSPOT-2"]


def test_clear_all_removes_every_record(store):
    store.insert_if_absent(make_on_spot("ONSPOT-1"))
    store.insert_if_absent(make_participant("U1"))

    assert store.clear_all() == 2

    assert store.all_records() == []
    assert store.unsynced_on_spot() == []
    assert store.find_by_uid("U1") is None
    assert store.insert_if_absent(make_participant("U1"))


def test_flags(store):
    assert not store.get_flag("initial_import_complete")
    store.set_flag("initial_import_complete")
    assert store.get_flag("initial_import_complete")
    store.clear_flag("initial_import_complete")
    assert not store.get_flag("initial_import_complete")


def test_new_records_get_a_creation_time(store):
    store.insert_if_absent(make_participant("U1"))

    assert store.get("U1", FREE_EVENT).created_at


def test_redis_store_degrades_when_server_is_down():
    server = fakeredis.FakeServer()
    store = RedisParticipantStore(fakeredis.FakeRedis(server=server, decode_responses=True))
    server.connected = False

    assert store.insert_if_absent(make_participant("U1")) is False
    assert store.get("U1", FREE_EVENT) is None
    assert store.find_by_uid_and_event("U1", FREE_EVENT) is None
    assert store.all_records() == []
    assert store.unsynced_on_spot() == []
    assert store.mark_participated("U1", FREE_EVENT) is False
    assert store.clear_all() == 0


def test_redis_store_keeps_keys_under_its_namespace(redis_client):
    store = RedisParticipantStore(redis_client, namespace="gate-a")
    store.insert_if_absent(make_on_spot("ONSPOT-1"))

    assert all(key.startswith("gate-a:") for key in redis_client.keys("*"))


def test_factory_creates_backends():
    assert isinstance(StoreFactory.create_store("memory"), InMemoryParticipantStore)
    assert isinstance(StoreFactory.create_store("REDIS"), RedisParticipantStore)
    with pytest.raises(ValueError):
        StoreFactory.create_store("sqlite")


def test_stored_source_round_trips(store):
    store.insert_if_absent(make_on_spot("ONSPOT-1"))

    assert store.get("ONSPOT-1", FREE_EVENT).source == Source.ONSPOT


def test_override_admission_is_stored_on_the_record(store):
    store.insert_if_absent(make_participant("U1", PAID_EVENT))
    store.insert_if_absent(make_participant("U2", PAID_EVENT))

    store.mark_participated("U1", PAID_EVENT, override=True)
    store.mark_participated("U2", PAID_EVENT)

    overridden = store.get("U1", PAID_EVENT)
    assert overridden.participated and overridden.payment_override
    assert overridden.checkin_time
    assert not store.get("U2", PAID_EVENT).payment_override


def test_find_by_identity_matches_composite_ids_of_any_event(store):
    store.insert_if_absent(make_participant("U1_Robotics", "Robotics"))
    store.insert_if_absent(make_participant("U1_QuizNight", FREE_EVENT))
    store.insert_if_absent(make_participant("U10_Robotics", "Robotics"))

    assert store.find_by_uid("U1") is None
    assert store.find_by_identity("U1").uid == "U1_QuizNight"
    assert store.find_by_identity("U2") is None


def test_find_by_identity_prefers_plain_uid(store):
    store.insert_if_absent(make_participant("U1", "Robotics"))
    store.insert_if_absent(make_participant("U1_QuizNight", FREE_EVENT))

    assert store.find_by_identity("U1").uid == "U1"


def test_find_or_raise(store):
    store.insert_if_absent(make_participant("U1", FREE_EVENT))
    store.insert_if_absent(make_participant("U2_Hack", PAID_EVENT))

    assert [p.event_id for p in store.find_or_raise("U1")] == [FREE_EVENT]
    assert store.find_or_raise("U2", PAID_EVENT)[0].uid == "U2_Hack"
    assert store.find_or_raise("U2")[0].uid == "U2_Hack"
    with pytest.raises(ParticipantNotFoundException):
        store.find_or_raise("U1", PAID_EVENT)
    with pytest.raises(ParticipantNotFoundException):
        store.find_or_raise("nobody")


def test_failed_redis_insert_leaves_no_partial_record(redis_client, monkeypatch):
    store = RedisParticipantStore(redis_client, namespace="test")

    def lost_connection(self, raise_on_error=True):
        raise redis.exceptions.ConnectionError("connection lost")

    with monkeypatch.context() as patch:
        patch.setattr(redis.client.Pipeline, "execute", lost_connection)
        assert store.insert_if_absent(make_on_spot("ONSPOT-1")) is False

    assert store.get("ONSPOT-1", FREE_EVENT) is None
    assert store.find_by_uid("ONSPOT-1") is None
    assert store.unsynced_on_spot() == []

    assert store.insert_if_absent(make_on_spot("ONSPOT-1"))
    assert [p.uid for p in store.unsynced_on_spot()] == ["ONSPOT-1"]
    assert [p.uid for p in store.recent_on_spot()] == ["ONSPOT-1"]


def test_redis_prefix_lookup_escapes_glob_characters(redis_client):
    store = RedisParticipantStore(redis_client, namespace="test")
    store.insert_if_absent(make_participant("U*_QuizNight", FREE_EVENT))
    store.insert_if_absent(make_participant("UX_QuizNight", FREE_EVENT))

    assert store.find_by_identity("U*").uid == "U*_QuizNight"
    assert store.find_by_identity("U?") is None
