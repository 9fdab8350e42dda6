import fakeredis
import pytest

from checkin_scanner.directory import InMemoryDirectory
from checkin_scanner.models import EventPolicy, Participant, Payment, RemoteRegistration, Source
from checkin_scanner.repositories import InMemoryParticipantStore, RedisParticipantStore
from checkin_scanner.services import RegistrationService, VerificationService

PAID_EVENT = "Hack"
FREE_EVENT = "Quiz Night"


@pytest.fixture
def policy():
    return EventPolicy(paid_events=[PAID_EVENT, "Paper Presentation"])


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture(params=["memory", "redis"])
def store(request):
    if request.param == "memory":
        return InMemoryParticipantStore()
    return RedisParticipantStore(fakeredis.FakeRedis(decode_responses=True), namespace="test")


@pytest.fixture
def memory_store():
    return InMemoryParticipantStore()


@pytest.fixture
def directory(policy):
    return InMemoryDirectory(policy)


@pytest.fixture
def engine(memory_store, directory, policy):
    return VerificationService(memory_store, directory, policy)


@pytest.fixture
def registration_service(memory_store, policy):
    return RegistrationService(memory_store, policy)


def make_participant(uid="U1", event_id=FREE_EVENT, **kwargs):
    kwargs.setdefault("name", "Asha")
    kwargs.setdefault("email", f"{uid.lower()}@example.com")
    return Participant(uid=uid, event_id=event_id, **kwargs)


def make_registration(uid="U1", events=(FREE_EVENT,), paid_for=(), **kwargs):
    kwargs.setdefault("name", "Asha")
    kwargs.setdefault("email", f"{uid.lower()}@example.com")
    payments = [Payment(event_names=[name], verified=True, amount=120) for name in paid_for]
    return RemoteRegistration(uid=uid, events=list(events), payments=payments, **kwargs)


def make_on_spot(uid="ONSPOT-1", event_id=FREE_EVENT, **kwargs):
    kwargs.setdefault("sync_status", False)
    return make_participant(uid, event_id, source=Source.ONSPOT, **kwargs)
