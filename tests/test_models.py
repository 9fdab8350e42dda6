import json

from checkin_scanner.models import (
    PayloadKind,
    Participant,
    Payment,
    ScanPayload,
    Source,
    TransferChunk,
    compact_event_name,
)


def test_structured_payload_decodes_profile_events_and_payments():
    payload = ScanPayload.decode(json.dumps({
        "uid": "U1",
        "name": "Asha",
        "email": "asha@example.com",
        "dept": "CSE",
        "events": ["Hack", "Quiz Night"],
        "payments": [{"eventNames": ["Hack"], "verified": True, "amount": 120}],
    }))

    assert payload.kind == PayloadKind.STRUCTURED
    assert payload.uid == "U1"
    assert payload.events == ["Hack", "Quiz Night"]
    assert payload.profile == {"email": "asha@example.com", "dept": "CSE"}
    assert payload.proves_payment_for("Hack")
    assert not payload.proves_payment_for("Quiz Night")


def test_unverified_payment_is_not_proof():
    payload = ScanPayload.decode(json.dumps({
        "uid": "U1", "name": "Asha", "events": ["Hack"],
        "payments": [{"eventNames": ["Hack"], "verified": False}],
    }))

    assert not payload.proves_payment_for("Hack")


def test_plain_text_falls_back_to_bare_identifier():
    payload = ScanPayload.decode("  XYZ123 \n")

    assert payload.kind == PayloadKind.BARE
    assert payload.uid == "XYZ123"


def test_json_without_name_is_a_bare_identifier():
    raw = json.dumps({"uid": "U1"})

    payload = ScanPayload.decode(raw)

    assert payload.kind == PayloadKind.BARE
    assert payload.uid == raw


def test_legacy_transaction_id_only_proves_single_event_payload():
    single = ScanPayload.decode(json.dumps({
        "uid": "U1", "name": "Asha", "events": ["Hack"], "transactionId": "TX-9",
    }))
    multi = ScanPayload.decode(json.dumps({
        "uid": "U1", "name": "Asha", "events": ["Hack", "Quiz Night"], "transactionId": "TX-9",
    }))

    assert single.kind == PayloadKind.LEGACY
    assert single.proves_payment_for("Hack")
    assert not multi.proves_payment_for("Hack")


def test_transaction_id_is_ignored_when_payments_are_itemised():
    payload = ScanPayload.decode(json.dumps({
        "uid": "U1", "name": "Asha", "events": ["Hack"], "transactionId": "TX-9", "payments": [],
    }))

    assert payload.kind == PayloadKind.STRUCTURED
    assert not payload.proves_payment_for("Hack")


def test_participant_survives_storage_serialization():
    participant = Participant(uid="U1", event_id="Hack", name="Asha", source=Source.ONSPOT,
                              sync_status=False, participated=True)

    restored = Participant.from_dict(participant.to_dict())

    assert restored == participant
    assert participant.to_dict()["source"] == "ONSPOT"


def test_payment_from_dict_ignores_truthy_non_boolean_verified():
    payment = Payment.from_dict({"eventNames": ["Hack"], "verified": "yes"})

    assert not payment.covers("Hack")


def test_chunk_encoding_is_compact_json():
    chunk = TransferChunk(part=1, total=2, event="Hack", timestamp="t", emails=["a@x.io"])

    assert chunk.encode() == '{"part":1,"total":2,"event":"Hack","timestamp":"t","emails":["a@x.io"]}'


def test_compact_event_name_strips_all_whitespace():
    assert compact_event_name("Paper  Presentation\t2") == "PaperPresentation2"
