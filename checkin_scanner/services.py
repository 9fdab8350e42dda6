"""
Business Logic Services for the Event Check-in Scanner

This module contains the verification engine that decides, for each scanned
QR payload, whether a person may enter the current event, and the on-spot
registration service used at the registration desk.
"""

import json
import logging
import random
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional

from .directory import RemoteDirectory, on_spot_payment_id
from .exceptions import DataValidationException, InvalidActionException, RemoteDirectoryUnavailable
from .models import (
    OTHER_OPTION,
    EventPolicy,
    Participant,
    PayloadKind,
    ScanPayload,
    Source,
    compact_event_name,
    current_timestamp,
)
from .repositories import ParticipantStore

logger = logging.getLogger(__name__)


class Decision(Enum):
    """Outcome of a scan or of an operator action on it"""
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_OVERRIDE = "awaiting_override"
    AWAITING_RE_ENROLL = "awaiting_re_enroll"
    PENDING_PAYMENT = "pending_payment"
    PENDING_REGISTRATION = "pending_registration"
    ADMITTED = "admitted"
    REJECTED = "rejected"
    ABANDONED = "abandoned"
    IGNORED = "ignored"


class Action(Enum):
    """Operator actions offered alongside an outcome"""
    CONFIRM = "confirm"
    ALLOW_ANYWAY = "allow_anyway"
    RE_ENROLL = "re_enroll"
    COLLECT_PAYMENT = "collect_payment"
    REGISTER = "register"
    CANCEL = "cancel"
    SCAN_NEXT = "scan_next"


# Decisions that keep the scanner busy until the operator acts
OPERATOR_DECISIONS = {
    Decision.AWAITING_CONFIRMATION,
    Decision.AWAITING_OVERRIDE,
    Decision.AWAITING_RE_ENROLL,
    Decision.PENDING_PAYMENT,
}


@dataclass
class ScanOutcome:
    """Decision presented to the operator after a scan or an action"""
    decision: Decision
    title: str
    message: str
    event: str
    participant: Optional[Participant] = None
    prefill: Dict[str, str] = field(default_factory=dict)
    actions: List[Action] = field(default_factory=list)
    override: bool = False

    @property
    def awaits_operator(self) -> bool:
        return self.decision in OPERATOR_DECISIONS

    def to_dict(self) -> Dict:
        return {
            'decision': self.decision.value,
            'title': self.title,
            'message': self.message,
            'event': self.event,
            'participant': self.participant.to_dict() if self.participant else None,
            'prefill': dict(self.prefill),
            'actions': [action.value for action in self.actions],
            'override': self.override,
        }


@dataclass
class _PendingScan:
    outcome: ScanOutcome
    remote_uid: str


class VerificationService:
    """
    Scan verification engine

    One scan is processed at a time. While an outcome awaits an operator
    decision, further scans are ignored rather than queued. Local state
    always wins over what a payload declares once a local record exists
    for the (uid, event) pair; payload content only bootstraps records.
    """

    def __init__(self, store: ParticipantStore, directory: RemoteDirectory, policy: EventPolicy):
        """
        Initialize verification service

        Args:
            store: Local participant store
            directory: Remote registration directory
            policy: Event configuration (paid events)
        """
        self.store = store
        self.directory = directory
        self.policy = policy
        self.processing = False
        self._pending: Optional[_PendingScan] = None

    @property
    def busy(self) -> bool:
        return self.processing or self._pending is not None

    @property
    def pending(self) -> Optional[ScanOutcome]:
        return self._pending.outcome if self._pending else None

    def scan(self, scanned_text: str, event: str) -> ScanOutcome:
        """
        Process one scanned QR payload for the current event

        Args:
            scanned_text: Decoded text from the camera
            event: Event the operator is admitting people to

        Returns:
            ScanOutcome describing the decision and next actions
        """
        if self.busy:
            return ScanOutcome(
                Decision.IGNORED, "Busy",
                "Finish the current scan before scanning the next code.", event,
            )

        self.processing = True
        try:
            payload = ScanPayload.decode(scanned_text)
            logger.info("Scan for %s decoded as %s payload (uid=%s)",
                        event, payload.kind.value, payload.uid[:50])
            if payload.kind == PayloadKind.BARE:
                outcome = self._resolve_identifier(payload, event)
            else:
                outcome = self._resolve_identity(payload, event)
        finally:
            self.processing = False

        logger.info("Scan of %s for %s: %s", payload.uid[:50], event, outcome.decision.value)
        return outcome

    def confirm(self) -> ScanOutcome:
        """
        Apply the operator's confirmation to the pending scan

        Covers "Confirm Entry", "Allow Anyway" (payment could not be checked)
        and re-enrollment of someone who already participated in a free event.

        Raises:
            InvalidActionException: If no scan awaits confirmation
        """
        pending = self._take_pending("confirm entry", {
            Decision.AWAITING_CONFIRMATION,
            Decision.AWAITING_OVERRIDE,
            Decision.AWAITING_RE_ENROLL,
        })
        outcome = pending.outcome
        participant = outcome.participant
        override = outcome.decision == Decision.AWAITING_OVERRIDE

        if not self.store.mark_participated(participant.uid, outcome.event, override=override):
            return ScanOutcome(
                Decision.REJECTED, "Entry Not Recorded",
                "The local store could not record this entry. Please scan again.",
                outcome.event, participant, actions=[Action.SCAN_NEXT],
            )

        if override:
            logger.warning("Operator override: admitted %s to %s without payment verification",
                           participant.uid, outcome.event)
        admitted = self.store.find_by_uid_and_event(participant.uid, outcome.event) or participant
        return ScanOutcome(
            Decision.ADMITTED, "Entry Confirmed",
            f"{admitted.name} has been marked as PARTICIPATED for {outcome.event}.",
            outcome.event, admitted, actions=[Action.SCAN_NEXT], override=override,
        )

    def confirm_payment(self, amount: float) -> ScanOutcome:
        """
        Record a cash payment collected for the pending scan and admit

        The payment is written to the remote directory first. Only when that
        succeeds is the participant stored locally as paid and participated;
        a failed write leaves the local store untouched.

        Args:
            amount: Amount collected at the desk

        Raises:
            InvalidActionException: If no scan awaits payment
            DataValidationException: If the amount is not a non-negative number
        """
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount < 0:
            raise DataValidationException("amount", "must be a non-negative number")

        pending = self._take_pending("collect payment", {Decision.PENDING_PAYMENT})
        outcome = pending.outcome
        event = outcome.event
        template = outcome.participant

        if not self.directory.register_on_spot_payment(pending.remote_uid, event, amount):
            return ScanOutcome(
                Decision.REJECTED, "Payment Not Recorded",
                "Could not reach the registration directory to record the payment. "
                "Check connectivity and scan again to retry.",
                event, template, actions=[Action.SCAN_NEXT],
            )

        existing = self.store.find_by_uid_and_event(template.uid, event)
        if existing:
            self.store.set_payment_verified(existing.uid, True, event)
            self.store.mark_participated(existing.uid, event)
        else:
            self.store.insert_if_absent(replace(
                template,
                source=Source.WEB,
                sync_status=True,
                payment_verified=True,
                participated=True,
                checked_in=True,
                checkin_time=current_timestamp(self.store.timezone),
            ))

        admitted = self.store.find_by_uid_and_event(template.uid, event) or template
        logger.info("Cash payment of %s collected; admitted %s to %s", amount, template.uid, event)
        return ScanOutcome(
            Decision.ADMITTED, "Payment Recorded",
            f"Payment recorded. {admitted.name} has been marked as PARTICIPATED for {event}.",
            event, admitted, actions=[Action.SCAN_NEXT],
        )

    def cancel(self) -> ScanOutcome:
        """Abandon the pending scan, if any, and accept the next scan"""
        pending, self._pending = self._pending, None
        if pending is None:
            return ScanOutcome(Decision.ABANDONED, "Ready", "No scan in progress.", "",
                               actions=[Action.SCAN_NEXT])
        outcome = pending.outcome
        return ScanOutcome(
            Decision.ABANDONED, "Scan Cancelled", "No changes were made.",
            outcome.event, outcome.participant, actions=[Action.SCAN_NEXT],
        )

    def _take_pending(self, action: str, allowed: set) -> _PendingScan:
        if self._pending is None:
            raise InvalidActionException(action, "no scan is awaiting a decision")
        if self._pending.outcome.decision not in allowed:
            raise InvalidActionException(
                action, f"pending scan is {self._pending.outcome.decision.value}")
        pending, self._pending = self._pending, None
        return pending

    def _hold(self, outcome: ScanOutcome, remote_uid: str) -> ScanOutcome:
        if outcome.awaits_operator:
            self._pending = _PendingScan(outcome, remote_uid)
        return outcome

    def _resolve_identity(self, payload: ScanPayload, event: str) -> ScanOutcome:
        participant = self.store.find_by_uid_and_event(payload.uid, event)
        if participant:
            return self._decide(participant, event, payload.uid, pre_existing=True)

        if event not in payload.events:
            registered = ", ".join(payload.events) or "None"
            return ScanOutcome(
                Decision.PENDING_REGISTRATION, "Not Registered For Event",
                f"{payload.name} is registered for [{registered}], not {event}. "
                f"Would you like to register them for {event}?",
                event, prefill=payload.prefill(),
                actions=[Action.REGISTER, Action.SCAN_NEXT],
            )

        paid = self.policy.is_paid(event)
        if paid and not payload.proves_payment_for(event):
            return self._pending_payment(
                payload.to_participant(event, payment_verified=False), event, payload.uid,
                f"{payload.name} has no verified payment for {event}.",
            )

        fresh = payload.to_participant(event, payment_verified=paid)
        if self.store.insert_if_absent(fresh):
            logger.info("Auto-registered %s for %s from QR payload", payload.uid, event)
        participant = self.store.find_by_uid_and_event(payload.uid, event) or fresh
        return self._decide(participant, event, payload.uid, pre_existing=False)

    def _resolve_identifier(self, payload: ScanPayload, event: str) -> ScanOutcome:
        uid = payload.uid
        if not uid:
            return ScanOutcome(Decision.REJECTED, "Empty Code", "The scanned code is empty.",
                               event, actions=[Action.SCAN_NEXT])

        participant = self.store.find_by_uid_and_event(uid, event)
        if participant:
            return self._decide(participant, event, uid, pre_existing=True)

        notes = []
        elsewhere = self.store.find_by_identity(uid)
        if elsewhere:
            notes.append(f"Registered locally for {elsewhere.event_id}, not {event}.")

        registration = None
        try:
            registration = self.directory.get_registration(uid)
        except RemoteDirectoryUnavailable:
            notes.append("Registration directory unreachable; online lookup skipped.")

        if registration and registration.is_registered_for(event):
            fresh = registration.to_participant(uid, event)
            if self.store.insert_if_absent(fresh):
                logger.info("Registered %s for %s from the remote directory", uid, event)
            participant = self.store.find_by_uid_and_event(uid, event) or fresh
            return self._decide(participant, event, uid, pre_existing=False)

        display_uid = uid if len(uid) <= 50 else uid[:50] + "..."
        if self.policy.is_paid(event):
            template = (registration.to_participant(uid, event) if registration
                        else Participant(uid=uid, event_id=event, name="Unknown"))
            template.payment_verified = False
            notes.insert(0, f"No registration found for {display_uid}.")
            return self._pending_payment(template, event, uid, " ".join(notes))

        notes.insert(0, f"No registration found for {display_uid}.")
        notes.append("Please register on the website or at the desk first.")
        return ScanOutcome(
            Decision.REJECTED, "Not Registered", " ".join(notes), event,
            actions=[Action.REGISTER, Action.SCAN_NEXT],
        )

    def _decide(self, participant: Participant, event: str, remote_uid: str,
                pre_existing: bool) -> ScanOutcome:
        paid = self.policy.is_paid(event)

        if participant.participated:
            if paid:
                return ScanOutcome(
                    Decision.REJECTED, "Already Participated",
                    f"{participant.name} has already participated in {event}. "
                    f"Re-entry is not allowed for paid events.",
                    event, participant, actions=[Action.SCAN_NEXT],
                )
            return self._hold(ScanOutcome(
                Decision.AWAITING_RE_ENROLL, "Already Participated",
                f"{participant.name} has already participated in {event}. Enroll again?",
                event, participant, actions=[Action.RE_ENROLL, Action.CANCEL],
            ), remote_uid)

        if paid:
            if not pre_existing:
                if not participant.payment_verified:
                    return self._pending_payment(
                        participant, event, remote_uid,
                        f"This is a paid event and payment for {participant.name} "
                        f"has not been verified.",
                    )
            elif not self._desk_collected(participant):
                try:
                    status = self.directory.check_payment(remote_uid, event)
                except RemoteDirectoryUnavailable:
                    return self._hold(ScanOutcome(
                        Decision.AWAITING_OVERRIDE, "Cannot Verify Payment",
                        f"Unable to verify payment status for {participant.name} "
                        f"(might be offline). Please verify manually.",
                        event, participant, actions=[Action.ALLOW_ANYWAY, Action.CANCEL],
                    ), remote_uid)
                if not status.verified:
                    return self._pending_payment(
                        participant, event, remote_uid,
                        f"This is a paid event and payment for {participant.name} "
                        f"has not been verified.",
                    )
                if not participant.payment_verified:
                    self.store.set_payment_verified(participant.uid, True, event)
                    participant.payment_verified = True

        return self._hold(ScanOutcome(
            Decision.AWAITING_CONFIRMATION, "Verification Successful",
            f"{participant.name} ({participant.email or 'N/A'}) - {event}. Mark as PARTICIPATED?",
            event, participant, actions=[Action.CONFIRM, Action.CANCEL],
        ), remote_uid)

    @staticmethod
    def _desk_collected(participant: Participant) -> bool:
        # the remote directory learns of desk payments only after a push
        return (participant.source == Source.ONSPOT
                and not participant.sync_status
                and participant.payment_verified)

    def _pending_payment(self, participant: Participant, event: str, remote_uid: str,
                         message: str) -> ScanOutcome:
        return self._hold(ScanOutcome(
            Decision.PENDING_PAYMENT, "Payment Required",
            f"{message} Collect payment at the desk to admit.",
            event, participant, actions=[Action.COLLECT_PAYMENT, Action.CANCEL],
        ), remote_uid)


REQUIRED_CHOICES = ('college', 'degree', 'department', 'year')
OTHER_CHOICES = ('college', 'degree', 'department')


class RegistrationService:
    """
    Handles on-spot registration at the event desk

    Records created here are ONSPOT and unsynced until the reconciler
    pushes them. The person is physically present, so the record is
    created as participated.
    """

    def __init__(self, store: ParticipantStore, policy: EventPolicy):
        self.store = store
        self.policy = policy

    def validate(self, form: Dict, event: str) -> Dict[str, str]:
        """
        Validate a registration form

        Args:
            form: Submitted form fields
            event: Event the registration applies to

        Returns:
            Cleaned form values with "Other" choices resolved

        Raises:
            DataValidationException: If any field is invalid
        """
        if not event:
            raise DataValidationException("event", "Please select an event")

        values = {key: str(form.get(key) or "").strip() for key in (
            'name', 'email', 'phone', 'year',
            'college', 'college_other', 'degree', 'degree_other',
            'department', 'department_other',
        )}

        if not values['name']:
            raise DataValidationException("name", "Please enter full name")
        if '@' not in values['email']:
            raise DataValidationException("email", "Please enter a valid email")
        if not (values['phone'].isdigit() and len(values['phone']) == 10):
            raise DataValidationException("phone", "Please enter a valid 10-digit phone number")

        for choice in REQUIRED_CHOICES:
            if not values[choice]:
                raise DataValidationException(choice, f"Please select a {choice}")
        for choice in OTHER_CHOICES:
            if values[choice] == OTHER_OPTION:
                if not values[f"{choice}_other"]:
                    raise DataValidationException(f"{choice}_other", f"Please enter your {choice}")
            else:
                values[f"{choice}_other"] = ""

        values['email'] = values['email'].lower()
        return values

    def register(self, form: Dict, event: str, prefilled_uid: str = None):
        """
        Register a participant at the desk

        Args:
            form: Submitted form fields (see validate)
            event: Event to register for
            prefilled_uid: uid carried over from a scanned QR code

        Returns:
            Tuple of (Participant, QR payload text for the new credential)

        Raises:
            DataValidationException: If the form is invalid or the uid is
                already registered for the event
        """
        values = self.validate(form, event)
        uid = prefilled_uid or self._new_uid(event)
        paid = self.policy.is_paid(event)

        participant = Participant(
            uid=uid,
            event_id=event,
            name=values['name'],
            phone=values['phone'],
            email=values['email'],
            college=values['college_other'] or values['college'],
            college_other=values['college_other'],
            degree=values['degree_other'] or values['degree'],
            degree_other=values['degree_other'],
            department=values['department_other'] or values['department'],
            department_other=values['department_other'],
            year=values['year'],
            source=Source.ONSPOT,
            sync_status=False,
            payment_verified=paid,
            participated=True,
            checked_in=True,
            checkin_time=current_timestamp(self.store.timezone),
        )

        if not self.store.insert_if_absent(participant):
            raise DataValidationException("uid", f"'{uid}' is already registered for {event}")

        logger.info("On-spot registration %s for %s", uid, event)
        return participant, self.credential_payload(participant, form.get('amount'))

    @staticmethod
    def _new_uid(event: str) -> str:
        return f"{compact_event_name(event)}-ONSPOT-{int(time.time() * 1000)}-{random.randint(0, 9999)}"

    def credential_payload(self, participant: Participant, amount=None) -> str:
        """Identity payload for the participant's QR credential"""
        event = participant.event_id
        payments = []
        if self.policy.is_paid(event):
            payments.append({
                'eventNames': [event],
                'verified': True,
                'amount': amount or 0,
                'id': on_spot_payment_id(participant.uid, event),
            })
        return json.dumps({
            'uid': participant.uid,
            'name': participant.name,
            'email': participant.email,
            'phone': participant.phone,
            'college': participant.college,
            'dept': participant.department,
            'year': participant.year,
            'events': [event],
            'payments': payments,
        })
