import pytest

from models import db
from models.audit_log import AuditLog
from models.webhook_event import WebhookEvent
from services.errors import ConfigurationError, TransientError, ValidationError
from services.events import ChargeRefunded, PaymentCanceled, PaymentFailed, RefundEvent, UnknownEvent, parse_event
from services.payment_events import PaymentEventProcessor, ProcessingStatus
from services.state_machine import Action, TransitionResult

from tests.conftest import fresh, payment_event


class ScriptedMachine:
    """Raises the queued errors in order, then succeeds."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = []

    def apply_payment_succeeded(self, booking_id, payment, metadata=None, source="webhook", event_id=None):
        self.calls.append(booking_id)
        if self.errors:
            raise self.errors.pop(0)
        return TransitionResult(Action.CONFIRMED, booking_id)


def _processor(machine, sleeps=None):
    return PaymentEventProcessor(
        db.session, machine, retry_attempts=3, base_delay=0.5,
        sleep=(sleeps.append if sleeps is not None else lambda _: None),
    )


def test_transient_failure_is_retried_then_processed(app):
    machine = ScriptedMachine(TransientError("db blip"))
    sleeps = []
    result = _processor(machine, sleeps).handle(payment_event("evt_1", "payment_intent.succeeded", "pi_1", "b1"))

    assert result.status == ProcessingStatus.PROCESSED
    assert result.action == Action.CONFIRMED
    assert machine.calls == ["b1", "b1"]
    assert sleeps == [0.5]


def test_exhausted_retries_mark_failed_and_flag_reconciliation(app):
    machine = ScriptedMachine(*[TransientError("db down")] * 3)
    sleeps = []
    result = _processor(machine, sleeps).handle(payment_event("evt_1", "payment_intent.succeeded", "pi_1", "b1"))

    assert result.status == ProcessingStatus.FAILED
    assert len(machine.calls) == 3
    assert sleeps == [0.5, 1.0]
    record = fresh(WebhookEvent, "evt_1")
    assert record.processed and record.error == "db down"
    audit = AuditLog.query.filter_by(action="RECONCILIATION_REQUIRED").one()
    assert audit.entity_id == "b1"


def test_permanent_failure_is_not_retried(app):
    machine = ScriptedMachine(ValidationError("bad metadata"))
    result = _processor(machine).handle(payment_event("evt_1", "payment_intent.succeeded", "pi_1", "b1"))

    assert result.status == ProcessingStatus.FAILED
    assert machine.calls == ["b1"]
    assert AuditLog.query.filter_by(action="PAYMENT_EVENT_FAILED").count() == 1


def test_configuration_error_leaves_event_unprocessed(app):
    machine = ScriptedMachine(ConfigurationError("no key"))
    with pytest.raises(ConfigurationError):
        _processor(machine).handle(payment_event("evt_1", "payment_intent.succeeded", "pi_1", "b1"))

    record = fresh(WebhookEvent, "evt_1")
    assert record is not None and not record.processed

    # redelivery after the fix goes through
    result = _processor(ScriptedMachine()).handle(payment_event("evt_1", "payment_intent.succeeded", "pi_1", "b1"))
    assert result.status == ProcessingStatus.PROCESSED
    assert fresh(WebhookEvent, "evt_1").delivery_count == 2


def test_parse_event_variants():
    failed = payment_event("e1", "payment_intent.payment_failed", "pi_1", "b1")
    failed["data"]["object"]["last_payment_error"] = {"message": "declined"}
    assert isinstance(parse_event(failed), PaymentFailed)
    assert parse_event(failed).reason == "declined"

    canceled = payment_event("e2", "payment_intent.canceled", "pi_1", "b1")
    canceled["data"]["object"]["cancellation_reason"] = "abandoned"
    assert isinstance(parse_event(canceled), PaymentCanceled)

    refund = {"id": "e3", "type": "refund.updated", "data": {"object": {
        "id": "re_1", "status": "succeeded", "amount": 500, "payment_intent": "pi_1", "metadata": {"bookingId": "b1"},
    }}}
    parsed = parse_event(refund)
    assert isinstance(parsed, RefundEvent)
    assert (parsed.refund.payment_reference, parsed.metadata.booking_id) == ("pi_1", "b1")

    charge = {"id": "e4", "type": "charge.refunded", "data": {"object": {
        "id": "ch_1", "payment_intent": "pi_1", "amount": 2000, "amount_refunded": 2000, "refunded": True,
        "refunds": {"data": [{"id": "re_1"}]},
    }}}
    parsed = parse_event(charge)
    assert isinstance(parsed, ChargeRefunded)
    assert parsed.fully_refunded and parsed.refund_id == "re_1"

    assert isinstance(parse_event({"id": "e5", "type": "invoice.paid"}), UnknownEvent)


def test_blank_metadata_values_are_absent():
    event = parse_event(payment_event("e1", "payment_intent.succeeded", "pi_1", "b1", courtId="  ", venueId=""))
    assert event.metadata.court_id is None
    assert event.metadata.venue_id is None
    assert event.metadata.booking_id == "b1"
