import json

from models.audit_log import AuditLog
from models.booking import BookingStatus, PaymentStatus
from models.webhook_event import WebhookEvent

from tests.conftest import COURT, VENUE, day_slots, fresh, fresh_booking, hold_payload, payment_event, post_webhook


def test_success_confirms_hold_and_replay_is_noop(client, machine, calendar):
    machine.create_hold(hold_payload("b1"))
    event = payment_event("evt_1", "payment_intent.succeeded", "pi_1", booking_id="b1")

    resp = post_webhook(client, event)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["received"] is True
    assert (body["status"], body["action"], body["bookingId"]) == ("processed", "confirmed", "b1")

    booking = fresh_booking("b1")
    assert (booking.status, booking.payment_status) == (BookingStatus.CONFIRMED, PaymentStatus.PAID)
    assert booking.invoice_number == "000001"
    assert day_slots()["10:00"].booking_id == "b1"

    again = post_webhook(client, event).get_json()
    assert again["status"] == "already_processed"
    assert again["action"] == "confirmed"
    record = fresh(WebhookEvent, "evt_1")
    assert record.processed and record.delivery_count == 2
    assert fresh_booking("b1").invoice_number == "000001"


def test_success_for_unknown_booking_creates_emergency_booking(client, calendar):
    event = payment_event(
        "evt_2", "payment_intent.succeeded", "pi_2", booking_id="b2",
        courtId=COURT, venueId=VENUE, startTime="2030-05-10T12:00:00", endTime="2030-05-10T13:00:00",
    )
    body = post_webhook(client, event).get_json()

    assert body["action"] == "emergency_booking_created"
    booking = fresh_booking("b2")
    assert booking.recovered_from_payment
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_reference == "pi_2"
    assert day_slots()["12:30"].booking_id == "b2"
    assert AuditLog.query.filter_by(action="EMERGENCY_BOOKING_CREATED", entity_id="b2").count() == 1


def test_success_on_taken_slot_flags_booking(client, machine, calendar):
    machine.create_hold(hold_payload("b1", "10:00", "11:00"))
    machine.create_hold(hold_payload("b2", "10:30", "11:30"))
    post_webhook(client, payment_event("evt_1", "payment_intent.succeeded", "pi_1", booking_id="b1"))

    body = post_webhook(client, payment_event("evt_2", "payment_intent.succeeded", "pi_2", booking_id="b2")).get_json()
    assert body["status"] == "processed"

    booking = fresh_booking("b2")
    assert booking.payment_status == PaymentStatus.PAID
    assert booking.slot_conflict and booking.needs_manual_review
    assert AuditLog.query.filter_by(action="BOOKING_SLOT_CONFLICT", entity_id="b2").count() == 1


def test_failed_payment_cancels_hold(client, machine, calendar):
    machine.create_hold(hold_payload("b1"))
    event = payment_event("evt_f", "payment_intent.payment_failed", "pi_1", booking_id="b1")
    event["data"]["object"]["last_payment_error"] = {"message": "Your card was declined."}

    body = post_webhook(client, event).get_json()
    assert body["action"] == "marked_failed"
    booking = fresh_booking("b1")
    assert (booking.status, booking.payment_status) == (BookingStatus.CANCELLED, PaymentStatus.FAILED)


def test_processing_after_success_does_not_demote(client, machine, calendar):
    machine.create_hold(hold_payload("b1"))
    post_webhook(client, payment_event("evt_1", "payment_intent.succeeded", "pi_1", booking_id="b1"))

    body = post_webhook(client, payment_event("evt_p", "payment_intent.processing", "pi_1", booking_id="b1")).get_json()
    assert body["action"] == "noop"
    assert fresh_booking("b1").payment_status == PaymentStatus.PAID


def test_success_without_booking_id_is_recorded_as_failed(client, calendar):
    body = post_webhook(client, payment_event("evt_x", "payment_intent.succeeded", "pi_9")).get_json()

    assert body["status"] == "failed"
    record = fresh(WebhookEvent, "evt_x")
    assert record.processed and record.result == "failed"
    assert AuditLog.query.filter_by(action="PAYMENT_EVENT_FAILED").count() == 1


def test_unknown_event_type_is_ignored(client, calendar):
    event = {"id": "evt_u", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}
    body = post_webhook(client, event).get_json()

    assert body["status"] == "ignored"
    assert fresh(WebhookEvent, "evt_u").result == "ignored"


def test_bad_signature_is_rejected_before_persisting(client, calendar):
    event = payment_event("evt_1", "payment_intent.succeeded", "pi_1", booking_id="b1")
    resp = post_webhook(client, event, secret="whsec_wrong")

    assert resp.status_code == 400
    assert resp.get_json()["errorCode"] == "invalid_signature"
    assert WebhookEvent.query.count() == 0

    rejected = AuditLog.query.filter_by(action="WEBHOOK_REJECTED").one()
    assert json.loads(rejected.metadata_json)["errorCode"] == "invalid_signature"


def test_missing_signature_header(client, calendar):
    resp = client.post("/webhooks/stripe", data=json.dumps({"id": "evt_1"}),
                       headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    rejected = AuditLog.query.filter_by(action="WEBHOOK_REJECTED").one()
    assert json.loads(rejected.metadata_json)["hasSignature"] is False


def test_missing_webhook_secret_is_configuration_error(client, gateway, calendar):
    gateway.webhook_secret = None
    resp = post_webhook(client, payment_event("evt_1", "payment_intent.succeeded", "pi_1", booking_id="b1"))

    assert resp.status_code == 500
    assert resp.get_json()["errorCode"] == "configuration_error"
    assert AuditLog.query.filter_by(action="WEBHOOK_REJECTED").count() == 1
