from models.audit_log import AuditLog
from models.booking import BookingStatus, PaymentStatus, RefundStatus
from models.payment import PaymentTransactionLog

from tests.conftest import day_slots, fresh_booking, hold_payload, post_webhook


def _paid_booking(client, gateway, booking_id="b1"):
    """Hold -> intent -> gateway success -> status poll confirms it."""
    assert client.post("/bookings", json=hold_payload(booking_id)).status_code == 201
    intent = client.post("/payments/intent", json={"bookingId": booking_id}).get_json()
    gateway.succeed(intent["paymentIntentId"])
    status = client.get(f"/payments/status?bookingId={booking_id}").get_json()
    assert status["booking"]["status"] == BookingStatus.CONFIRMED
    return intent["paymentIntentId"]


def _refund(client, headers, **body):
    return client.post("/admin/refunds", json={"bookingId": "b1", **body}, headers=headers)


def test_full_refund_cancels_and_frees_slots(client, gateway, calendar, admin_headers):
    _paid_booking(client, gateway)

    resp = _refund(client, admin_headers, reason="rain")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert (body["amount"], body["status"], body["bookingStatus"]) == (20.0, "succeeded", BookingStatus.CANCELLED)

    booking = fresh_booking("b1")
    assert booking.payment_status == PaymentStatus.REFUNDED
    assert booking.refund_status == RefundStatus.SUCCEEDED
    assert booking.refunded_by == "admin-1"
    assert day_slots()["10:00"].available
    assert PaymentTransactionLog.query.filter_by(kind="refund").count() == 2


def test_partial_refund_keeps_booking_and_blocks_second_refund(client, gateway, calendar, admin_headers):
    _paid_booking(client, gateway)

    body = _refund(client, admin_headers, amount=5).get_json()
    assert (body["amount"], body["bookingStatus"]) == (5.0, BookingStatus.CONFIRMED)
    booking = fresh_booking("b1")
    assert booking.payment_status == PaymentStatus.PARTIALLY_REFUNDED
    assert str(booking.refund_amount) == "5.00"
    assert day_slots()["10:00"].booking_id == "b1"

    again = _refund(client, admin_headers)
    assert again.status_code == 409
    assert again.get_json()["errorCode"] == "already_refunded"
    assert len(gateway.refunds) == 1


def test_refund_larger_than_charge_releases_claim(client, gateway, calendar, admin_headers):
    _paid_booking(client, gateway)

    resp = _refund(client, admin_headers, amount=50)
    assert resp.status_code == 400
    assert resp.get_json()["errorCode"] == "amount_too_large"
    assert fresh_booking("b1").refund_status is None
    assert AuditLog.query.filter_by(action="REFUND_ERROR", entity_id="b1").count() == 1

    # the released claim lets a corrected request through
    assert _refund(client, admin_headers, amount=10).status_code == 200


def test_refund_rejects_bad_amount(client, gateway, calendar, admin_headers):
    _paid_booking(client, gateway)
    resp = _refund(client, admin_headers, amount="lots")
    assert resp.status_code == 400
    assert resp.get_json()["errorCode"] == "invalid_amount"


def test_refund_of_unpaid_booking_is_rejected(client, calendar, admin_headers):
    client.post("/bookings", json=hold_payload("b1"))
    resp = _refund(client, admin_headers)
    assert resp.status_code == 400
    assert resp.get_json()["errorCode"] == "invalid_state"


def test_refund_requires_admin_token(client, gateway, calendar):
    _paid_booking(client, gateway)
    assert _refund(client, {}).status_code == 401
    assert _refund(client, {"Authorization": "Bearer not-a-token"}).status_code == 401


def test_pending_refund_settles_from_webhook(client, gateway, calendar, admin_headers):
    payment_id = _paid_booking(client, gateway)
    gateway.refund_status = "pending"

    body = _refund(client, admin_headers).get_json()
    assert body["status"] == "pending"
    assert fresh_booking("b1").refund_status == RefundStatus.PENDING
    assert day_slots()["10:00"].booking_id == "b1"

    event = {"id": "evt_r1", "type": "refund.updated", "data": {"object": {
        "id": body["refundId"], "status": "succeeded", "amount": 2000, "currency": "eur",
        "payment_intent": payment_id, "metadata": {"bookingId": "b1"},
    }}}
    assert post_webhook(client, event).get_json()["action"] == "refunded"

    booking = fresh_booking("b1")
    assert booking.payment_status == PaymentStatus.REFUNDED
    assert day_slots()["10:00"].available


def test_failed_refund_flags_for_review(client, gateway, calendar, admin_headers):
    _paid_booking(client, gateway)
    gateway.refund_status = "failed"

    body = _refund(client, admin_headers).get_json()
    assert (body["status"], body["bookingStatus"]) == ("failed", BookingStatus.CONFIRMED)
    booking = fresh_booking("b1")
    assert booking.refund_status == RefundStatus.FAILED
    assert booking.needs_manual_review


def test_charge_refunded_webhook_without_admin_request(client, gateway, calendar):
    payment_id = _paid_booking(client, gateway)
    event = {"id": "evt_c1", "type": "charge.refunded", "data": {"object": {
        "id": f"ch_{payment_id}", "payment_intent": payment_id, "amount": 2000, "amount_refunded": 2000,
        "refunded": True, "refunds": {"data": [{"id": "re_dash"}]},
    }}}

    body = post_webhook(client, event).get_json()
    assert body["action"] == "refunded"
    assert fresh_booking("b1").payment_status == PaymentStatus.REFUNDED
