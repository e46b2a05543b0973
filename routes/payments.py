import logging

from flask import Blueprint, jsonify, request

from models import db
from models.booking import Booking, BookingStatus, PaymentStatus
from services import build_reconciliation, build_state_machine, get_gateway
from services.errors import InvalidStateError, NotFoundError, ValidationError
from services.events import BookingMetadata
from services.gateway import to_minor_units

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")

# intents still usable by the client
REUSABLE_INTENT_STATES = {"requires_payment_method", "requires_confirmation", "requires_action"}
SETTLED_PAYMENT_STATUSES = {PaymentStatus.PAID, PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED}


def _metadata_for(booking: Booking, email=None) -> BookingMetadata:
    return BookingMetadata(
        booking_id=booking.id,
        court_id=booking.court_id,
        venue_id=booking.venue_id,
        date=booking.date.isoformat(),
        start_time=booking.start_time.isoformat(),
        end_time=booking.end_time.isoformat(),
        user_id=booking.user_id,
        user_name=booking.user_name,
        email=email or booking.customer_email,
    )


@payments_bp.post("/intent")
def create_intent():
    data = request.get_json(silent=True) or {}
    booking_id = data.get("bookingId")
    if not booking_id:
        raise ValidationError("bookingId is required", details={"field": "bookingId"})

    machine = build_state_machine()
    booking = machine.get(booking_id)
    if booking.status != BookingStatus.HOLDING:
        raise InvalidStateError(f"Cannot start payment for booking with status: {booking.status}")

    gateway = get_gateway()
    if booking.payment_reference:
        existing = gateway.retrieve_payment(booking.payment_reference)
        if existing is not None and existing.status in REUSABLE_INTENT_STATES:
            return jsonify(clientSecret=existing.client_secret, paymentIntentId=existing.id), 200

    email = (data.get("email") or "").strip().lower() or None
    metadata = _metadata_for(booking, email)
    intent = gateway.create_payment_intent(
        to_minor_units(booking.price),
        booking.currency,
        metadata.to_gateway(),
        receipt_email=metadata.email,
        description=f"Court {booking.court_id} on {booking.date.isoformat()}",
        idempotency_key=None if booking.payment_reference else f"booking-{booking.id}",
    )
    machine.attach_payment(booking.id, intent.id)
    logger.info("Created payment intent %s for booking %s", intent.id, booking.id)
    return jsonify(clientSecret=intent.client_secret, paymentIntentId=intent.id), 200


@payments_bp.get("/status")
def payment_status():
    booking_id = request.args.get("bookingId")
    reference = request.args.get("paymentIntentId")
    if not booking_id and not reference:
        raise ValidationError("bookingId or paymentIntentId is required")

    booking = None
    if booking_id:
        booking = db.session.get(Booking, booking_id)
        if booking is None and not reference:
            raise NotFoundError("Booking not found", details={"bookingId": booking_id})
        if booking is not None:
            reference = reference or booking.payment_reference
    else:
        booking = Booking.query.filter_by(payment_reference=reference).first()

    payment = get_gateway().retrieve_payment(reference) if reference else None

    recovery = None
    if payment is not None and payment.succeeded and (
        booking is None or booking.payment_status not in SETTLED_PAYMENT_STATUSES
    ):
        # The webhook hasn't landed (or was lost); fix it up now
        recovery = build_reconciliation().recover_by_payment_reference(
            payment.id, booking.id if booking is not None else booking_id
        )
        target = booking.id if booking is not None else recovery.get("bookingId")
        booking = db.session.get(Booking, target) if target else None

    return jsonify(
        success=True,
        booking=booking.to_dict() if booking is not None else None,
        payment={
            "id": payment.id,
            "status": payment.status,
            "amount": payment.amount,
            "currency": payment.currency,
        } if payment is not None else None,
        recovery=recovery,
    ), 200
