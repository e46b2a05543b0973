"""
Booking lifecycle.

Every transition runs as one optimistic transaction: the booking row and, when
slots move, the MonthlyAvailability document are version-checked on commit,
so duplicate or racing events re-run against fresh state instead of
double-applying.

    status:          holding -> confirmed | cancelled
    payment_status:  pending -> processing -> paid | failed | cancelled | abandoned
                     paid -> partially_refunded | refunded
"""

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.exc import IntegrityError

from models.booking import Booking, BookingStatus, PaymentStatus, RefundStatus, new_booking_id
from models.payment import PaymentTransactionLog
from services.availability import slot_keys
from services.counters import SequenceCounterService, mint_invoice_number
from services.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from services.events import BookingMetadata
from services.gateway import GatewayPayment, GatewayRefund, from_minor_units, to_minor_units
from services.reservations import ReservationOutcome, ReservationResult, SlotReservationTransactor
from services.transactions import run_transaction
from utils.audit import log_event
from utils.timeutil import utcnow

logger = logging.getLogger(__name__)

# Higher rank never moves back to a lower one.
PAYMENT_RANK = {
    None: 0,
    PaymentStatus.PENDING: 0,
    PaymentStatus.PROCESSING: 1,
    PaymentStatus.FAILED: 2,
    PaymentStatus.CANCELLED: 2,
    PaymentStatus.ABANDONED: 2,
    PaymentStatus.PAID: 3,
    PaymentStatus.PARTIALLY_REFUNDED: 4,
    PaymentStatus.REFUNDED: 4,
}

UNKNOWN_COURT = "recovery-unknown"
MAX_BOOKING_ID_LENGTH = 64


class Action:
    CREATED = "created"
    CONFIRMED = "confirmed"
    EMERGENCY_CREATED = "emergency_booking_created"
    ALREADY_PAID = "already_paid"
    MARKED_FAILED = "marked_failed"
    MARKED_CANCELLED = "marked_cancelled"
    MARKED_PROCESSING = "marked_processing"
    HOLD_EXPIRED = "hold_expired"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUND_FAILED = "refund_failed"
    NOOP = "noop"
    BOOKING_MISSING = "booking_missing"


@dataclass
class TransitionResult:
    action: str
    booking_id: Optional[str]
    booking: Optional[Booking] = None
    reservation: Optional[ReservationResult] = None
    invoice_number: Optional[str] = None
    changed: bool = True

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "bookingId": self.booking_id,
            "reservation": self.reservation.outcome if self.reservation else None,
            "invoiceNumber": self.invoice_number,
            "changed": self.changed,
        }


def _parse_iso(value, field_name: str) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        raise ValidationError(
            f"Invalid {field_name}. Use ISO e.g. 2026-01-20T18:00:00", details={"field": field_name}
        )


def _parse_price(value) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("price must be a number", details={"field": "price"})
    if not price.is_finite() or price < 0:
        raise ValidationError("price must be zero or positive", details={"field": "price"})
    return price.quantize(Decimal("0.01"))


def _refund_minor_units(amount) -> int:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError("Invalid refund amount", code="invalid_amount")
    if not value.is_finite():
        raise ValidationError("Invalid refund amount", code="invalid_amount")
    return to_minor_units(value)


class BookingStateMachine:
    def __init__(
        self,
        session,
        transactor: SlotReservationTransactor,
        counters: SequenceCounterService,
        gateway=None,
        notifier=None,
        clock=utcnow,
        invoice_padding: int = 6,
        max_attempts: int = 5,
        default_currency: str = "eur",
    ):
        self.session = session
        self.transactor = transactor
        self.counters = counters
        self.gateway = gateway
        self.notifier = notifier
        self.clock = clock
        self.invoice_padding = invoice_padding
        self.max_attempts = max_attempts
        self.default_currency = default_currency

    # ---------- helpers ----------

    def _run(self, work, label: str):
        return run_transaction(self.session, work, max_attempts=self.max_attempts, label=label)

    def get(self, booking_id: str) -> Booking:
        booking = self.session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", details={"bookingId": booking_id})
        return booking

    def _record_transaction(self, booking_id, transaction_id, kind, status, amount, currency, source, event_id=None, **extra):
        if not transaction_id:
            return
        self.session.add(
            PaymentTransactionLog(
                booking_id=booking_id,
                transaction_id=transaction_id,
                event_id=event_id,
                kind=kind,
                status=status,
                amount=amount,
                currency=currency,
                source=source,
                metadata_json=json.dumps(extra, default=str) if extra else None,
            )
        )

    def _audit(self, action, booking_id, metadata=None, actor_id=None):
        log_event(action, actor_id=actor_id, entity="booking", entity_id=booking_id,
                  metadata=metadata, session=self.session, commit=False)

    def _notify(self, result: TransitionResult) -> None:
        if self.notifier is None or result.booking is None:
            return
        if result.action in (Action.CONFIRMED, Action.EMERGENCY_CREATED):
            self.notifier.notify(result.booking)

    # ---------- client-facing ----------

    def create_hold(self, data: dict) -> Booking:
        """Write a holding/pending booking. No slot is reserved here."""
        court_id = (str(data.get("courtId") or "")).strip()
        venue_id = (str(data.get("venueId") or "")).strip()
        if not court_id or not venue_id or not data.get("startTime") or not data.get("endTime"):
            raise ValidationError("courtId, venueId, startTime, endTime are required")
        if data.get("price") is None:
            raise ValidationError("price is required", details={"field": "price"})

        start = _parse_iso(data["startTime"], "startTime")
        end = _parse_iso(data["endTime"], "endTime")
        if end <= start:
            raise ValidationError("endTime must be after startTime")
        if end - start > timedelta(days=1) or (end.date() != start.date() and end.time() != datetime.min.time()):
            raise ValidationError("A booking must start and end on the same day")

        day = start.date()
        if data.get("date"):
            try:
                requested_day = date.fromisoformat(str(data["date"])[:10])
            except ValueError:
                raise ValidationError("Invalid date. Use YYYY-MM-DD", details={"field": "date"})
            if requested_day != day:
                raise ValidationError("date must match the day of startTime")

        price = _parse_price(data["price"])
        booking_id = (str(data.get("id") or "")).strip() or None
        if booking_id and len(booking_id) > MAX_BOOKING_ID_LENGTH:
            raise ValidationError("id is too long", details={"field": "id"})

        if booking_id:
            existing = self.session.get(Booking, booking_id)
            if existing is not None:
                same = (existing.court_id, existing.start_time, existing.end_time) == (court_id, start, end)
                if same and existing.status == BookingStatus.HOLDING:
                    return existing
                raise ConflictError("Booking id already used", details={"bookingId": booking_id})

        self._ensure_slots_look_free(venue_id, court_id, day, start, end)

        now = self.clock()
        booking = Booking(
            id=booking_id or new_booking_id(),
            user_id=data.get("userId"),
            user_name=data.get("userName"),
            customer_email=(data.get("email") or "").strip().lower() or None,
            venue_id=venue_id,
            court_id=court_id,
            date=day,
            start_time=start,
            end_time=end,
            price=price,
            currency=(data.get("currency") or self.default_currency).lower(),
            status=BookingStatus.HOLDING,
            payment_status=PaymentStatus.PENDING,
            last_active=now,
            created_at=now,
            updated_at=now,
        )
        self.session.add(booking)
        try:
            self.session.flush()
            self._audit("BOOKING_HOLD_CREATE", booking.id, {"courtId": court_id, "date": day.isoformat()})
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError("Booking id already used", details={"bookingId": booking_id})
        logger.info("Created hold %s for court %s %s-%s", booking.id, court_id, start, end)
        return booking

    def _ensure_slots_look_free(self, venue_id, court_id, day, start, end) -> None:
        """Advisory check only; the authoritative one happens at reserve time."""
        slots = self.transactor.store.day_slots(venue_id, court_id, day)
        if not slots:
            return
        keys = slot_keys(start, end, self.transactor.store.granularity_minutes)
        taken = [k for k in keys if k in slots and not slots[k].available]
        if taken:
            raise ConflictError("Slot already booked", code="slot_taken", details={"slots": taken})

    def touch(self, booking_id: str) -> Booking:
        """Client heartbeat while on the payment page."""

        def work():
            booking = self.get(booking_id)
            if booking.status == BookingStatus.CANCELLED:
                raise InvalidStateError("Booking hold has expired", code="hold_expired")
            if booking.status == BookingStatus.HOLDING:
                booking.last_active = self.clock()
            return booking

        return self._run(work, f"touch {booking_id}")

    def attach_payment(self, booking_id: str, reference: str) -> Booking:
        def work():
            booking = self.get(booking_id)
            if booking.status != BookingStatus.HOLDING:
                raise InvalidStateError(f"Cannot start payment for booking with status: {booking.status}")
            booking.payment_reference = reference
            booking.last_active = self.clock()
            return booking

        return self._run(work, f"attach payment {booking_id}")

    def cancel(self, booking_id: str, reason: Optional[str] = None) -> TransitionResult:
        def work():
            booking = self.get(booking_id)
            if booking.status == BookingStatus.CANCELLED:
                return TransitionResult(Action.NOOP, booking_id, booking, changed=False)
            if booking.status != BookingStatus.HOLDING:
                raise InvalidStateError("Paid bookings must be refunded instead of cancelled", code="refund_required")
            self.transactor.release_in_transaction(booking)
            self._mark_cancelled(booking, PaymentStatus.CANCELLED, reason or "cancelled_by_customer")
            self._audit("BOOKING_CANCEL", booking_id, {"reason": reason})
            return TransitionResult(Action.MARKED_CANCELLED, booking_id, booking)

        return self._run(work, f"cancel {booking_id}")

    def _mark_cancelled(self, booking: Booking, payment_status: str, reason: str) -> None:
        booking.status = BookingStatus.CANCELLED
        booking.payment_status = payment_status
        booking.cancelled_at = self.clock()
        booking.cancellation_reason = reason[:120]

    # ---------- payment outcomes ----------

    def apply_payment_succeeded(
        self,
        booking_id: Optional[str],
        payment: GatewayPayment,
        metadata: Optional[BookingMetadata] = None,
        source: str = "webhook",
        event_id: Optional[str] = None,
    ) -> TransitionResult:
        metadata = metadata or BookingMetadata()
        booking_id = booking_id or metadata.booking_id
        if not booking_id:
            raise ValidationError("Payment metadata has no bookingId", code="missing_booking_id",
                                  details={"paymentReference": payment.id})

        def work():
            booking = self.session.get(Booking, booking_id)
            emergency = booking is None
            if emergency:
                booking = self._build_emergency_booking(booking_id, payment, metadata)
                self.session.add(booking)
                self.session.flush()
            elif booking.payment_status == PaymentStatus.PAID:
                return TransitionResult(Action.ALREADY_PAID, booking_id, booking,
                                        invoice_number=booking.invoice_number, changed=False)
            elif PAYMENT_RANK.get(booking.payment_status, 0) > PAYMENT_RANK[PaymentStatus.PAID]:
                logger.info("Booking %s already %s; ignoring late success", booking_id, booking.payment_status)
                return TransitionResult(Action.NOOP, booking_id, booking, changed=False)

            reservation = None
            if booking.court_id != UNKNOWN_COURT and not (emergency and booking.needs_manual_review):
                reservation = self.transactor.reserve_in_transaction(booking)
                if reservation.outcome == ReservationOutcome.CONFLICT:
                    # The money is taken: confirm anyway and hand the clash to a human
                    booking.slot_conflict = True
                    booking.needs_manual_review = True
                    self._audit("BOOKING_SLOT_CONFLICT", booking_id,
                                {"slots": reservation.conflicts, "paymentReference": payment.id})
                    logger.error("Paid booking %s conflicts on slots %s", booking_id, reservation.conflicts)

            invoice = mint_invoice_number(booking, self.counters, self.invoice_padding, self.clock)

            if booking.status == BookingStatus.CANCELLED:
                booking.recovery_notes = f"Reinstated after {booking.payment_status}: payment {payment.id} succeeded"
                booking.cancelled_at = None
                booking.cancellation_reason = None
            booking.status = BookingStatus.CONFIRMED
            booking.payment_status = PaymentStatus.PAID
            if not booking.payment_reference:
                booking.payment_reference = payment.id

            self._record_transaction(
                booking_id, payment.id, "payment", "succeeded",
                payment.amount_received or payment.amount, payment.currency, source, event_id,
            )
            action = Action.EMERGENCY_CREATED if emergency else Action.CONFIRMED
            self._audit("PAYMENT_CONFIRMED" if not emergency else "EMERGENCY_BOOKING_CREATED", booking_id,
                        {"paymentReference": payment.id, "invoiceNumber": invoice, "source": source,
                         "eventId": event_id,
                         "reservation": reservation.outcome if reservation else None})
            return TransitionResult(action, booking_id, booking, reservation, invoice)

        label = f"payment succeeded {booking_id}"
        try:
            result = self._run(work, label)
        except IntegrityError:
            if self.session.get(Booking, booking_id) is None:
                # Not a creation race: the payment reference already belongs to another booking
                logger.error("Payment %s is already linked to a booking other than %s", payment.id, booking_id)
                raise ConflictError(
                    "Payment is already linked to another booking",
                    code="payment_reference_in_use",
                    details={"bookingId": booking_id, "paymentReference": payment.id},
                )
            # Another worker created the emergency booking first; re-run against it
            logger.info("Booking %s was created concurrently, re-applying payment success", booking_id)
            result = self._run(work, label)

        if result.changed:
            logger.info("Booking %s %s (invoice %s)", booking_id, result.action, result.invoice_number)
        self._notify(result)
        return result

    def _build_emergency_booking(self, booking_id: str, payment: GatewayPayment, metadata: BookingMetadata) -> Booking:
        now = self.clock()
        start = metadata.parsed_start()
        start_known = start is not None
        if start is None:
            start = now.replace(second=0, microsecond=0)
        end = metadata.parsed_end()
        if end is None or end <= start:
            end = start + timedelta(hours=1)
        day = start.date() if start_known else (metadata.parsed_date() or start.date())

        logger.warning("Creating emergency booking %s from payment %s", booking_id, payment.id)
        return Booking(
            id=booking_id,
            user_id=metadata.user_id or "emergency-recovery",
            user_name=payment.customer_name or metadata.user_name or "Emergency Recovery",
            customer_email=payment.receipt_email or metadata.email,
            venue_id=metadata.venue_id or UNKNOWN_COURT,
            court_id=metadata.court_id or UNKNOWN_COURT,
            date=day,
            start_time=start,
            end_time=end,
            price=from_minor_units(payment.amount_received or payment.amount),
            currency=payment.currency or self.default_currency,
            status=BookingStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
            payment_reference=payment.id,
            created_at=now,
            updated_at=now,
            recovered_from_payment=True,
            needs_manual_review=not start_known,
            recovery_notes=f"Created from payment {payment.id}",
        )

    def apply_payment_failed(
        self,
        booking_id: Optional[str],
        reason: Optional[str] = None,
        canceled: bool = False,
        payment: Optional[GatewayPayment] = None,
        source: str = "webhook",
        event_id: Optional[str] = None,
    ) -> TransitionResult:
        new_status = PaymentStatus.CANCELLED if canceled else PaymentStatus.FAILED
        if not booking_id:
            raise ValidationError("Payment metadata has no bookingId", code="missing_booking_id")

        def work():
            booking = self.session.get(Booking, booking_id)
            if booking is None:
                logger.warning("Payment %s for unknown booking %s", new_status, booking_id)
                self._audit("PAYMENT_EVENT_BOOKING_MISSING", booking_id, {"status": new_status, "eventId": event_id})
                return TransitionResult(Action.BOOKING_MISSING, booking_id, changed=False)
            if PAYMENT_RANK.get(booking.payment_status, 0) >= PAYMENT_RANK[new_status]:
                return TransitionResult(Action.NOOP, booking_id, booking, changed=False)

            # No slots to release: a booking only reserves once paid
            self._mark_cancelled(booking, new_status, "payment_canceled" if canceled else "payment_failed")
            if payment is not None:
                self._record_transaction(booking_id, payment.id, "payment", new_status, payment.amount,
                                         payment.currency, source, event_id, reason=reason)
            self._audit("PAYMENT_CANCELLED" if canceled else "PAYMENT_FAILED", booking_id,
                        {"reason": reason, "eventId": event_id, "source": source})
            action = Action.MARKED_CANCELLED if canceled else Action.MARKED_FAILED
            return TransitionResult(action, booking_id, booking)

        return self._run(work, f"payment {new_status} {booking_id}")

    def apply_payment_processing(self, booking_id: Optional[str], payment: Optional[GatewayPayment] = None) -> TransitionResult:
        if not booking_id:
            raise ValidationError("Payment metadata has no bookingId", code="missing_booking_id")

        def work():
            booking = self.session.get(Booking, booking_id)
            if booking is None:
                return TransitionResult(Action.BOOKING_MISSING, booking_id, changed=False)
            if booking.payment_status not in (None, PaymentStatus.PENDING):
                return TransitionResult(Action.NOOP, booking_id, booking, changed=False)
            booking.payment_status = PaymentStatus.PROCESSING
            if payment is not None and not booking.payment_reference:
                booking.payment_reference = payment.id
            return TransitionResult(Action.MARKED_PROCESSING, booking_id, booking)

        return self._run(work, f"payment processing {booking_id}")

    def expire_hold(
        self,
        booking_id: str,
        reason: str,
        allowed_payment_statuses=(None, PaymentStatus.PENDING),
        notes: Optional[str] = None,
    ) -> TransitionResult:
        """Abandon a hold that went quiet, releasing any slots it might own."""

        def work():
            booking = self.session.get(Booking, booking_id)
            if booking is None:
                return TransitionResult(Action.BOOKING_MISSING, booking_id, changed=False)
            if booking.status != BookingStatus.HOLDING or booking.payment_status not in allowed_payment_statuses:
                return TransitionResult(Action.NOOP, booking_id, booking, changed=False)
            released = self.transactor.release_in_transaction(booking)
            last_seen = booking.last_active or booking.created_at
            self._mark_cancelled(booking, PaymentStatus.ABANDONED, reason)
            if notes:
                booking.recovery_notes = notes
            self._audit("HOLD_EXPIRED", booking_id, {
                "reason": reason,
                "lastActive": last_seen,
                "ageMinutes": round((self.clock() - last_seen).total_seconds() / 60),
                "releasedSlots": released,
                "courtId": booking.court_id,
                "date": booking.date,
            })
            return TransitionResult(Action.HOLD_EXPIRED, booking_id, booking)

        return self._run(work, f"expire {booking_id}")

    # ---------- refunds ----------

    def begin_refund(self, booking_id: str, amount=None, reason: Optional[str] = None, admin_id=None):
        """
        Validate, claim and submit a refund. The claim (refund_status=pending)
        commits before the gateway call so a second request sees it and stops.
        """
        if self.gateway is None:
            raise RuntimeError("begin_refund needs a gateway")

        def claim():
            booking = self.get(booking_id)
            if booking.status != BookingStatus.CONFIRMED:
                raise InvalidStateError(f"Cannot refund booking with status: {booking.status}")
            if not booking.payment_reference:
                raise InvalidStateError("No payment intent found for this booking", code="no_payment_reference")
            if booking.refund_status in (RefundStatus.PENDING, RefundStatus.SUCCEEDED) or booking.payment_status in (
                PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED
            ):
                raise ConflictError("Booking has already been refunded or a refund is in progress",
                                    code="already_refunded")
            booking.refund_status = RefundStatus.PENDING
            booking.refund_reason = reason or "Admin initiated refund"
            booking.refunded_by = str(admin_id) if admin_id is not None else None
            return booking.payment_reference

        reference = self._run(claim, f"claim refund {booking_id}")

        try:
            payment = self.gateway.retrieve_payment(reference)
            if payment is None or not payment.succeeded:
                raise InvalidStateError("Payment has not been successfully charged", code="payment_not_succeeded")
            if not payment.latest_charge:
                raise InvalidStateError("No charge found for this payment", code="no_charge_found")

            charge_amount = payment.amount_received
            refund_minor = _refund_minor_units(amount) if amount is not None else charge_amount
            if refund_minor <= 0:
                raise ValidationError("Invalid refund amount", code="invalid_amount")
            if refund_minor > charge_amount:
                raise ValidationError("Refund amount cannot exceed the original charge amount",
                                      code="amount_too_large")

            refund = self.gateway.create_refund(
                reference,
                refund_minor,
                reason=reason,
                metadata={
                    "bookingId": booking_id,
                    "adminId": str(admin_id or ""),
                    "refundReason": reason or "Admin initiated refund",
                },
            )
        except Exception as exc:
            self._release_refund_claim(booking_id, exc)
            raise

        def record():
            booking = self.get(booking_id)
            booking.refund_reference = refund.id
            self._record_transaction(booking_id, refund.id, "refund", refund.status, refund.amount,
                                     refund.currency, "refund_api", charge_amount=charge_amount)
            self._audit("REFUND_REQUESTED", booking_id,
                        {"refundId": refund.id, "amount": refund.amount, "reason": reason}, actor_id=admin_id)
            return booking

        self._run(record, f"record refund {booking_id}")

        if refund.status == "succeeded":
            result = self.apply_refund_succeeded(booking_id=booking_id, refund=refund,
                                                 fully=refund.amount >= charge_amount, source="refund_api")
        elif refund.status in ("failed", "canceled"):
            result = self.apply_refund_failed(booking_id=booking_id, refund=refund, source="refund_api")
        else:
            result = TransitionResult(Action.REFUND_PENDING, booking_id, self.get(booking_id))
        return refund, result

    def _release_refund_claim(self, booking_id: str, exc: Exception) -> None:
        def work():
            booking = self.session.get(Booking, booking_id)
            if booking is not None and booking.refund_status == RefundStatus.PENDING and not booking.refund_reference:
                booking.refund_status = None
            self._audit("REFUND_ERROR", booking_id, {"error": str(exc), "type": type(exc).__name__})

        self._run(work, f"release refund claim {booking_id}")

    def _find_refund_target(self, booking_id=None, refund_reference=None, payment_reference=None) -> Optional[Booking]:
        if booking_id:
            booking = self.session.get(Booking, booking_id)
            if booking is not None:
                return booking
        if refund_reference:
            booking = self.session.query(Booking).filter_by(refund_reference=refund_reference).first()
            if booking is not None:
                return booking
        if payment_reference:
            return self.session.query(Booking).filter_by(payment_reference=payment_reference).first()
        return None

    def apply_refund_pending(self, booking_id=None, refund: Optional[GatewayRefund] = None,
                             source="webhook", event_id=None) -> TransitionResult:
        def work():
            booking = self._find_refund_target(booking_id, refund.id, refund.payment_reference)
            if booking is None:
                return TransitionResult(Action.BOOKING_MISSING, booking_id, changed=False)
            if booking.refund_status is not None and booking.refund_reference == refund.id:
                return TransitionResult(Action.NOOP, booking.id, booking, changed=False)
            if booking.refund_status in (RefundStatus.SUCCEEDED,):
                return TransitionResult(Action.NOOP, booking.id, booking, changed=False)
            booking.refund_reference = refund.id
            booking.refund_status = RefundStatus.PENDING
            self._record_transaction(booking.id, refund.id, "refund", refund.status, refund.amount,
                                     refund.currency, source, event_id)
            return TransitionResult(Action.REFUND_PENDING, booking.id, booking)

        return self._run(work, f"refund pending {booking_id or refund.id}")

    def apply_refund_succeeded(
        self,
        booking_id=None,
        refund: Optional[GatewayRefund] = None,
        payment_reference: Optional[str] = None,
        amount: Optional[int] = None,
        fully: Optional[bool] = None,
        source: str = "webhook",
        event_id: Optional[str] = None,
    ) -> TransitionResult:
        refund_id = refund.id if refund else None
        payment_reference = payment_reference or (refund.payment_reference if refund else None)
        amount = amount if amount is not None else (refund.amount if refund else 0)

        def work():
            booking = self._find_refund_target(booking_id, refund_id, payment_reference)
            if booking is None:
                logger.warning("Refund %s for unknown booking %s", refund_id, booking_id)
                self._audit("REFUND_BOOKING_MISSING", booking_id,
                            {"refundId": refund_id, "paymentReference": payment_reference, "eventId": event_id})
                return TransitionResult(Action.BOOKING_MISSING, booking_id, changed=False)
            if booking.payment_status == PaymentStatus.REFUNDED:
                return TransitionResult(Action.NOOP, booking.id, booking, changed=False)

            is_full = fully if fully is not None else amount >= to_minor_units(booking.price)
            refunded = from_minor_units(amount)
            if booking.payment_status == PaymentStatus.PARTIALLY_REFUNDED and not is_full and (
                booking.refund_amount is not None and refunded <= booking.refund_amount
            ):
                return TransitionResult(Action.NOOP, booking.id, booking, changed=False)

            booking.refund_status = RefundStatus.SUCCEEDED
            booking.refund_amount = refunded
            booking.refunded_at = self.clock()
            if refund_id and not booking.refund_reference:
                booking.refund_reference = refund_id

            if is_full:
                self.transactor.release_in_transaction(booking)
                self._mark_cancelled(booking, PaymentStatus.REFUNDED,
                                     f"Refunded: {booking.refund_reason or 'Admin initiated'}")
                action = Action.REFUNDED
            else:
                booking.payment_status = PaymentStatus.PARTIALLY_REFUNDED
                action = Action.PARTIALLY_REFUNDED

            self._record_transaction(booking.id, refund_id or payment_reference, "refund", "succeeded", amount,
                                     refund.currency if refund else None, source, event_id)
            self._audit("REFUND_SUCCEEDED", booking.id, {"refundId": refund_id, "amount": amount, "full": is_full,
                                                         "eventId": event_id})
            return TransitionResult(action, booking.id, booking)

        return self._run(work, f"refund succeeded {booking_id or refund_id or payment_reference}")

    def apply_refund_failed(self, booking_id=None, refund: Optional[GatewayRefund] = None,
                            source: str = "webhook", event_id: Optional[str] = None) -> TransitionResult:
        def work():
            booking = self._find_refund_target(booking_id, refund.id, refund.payment_reference)
            if booking is None:
                return TransitionResult(Action.BOOKING_MISSING, booking_id, changed=False)
            if booking.refund_status == RefundStatus.FAILED and booking.refund_reference == refund.id:
                return TransitionResult(Action.NOOP, booking.id, booking, changed=False)
            # Booking stays confirmed; someone has to follow up by hand
            booking.refund_status = RefundStatus.FAILED
            booking.refund_reference = booking.refund_reference or refund.id
            booking.needs_manual_review = True
            self._record_transaction(booking.id, refund.id, "refund", refund.status or "failed", refund.amount,
                                     refund.currency, source, event_id)
            self._audit("REFUND_FAILED", booking.id, {"refundId": refund.id, "eventId": event_id})
            logger.error("Refund %s failed for booking %s; flagged for manual follow-up", refund.id, booking.id)
            return TransitionResult(Action.REFUND_FAILED, booking.id, booking)

        return self._run(work, f"refund failed {booking_id or refund.id}")
