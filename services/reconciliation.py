"""
Reconciliation and cleanup sweeps.

These run from the CLI (cron) and the recovery endpoint. Every sweep is safe
to re-run: each row goes through the same idempotent state machine
transitions the webhook uses.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_

from models.booking import Booking, BookingArchive, BookingStatus, PaymentStatus
from services.errors import BookingError, ConflictError
from services.events import BookingMetadata
from services.gateway import GatewayPayment
from services.retry import retry_with_backoff
from services.state_machine import Action, BookingStateMachine
from utils.audit import log_event
from utils.timeutil import utcnow

logger = logging.getLogger(__name__)

OPEN_PAYMENT_STATUSES = (None, PaymentStatus.PENDING, PaymentStatus.PROCESSING)


class ReconciliationService:
    def __init__(
        self,
        session,
        machine: BookingStateMachine,
        gateway,
        clock=utcnow,
        hold_grace_minutes: int = 8,
        hold_max_age_minutes: int = 30,
        reconcile_after_minutes: int = 15,
        abandon_after_hours: int = 2,
        archive_after_days: int = 90,
        cleanup_batch_size: int = 100,
        archive_batch_size: int = 100,
        workers: int = 4,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
        sleep=time.sleep,
    ):
        self.session = session
        self.machine = machine
        self.gateway = gateway
        self.clock = clock
        self.hold_grace = timedelta(minutes=hold_grace_minutes)
        self.hold_max_age = timedelta(minutes=hold_max_age_minutes)
        self.reconcile_after = timedelta(minutes=reconcile_after_minutes)
        self.abandon_after = timedelta(hours=abandon_after_hours)
        self.archive_after = timedelta(days=archive_after_days)
        self.cleanup_batch_size = cleanup_batch_size
        self.archive_batch_size = archive_batch_size
        self.workers = workers
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.sleep = sleep

    # ---------- stale holds ----------

    def cleanup_stale_holds(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Abandon holds whose heartbeat stopped, releasing whatever they own."""
        now = now or self.clock()
        idle_cutoff = now - self.hold_grace
        age_cutoff = now - self.hold_max_age
        last_seen = func.coalesce(Booking.last_active, Booking.created_at)

        candidates = [
            row.id
            for row in self.session.query(Booking.id)
            .filter(
                Booking.status == BookingStatus.HOLDING,
                or_(Booking.payment_status.is_(None), Booking.payment_status == PaymentStatus.PENDING),
                or_(last_seen < idle_cutoff, Booking.created_at < age_cutoff),
            )
            .order_by(Booking.created_at)
            .all()
        ]
        self.session.rollback()

        expired, errors = [], []
        for start in range(0, len(candidates), self.cleanup_batch_size):
            for booking_id in candidates[start:start + self.cleanup_batch_size]:
                try:
                    result = self.machine.expire_hold(booking_id, "hold_expired")
                except BookingError as exc:
                    logger.error("Could not expire hold %s: %s", booking_id, exc)
                    errors.append({"bookingId": booking_id, "error": exc.message})
                    continue
                if result.action == Action.HOLD_EXPIRED:
                    expired.append(booking_id)

        if expired:
            logger.info("Expired %d stale holds", len(expired))
        log_event("HOLD_CLEANUP", entity="booking", metadata={
            "checked": len(candidates), "expired": len(expired), "errors": len(errors),
            "graceMinutes": self.hold_grace.total_seconds() / 60,
        }, session=self.session)
        return {"checked": len(candidates), "expired": expired, "errors": errors}

    # ---------- payment reconciliation ----------

    def _retrieve(self, reference: str) -> Optional[GatewayPayment]:
        return retry_with_backoff(
            lambda: self.gateway.retrieve_payment(reference),
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            sleep=self.sleep,
            label=f"retrieve payment {reference}",
        )

    def _lookup(self, item: Tuple[str, Optional[str]]):
        """Runs on a pool thread: gateway I/O only, no session access."""
        booking_id, reference = item
        if not reference:
            return booking_id, None, None
        try:
            return booking_id, self._retrieve(reference), None
        except BookingError as exc:
            return booking_id, None, exc

    def reconcile_payments(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self.clock()
        cutoff = now - self.reconcile_after
        rows = (
            self.session.query(Booking.id, Booking.payment_reference)
            .filter(
                Booking.status == BookingStatus.HOLDING,
                or_(
                    Booking.payment_status.is_(None),
                    Booking.payment_status.in_([PaymentStatus.PENDING, PaymentStatus.PROCESSING]),
                ),
                Booking.created_at < cutoff,
            )
            .order_by(Booking.created_at)
            .all()
        )
        items = [(row.id, row.payment_reference) for row in rows]
        self.session.rollback()

        with ThreadPoolExecutor(max_workers=max(1, self.workers)) as pool:
            lookups = list(pool.map(self._lookup, items))

        actions, errors = [], []
        for booking_id, payment, error in lookups:
            if error is not None:
                logger.error("Gateway lookup failed for booking %s: %s", booking_id, error)
                errors.append({"bookingId": booking_id, "error": error.message})
                continue
            try:
                outcome = self._correct(booking_id, payment, now, source="reconciliation")
            except BookingError as exc:
                logger.error("Reconciliation of booking %s failed: %s", booking_id, exc)
                errors.append({"bookingId": booking_id, "error": exc.message})
                continue
            if outcome["recovered"]:
                actions.append(outcome)

        logger.info("Reconciled %d bookings: %d corrected, %d errors", len(items), len(actions), len(errors))
        return {"checked": len(items), "corrected": actions, "errors": errors}

    def _correct(self, booking_id: str, payment: Optional[GatewayPayment], now: datetime, source: str) -> Dict[str, Any]:
        """Bring one booking in line with what the gateway says."""
        booking = self.session.get(Booking, booking_id)
        if booking is None:
            return {"recovered": 0, "bookingId": booking_id, "message": "Booking not found"}

        if payment is None:
            age = now - booking.created_at
            if booking.status == BookingStatus.HOLDING and age > self.abandon_after:
                result = self.machine.expire_hold(
                    booking_id,
                    "payment_not_found" if booking.payment_reference else "abandoned",
                    allowed_payment_statuses=OPEN_PAYMENT_STATUSES,
                    notes="Marked as abandoned due to prolonged pending status",
                )
                if result.changed:
                    return self._recovered(booking_id, "marked_abandoned", source,
                                           "Booking marked as abandoned due to being in pending state for too long")
            return {"recovered": 0, "bookingId": booking_id, "message": "No recovery action needed"}

        booking_status = booking.payment_status
        if payment.succeeded:
            if booking_status == PaymentStatus.PAID:
                return {"recovered": 0, "bookingId": booking_id, "message": "Booking and payment are in sync"}
            result = self.machine.apply_payment_succeeded(
                booking_id, payment, BookingMetadata.from_mapping(payment.metadata), source=source
            )
            if result.changed:
                return self._recovered(booking_id, "updated_to_paid", source,
                                       "Updated booking status to paid based on gateway payment status",
                                       payment.id)
        elif payment.status == "canceled":
            result = self.machine.apply_payment_failed(booking_id, reason="canceled at gateway", canceled=True,
                                                       payment=payment, source=source)
            if result.changed:
                return self._recovered(booking_id, "updated_to_cancelled", source,
                                       "Updated booking status to cancelled based on gateway payment status",
                                       payment.id)
        elif payment.status == "processing":
            result = self.machine.apply_payment_processing(booking_id, payment)
            if result.changed:
                return self._recovered(booking_id, "updated_to_processing", source,
                                       "Payment is processing at the gateway", payment.id)

        return {
            "recovered": 0,
            "bookingId": booking_id,
            "message": f"No recovery action taken. Booking status: {booking_status}, gateway status: {payment.status}",
        }

    def _recovered(self, booking_id, action, source, message, payment_reference=None) -> Dict[str, Any]:
        log_event("BOOKING_RECOVERY", entity="booking", entity_id=booking_id, metadata={
            "action": action, "source": source, "paymentReference": payment_reference,
        }, session=self.session)
        return {"recovered": 1, "action": action, "bookingId": booking_id, "message": message}

    # ---------- recovery modes ----------

    def recover_booking(self, booking_id: str) -> Dict[str, Any]:
        booking = self.session.get(Booking, booking_id)
        if booking is None:
            return {"error": "Booking not found", "recovered": 0, "bookingId": booking_id}
        if booking.payment_reference:
            return self.recover_by_payment_reference(booking.payment_reference, booking_id)
        return self._correct(booking_id, None, self.clock(), source="recovery")

    def recover_by_payment_reference(self, reference: str, known_booking_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            payment = self._retrieve(reference)
        except BookingError as exc:
            logger.error("Error recovering by payment %s: %s", reference, exc)
            return {"error": exc.message, "recovered": 0, "paymentIntentId": reference}
        if payment is None:
            if known_booking_id:
                return self._correct(known_booking_id, None, self.clock(), source="recovery")
            return {"error": "Payment not found at gateway", "recovered": 0, "paymentIntentId": reference}

        metadata = BookingMetadata.from_mapping(payment.metadata)
        linked = self.session.query(Booking.id).filter(Booking.payment_reference == reference).first()
        owner_id = metadata.booking_id or (linked.id if linked is not None else None)
        if linked is not None and linked.id != owner_id:
            raise ConflictError(
                "Payment metadata names a different booking than the one holding its reference",
                code="booking_mismatch",
                details={"bookingId": owner_id, "linkedBookingId": linked.id, "paymentIntentId": reference},
            )
        if known_booking_id and owner_id and known_booking_id != owner_id:
            raise ConflictError(
                "Payment belongs to a different booking",
                code="booking_mismatch",
                details={"bookingId": known_booking_id, "paymentIntentId": reference},
            )
        booking_id = owner_id or known_booking_id
        if not booking_id:
            return {"error": "No booking ID found in payment metadata", "recovered": 0}

        if self.session.get(Booking, booking_id) is None:
            # Missing bookings are only rebuilt under the id the payment itself carries
            if not metadata.booking_id:
                return {"error": "Booking not found", "recovered": 0, "bookingId": booking_id,
                        "paymentIntentId": reference}
            if not payment.succeeded:
                return {"error": "Booking not found and payment not succeeded", "recovered": 0}
            self.machine.apply_payment_succeeded(booking_id, payment, metadata, source="recovery")
            return self._recovered(booking_id, "created_booking", "recovery",
                                   "Created missing booking record from payment data", payment.id)

        return self._correct(booking_id, payment, self.clock(), source="recovery")

    def scan(self, days: int = 7) -> Dict[str, Any]:
        since = self.clock() - timedelta(days=days)
        rows = (
            self.session.query(Booking.id, Booking.payment_reference)
            .filter(Booking.created_at >= since, Booking.payment_reference.isnot(None))
            .order_by(Booking.created_at)
            .all()
        )
        items = [(row.id, row.payment_reference) for row in rows]
        self.session.rollback()

        results: Dict[str, Any] = {"checked": len(items), "recovered": 0, "errors": 0, "actions": []}
        for booking_id, reference in items:
            try:
                outcome = self.recover_by_payment_reference(reference, booking_id)
            except BookingError as exc:
                logger.error("Recovery of booking %s failed: %s", booking_id, exc)
                results["errors"] += 1
                continue
            if outcome.get("error"):
                results["errors"] += 1
            elif outcome.get("recovered"):
                results["recovered"] += outcome["recovered"]
                results["actions"].append(
                    {"bookingId": booking_id, "action": outcome["action"], "message": outcome["message"]}
                )
        return results

    def cleanup_stuck(self, days: int = 7) -> Dict[str, Any]:
        now = self.clock()
        since = now - timedelta(days=days)
        stuck_before = now - self.abandon_after
        ids = [
            row.id
            for row in self.session.query(Booking.id)
            .filter(
                Booking.status == BookingStatus.HOLDING,
                Booking.payment_status == PaymentStatus.PENDING,
                Booking.created_at >= since,
                Booking.created_at < stuck_before,
            )
            .all()
        ]
        self.session.rollback()

        cleaned: List[str] = []
        for booking_id in ids:
            result = self.machine.expire_hold(
                booking_id, "abandoned", notes="Marked as abandoned during cleanup of stuck pending bookings"
            )
            if result.changed:
                cleaned.append(booking_id)
        if cleaned:
            log_event("BOOKING_RECOVERY", entity="booking", metadata={"action": "cleanup_stuck", "bookingIds": cleaned},
                      session=self.session)
        return {"checked": len(ids), "cleaned": len(cleaned), "bookingIds": cleaned}

    # ---------- archive ----------

    def archive_bookings(self, before=None) -> Dict[str, Any]:
        """Move finished bookings older than the cutoff into booking_archives."""
        before = before or (self.clock() - self.archive_after).date()
        archived = 0
        while True:
            batch = (
                self.session.query(Booking)
                .filter(Booking.date < before, Booking.status != BookingStatus.HOLDING)
                .order_by(Booking.date, Booking.id)
                .limit(self.archive_batch_size)
                .all()
            )
            if not batch:
                break
            for booking in batch:
                self.session.merge(BookingArchive(id=booking.id, date=booking.date, payload=booking.to_dict(),
                                                  archived_at=self.clock()))
                self.session.delete(booking)
            self.session.commit()
            archived += len(batch)
            logger.info("Archived batch of %d bookings", len(batch))

        if archived:
            log_event("BOOKINGS_ARCHIVED", entity="booking",
                      metadata={"count": archived, "before": before.isoformat()}, session=self.session)
        return {"archived": archived, "before": before.isoformat()}

    def run_all(self) -> Dict[str, Any]:
        return {
            "holds": self.cleanup_stale_holds(),
            "payments": self.reconcile_payments(),
            "archive": self.archive_bookings(),
        }
