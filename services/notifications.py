"""
Confirmation emails.

Sending never blocks or fails a booking transition: notify() hands the
snapshot to a small thread pool and the outcome is recorded on the booking
afterwards. retry_failed() is the sweep for bookings whose mail didn't go out.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from models import db
from models.booking import Booking, BookingStatus, PaymentStatus
from services.transactions import run_transaction
from utils.emailer import send_confirmation
from utils.timeutil import utcnow

logger = logging.getLogger(__name__)

Sender = Callable[[dict, object], Tuple[bool, Optional[str]]]


class ConfirmationNotifier:
    def __init__(
        self,
        app,
        sender: Sender = send_confirmation,
        max_attempts: int = 3,
        max_workers: int = 3,
        background: bool = True,
        clock=utcnow,
    ):
        self.app = app
        self.sender = sender
        self.max_attempts = max_attempts
        self.max_workers = max_workers
        self.background = background
        self.clock = clock
        self._executor: Optional[ThreadPoolExecutor] = None

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="confirm-mail")
        return self._executor

    def notify(self, booking: Booking) -> None:
        snapshot = booking.to_dict()
        if not snapshot.get("customerEmail"):
            logger.info("Booking %s has no customer email; skipping confirmation", snapshot["id"])
            return
        if self.background:
            self._pool().submit(self._deliver, snapshot)
        else:
            self._deliver(snapshot)

    def _deliver(self, snapshot: dict) -> bool:
        try:
            ok, error = self.sender(snapshot, self.app.config)
        except Exception as exc:
            ok, error = False, str(exc)
        try:
            with self.app.app_context():
                self.record(db.session, snapshot["id"], ok, error)
        except Exception:
            logger.exception("Could not record email outcome for booking %s", snapshot["id"])
        return ok

    def record(self, session, booking_id: str, ok: bool, error: Optional[str]) -> None:
        def work():
            booking = session.get(Booking, booking_id)
            if booking is None:
                return
            booking.email_retry_count = (booking.email_retry_count or 0) + (0 if ok else 1)
            if ok:
                booking.email_sent = True
                booking.email_sent_at = self.clock()
                booking.email_error = None
                booking.email_failed_at = None
            else:
                booking.email_error = (error or "Unknown error")[:255]
                booking.email_failed_at = self.clock()

        run_transaction(session, work, label=f"record email {booking_id}")
        if ok:
            logger.info("Confirmation email sent for booking %s", booking_id)
        else:
            logger.warning("Confirmation email failed for booking %s: %s", booking_id, error)

    def retry_failed(self, session, now: Optional[datetime] = None) -> Dict[str, int]:
        """Resend confirmations for upcoming paid bookings that never got one."""
        now = now or self.clock()
        pending: List[Booking] = (
            session.query(Booking)
            .filter(
                Booking.status == BookingStatus.CONFIRMED,
                Booking.payment_status == PaymentStatus.PAID,
                Booking.email_sent.is_(False),
                Booking.start_time > now,
                Booking.email_retry_count < self.max_attempts,
                Booking.customer_email.isnot(None),
            )
            .all()
        )
        logger.info("Found %d bookings requiring email retry", len(pending))
        snapshots = [b.to_dict() for b in pending]

        # Sends fan out; the bookkeeping stays on this thread and session
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            outcomes = list(pool.map(self._send_safely, snapshots))

        sent = 0
        for snapshot, (ok, error) in zip(snapshots, outcomes):
            self.record(session, snapshot["id"], ok, error)
            sent += 1 if ok else 0
        return {"total": len(snapshots), "successful": sent, "failed": len(snapshots) - sent}

    def _send_safely(self, snapshot: dict):
        try:
            return self.sender(snapshot, self.app.config)
        except Exception as exc:
            return False, str(exc)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
