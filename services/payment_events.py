"""
Webhook event processor.

Events are persisted before any work happens, so a delivery is never lost and
a replay of an already-processed id short-circuits. Dispatch goes through the
state machine; transient failures are retried with backoff.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

from models.webhook_event import WebhookEvent
from services.errors import ConfigurationError, ValidationError
from services.events import (
    ChargeRefunded,
    PaymentCanceled,
    PaymentFailed,
    PaymentProcessing,
    PaymentSucceeded,
    RefundEvent,
    UnknownEvent,
    parse_event,
)
from services.retry import is_transient, retry_with_backoff
from services.state_machine import BookingStateMachine, TransitionResult
from utils.audit import log_event
from utils.timeutil import utcnow

logger = logging.getLogger(__name__)


class ProcessingStatus:
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass
class ProcessingResult:
    event_id: str
    status: str
    action: Optional[str] = None
    booking_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body = {"eventId": self.event_id, "status": self.status, "action": self.action, "bookingId": self.booking_id}
        if self.error:
            body["error"] = self.error
        return body


def _event_booking_id(event) -> Optional[str]:
    metadata = getattr(event, "metadata", None)
    if metadata is not None and metadata.booking_id:
        return metadata.booking_id
    return None


class PaymentEventProcessor:
    def __init__(
        self,
        session,
        machine: BookingStateMachine,
        retry_attempts: int = 3,
        base_delay: float = 0.5,
        sleep=time.sleep,
        clock=utcnow,
    ):
        self.session = session
        self.machine = machine
        self.retry_attempts = retry_attempts
        self.base_delay = base_delay
        self.sleep = sleep
        self.clock = clock

    def handle(self, raw: Dict[str, Any]) -> ProcessingResult:
        event_id = raw.get("id")
        if not event_id:
            raise ValidationError("Event has no id")

        record = self._persist(raw)
        if record.processed:
            logger.info("Event %s already processed (%s), delivery %d", event_id, record.result, record.delivery_count)
            return ProcessingResult(event_id, ProcessingStatus.ALREADY_PROCESSED, record.result, record.booking_id)

        event = parse_event(raw)
        if isinstance(event, UnknownEvent):
            logger.info("Ignoring event %s of type %s", event_id, event.type)
            self._mark(event_id, ProcessingStatus.IGNORED)
            return ProcessingResult(event_id, ProcessingStatus.IGNORED)

        booking_id = _event_booking_id(event)
        try:
            result = retry_with_backoff(
                lambda: self.dispatch(event),
                attempts=self.retry_attempts,
                base_delay=self.base_delay,
                on_retry=lambda exc: self.session.rollback(),
                sleep=self.sleep,
                label=f"event {event_id} ({event.type})",
            )
        except ConfigurationError:
            # Left unprocessed so the gateway redelivers once config is fixed
            self.session.rollback()
            raise
        except Exception as exc:
            self.session.rollback()
            exhausted = is_transient(exc)
            if exhausted:
                logger.error("Event %s failed after %d attempts: %s", event_id, self.retry_attempts, exc)
            else:
                logger.warning("Event %s failed: %s", event_id, exc)
            self._mark(event_id, ProcessingStatus.FAILED, booking_id=booking_id, error=str(exc))
            log_event(
                "RECONCILIATION_REQUIRED" if exhausted else "PAYMENT_EVENT_FAILED",
                entity="booking",
                entity_id=booking_id,
                metadata={
                    "eventId": event_id,
                    "eventType": event.type,
                    "error": str(exc),
                    "errorType": type(exc).__name__,
                },
                session=self.session,
            )
            return ProcessingResult(event_id, ProcessingStatus.FAILED, booking_id=booking_id, error=str(exc))

        self._mark(event_id, ProcessingStatus.PROCESSED, action=result.action,
                   booking_id=result.booking_id or booking_id)
        return ProcessingResult(event_id, ProcessingStatus.PROCESSED, result.action, result.booking_id or booking_id)

    def dispatch(self, event) -> TransitionResult:
        machine = self.machine
        booking_id = _event_booking_id(event)

        if isinstance(event, PaymentSucceeded):
            return machine.apply_payment_succeeded(booking_id, event.payment, event.metadata, "webhook", event.id)
        if isinstance(event, PaymentFailed):
            return machine.apply_payment_failed(booking_id, reason=event.reason, payment=event.payment,
                                                event_id=event.id)
        if isinstance(event, PaymentCanceled):
            return machine.apply_payment_failed(booking_id, reason=event.reason, canceled=True,
                                                payment=event.payment, event_id=event.id)
        if isinstance(event, PaymentProcessing):
            return machine.apply_payment_processing(booking_id, event.payment)
        if isinstance(event, RefundEvent):
            refund = event.refund
            if event.type == "refund.failed" or refund.status in ("failed", "canceled"):
                return machine.apply_refund_failed(booking_id, refund, event_id=event.id)
            if refund.status == "succeeded":
                return machine.apply_refund_succeeded(booking_id, refund, event_id=event.id)
            return machine.apply_refund_pending(booking_id, refund, event_id=event.id)
        if isinstance(event, ChargeRefunded):
            return machine.apply_refund_succeeded(
                booking_id,
                payment_reference=event.payment_reference,
                amount=event.amount_refunded,
                fully=event.fully_refunded,
                event_id=event.id,
            )
        raise ValidationError(f"Unhandled event type {event.type}")

    def _persist(self, raw: Dict[str, Any]) -> WebhookEvent:
        event_id = raw["id"]
        record = self.session.get(WebhookEvent, event_id)
        if record is not None:
            record.delivery_count = (record.delivery_count or 1) + 1
            self.session.commit()
            return record

        record = WebhookEvent(
            id=event_id,
            type=raw.get("type") or "unknown",
            raw_payload=json.dumps(raw, default=str),
            received_at=self.clock(),
        )
        self.session.add(record)
        try:
            self.session.commit()
        except IntegrityError:
            # Concurrent first delivery inserted it; count ours against theirs
            self.session.rollback()
            record = self.session.get(WebhookEvent, event_id)
            record.delivery_count = (record.delivery_count or 1) + 1
            self.session.commit()
        return record

    def _mark(self, event_id: str, status: str, action: Optional[str] = None,
              booking_id: Optional[str] = None, error: Optional[str] = None) -> None:
        record = self.session.get(WebhookEvent, event_id)
        record.processed = True
        record.processed_at = self.clock()
        record.result = action or status
        record.booking_id = booking_id
        record.error = error
        self.session.commit()
