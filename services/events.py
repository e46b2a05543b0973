"""
Typed view of inbound gateway events.

parse_event turns a raw Stripe event dict into one of the dataclasses below;
anything unrecognised becomes UnknownEvent.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional, Union

from services.gateway import GatewayPayment, GatewayRefund


def _text(meta: Mapping[str, Any], key: str) -> Optional[str]:
    if key not in meta:
        return None
    value = meta[key]
    if value is None:
        return None
    value = str(value).strip()
    return value if value != "" else None


@dataclass(frozen=True)
class BookingMetadata:
    """Partial booking record carried in the payment's metadata bag."""

    booking_id: Optional[str] = None
    court_id: Optional[str] = None
    venue_id: Optional[str] = None
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_mapping(cls, meta: Optional[Mapping[str, Any]]) -> "BookingMetadata":
        meta = meta or {}
        return cls(
            booking_id=_text(meta, "bookingId"),
            court_id=_text(meta, "courtId"),
            venue_id=_text(meta, "venueId"),
            date=_text(meta, "date"),
            start_time=_text(meta, "startTime"),
            end_time=_text(meta, "endTime"),
            user_id=_text(meta, "userId"),
            user_name=_text(meta, "userName"),
            email=_text(meta, "email"),
        )

    def to_gateway(self) -> Dict[str, str]:
        pairs = {
            "bookingId": self.booking_id,
            "courtId": self.court_id,
            "venueId": self.venue_id,
            "date": self.date,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "userId": self.user_id,
            "userName": self.user_name,
            "email": self.email,
        }
        return {k: v for k, v in pairs.items() if v is not None}

    def parsed_date(self) -> Optional[date]:
        if self.date is None:
            return None
        try:
            return date.fromisoformat(self.date[:10])
        except ValueError:
            return None

    def parsed_start(self) -> Optional[datetime]:
        return _parse_datetime(self.start_time)

    def parsed_end(self) -> Optional[datetime]:
        return _parse_datetime(self.end_time)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed.replace(tzinfo=None)


@dataclass(frozen=True)
class _BaseEvent:
    id: str
    type: str


@dataclass(frozen=True)
class PaymentSucceeded(_BaseEvent):
    payment: GatewayPayment = None
    metadata: BookingMetadata = field(default_factory=BookingMetadata)


@dataclass(frozen=True)
class PaymentFailed(_BaseEvent):
    payment: GatewayPayment = None
    metadata: BookingMetadata = field(default_factory=BookingMetadata)
    reason: Optional[str] = None


@dataclass(frozen=True)
class PaymentProcessing(_BaseEvent):
    payment: GatewayPayment = None
    metadata: BookingMetadata = field(default_factory=BookingMetadata)


@dataclass(frozen=True)
class PaymentCanceled(_BaseEvent):
    payment: GatewayPayment = None
    metadata: BookingMetadata = field(default_factory=BookingMetadata)
    reason: Optional[str] = None


@dataclass(frozen=True)
class RefundEvent(_BaseEvent):
    """refund.created / refund.updated / refund.failed"""

    refund: GatewayRefund = None
    metadata: BookingMetadata = field(default_factory=BookingMetadata)


@dataclass(frozen=True)
class ChargeRefunded(_BaseEvent):
    payment_reference: Optional[str] = None
    amount: int = 0
    amount_refunded: int = 0
    fully_refunded: bool = False
    refund_id: Optional[str] = None
    metadata: BookingMetadata = field(default_factory=BookingMetadata)


@dataclass(frozen=True)
class UnknownEvent(_BaseEvent):
    pass


GatewayEvent = Union[
    PaymentSucceeded, PaymentFailed, PaymentProcessing, PaymentCanceled, RefundEvent, ChargeRefunded, UnknownEvent
]

PAYMENT_EVENTS = {
    "payment_intent.succeeded": PaymentSucceeded,
    "payment_intent.processing": PaymentProcessing,
}
REFUND_EVENTS = {"refund.created", "refund.updated", "refund.failed"}


def event_object(raw: Mapping[str, Any]) -> Dict[str, Any]:
    data = raw.get("data") or {}
    return dict(data.get("object") or {})


def parse_event(raw: Mapping[str, Any]) -> GatewayEvent:
    event_id = raw.get("id")
    event_type = raw.get("type") or "unknown"
    obj = event_object(raw)
    metadata = BookingMetadata.from_mapping(obj.get("metadata"))

    if event_type in PAYMENT_EVENTS:
        return PAYMENT_EVENTS[event_type](
            id=event_id, type=event_type, payment=GatewayPayment.from_payload(obj), metadata=metadata
        )

    if event_type in ("payment_intent.payment_failed", "payment_intent.canceled"):
        payment = GatewayPayment.from_payload(obj)
        if event_type == "payment_intent.canceled":
            return PaymentCanceled(
                id=event_id, type=event_type, payment=payment, metadata=metadata,
                reason=obj.get("cancellation_reason"),
            )
        last_error = obj.get("last_payment_error") or {}
        return PaymentFailed(
            id=event_id, type=event_type, payment=payment, metadata=metadata,
            reason=last_error.get("message") or "Unknown error",
        )

    if event_type in REFUND_EVENTS:
        return RefundEvent(id=event_id, type=event_type, refund=GatewayRefund.from_payload(obj), metadata=metadata)

    if event_type == "charge.refunded":
        refunds = (obj.get("refunds") or {}).get("data") or []
        return ChargeRefunded(
            id=event_id,
            type=event_type,
            payment_reference=obj.get("payment_intent"),
            amount=obj.get("amount") or 0,
            amount_refunded=obj.get("amount_refunded") or 0,
            fully_refunded=bool(obj.get("refunded")),
            refund_id=refunds[0].get("id") if refunds else None,
            metadata=metadata,
        )

    return UnknownEvent(id=event_id, type=event_type)
