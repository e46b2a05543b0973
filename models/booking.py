import uuid

from sqlalchemy.orm import validates

from models.db import db
from utils.timeutil import utcnow


class BookingStatus:
    HOLDING = "holding"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class RefundStatus:
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


def new_booking_id() -> str:
    return uuid.uuid4().hex


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.String(64), primary_key=True, default=new_booking_id)

    user_id = db.Column(db.String(64), nullable=True, index=True)
    user_name = db.Column(db.String(120), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)

    venue_id = db.Column(db.String(64), nullable=False, index=True)
    court_id = db.Column(db.String(64), nullable=False, index=True)
    date = db.Column(db.Date, nullable=False, index=True)
    # venue-local wall clock
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)

    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    currency = db.Column(db.String(10), nullable=False, default="eur")

    status = db.Column(db.String(20), nullable=False, default=BookingStatus.HOLDING, index=True)
    payment_status = db.Column(db.String(20), nullable=True, default=PaymentStatus.PENDING, index=True)
    payment_reference = db.Column(db.String(255), nullable=True, unique=True, index=True)

    invoice_number = db.Column(db.String(32), nullable=True, unique=True)
    invoice_generated_at = db.Column(db.DateTime, nullable=True)

    last_active = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancellation_reason = db.Column(db.String(120), nullable=True)

    recovered_from_payment = db.Column(db.Boolean, default=False, nullable=False)
    recovery_notes = db.Column(db.String(255), nullable=True)
    slot_conflict = db.Column(db.Boolean, default=False, nullable=False)
    needs_manual_review = db.Column(db.Boolean, default=False, nullable=False)

    refund_reference = db.Column(db.String(255), nullable=True, index=True)
    refund_status = db.Column(db.String(20), nullable=True)
    refund_amount = db.Column(db.Numeric(10, 2), nullable=True)
    refund_reason = db.Column(db.String(255), nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)
    refunded_by = db.Column(db.String(64), nullable=True)

    email_sent = db.Column(db.Boolean, default=False, nullable=False)
    email_sent_at = db.Column(db.DateTime, nullable=True)
    email_retry_count = db.Column(db.Integer, default=0, nullable=False)
    email_error = db.Column(db.String(255), nullable=True)
    email_failed_at = db.Column(db.DateTime, nullable=True)

    # optimistic lock: a concurrent writer on the same booking fails with StaleDataError
    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @validates("invoice_number")
    def _invoice_number_is_write_once(self, key, value):
        current = self.invoice_number
        if current is not None and value != current:
            raise ValueError(f"invoice_number already set to {current} for booking {self.id}")
        return value

    def to_dict(self) -> dict:
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "userId": self.user_id,
            "userName": self.user_name,
            "customerEmail": self.customer_email,
            "venueId": self.venue_id,
            "courtId": self.court_id,
            "date": _iso(self.date),
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "price": str(self.price) if self.price is not None else None,
            "currency": self.currency,
            "status": self.status,
            "paymentStatus": self.payment_status,
            "paymentReference": self.payment_reference,
            "invoiceNumber": self.invoice_number,
            "lastActive": _iso(self.last_active),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "cancelledAt": _iso(self.cancelled_at),
            "cancellationReason": self.cancellation_reason,
            "recoveredFromPayment": self.recovered_from_payment,
            "slotConflict": self.slot_conflict,
            "needsManualReview": self.needs_manual_review,
            "refundReference": self.refund_reference,
            "refundStatus": self.refund_status,
            "refundAmount": str(self.refund_amount) if self.refund_amount is not None else None,
            "emailSent": self.email_sent,
        }


class BookingArchive(db.Model):
    __tablename__ = "booking_archives"

    id = db.Column(db.String(64), primary_key=True)
    date = db.Column(db.Date, nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=False)
    archived_at = db.Column(db.DateTime, default=utcnow, nullable=False)
