from models.db import db
from utils.timeutil import utcnow


class PaymentTransactionLog(db.Model):
    """Append-only trail tying gateway transaction ids to bookings."""

    __tablename__ = "payment_transactions"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.String(64), nullable=True, index=True)

    provider = db.Column(db.String(20), nullable=False, default="STRIPE")
    transaction_id = db.Column(db.String(255), nullable=False, index=True)
    event_id = db.Column(db.String(255), nullable=True)
    kind = db.Column(db.String(20), nullable=False)  # payment, refund
    status = db.Column(db.String(40), nullable=False)
    amount = db.Column(db.Integer, nullable=True)  # smallest unit
    currency = db.Column(db.String(10), nullable=True)
    source = db.Column(db.String(40), nullable=False)  # webhook, recovery, reconciliation, refund_api

    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
