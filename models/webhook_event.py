from models.db import db
from utils.timeutil import utcnow


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    # gateway-assigned event id; the idempotency key
    id = db.Column(db.String(255), primary_key=True)
    type = db.Column(db.String(80), nullable=False, index=True)
    raw_payload = db.Column(db.Text, nullable=False)
    booking_id = db.Column(db.String(64), nullable=True, index=True)

    processed = db.Column(db.Boolean, default=False, nullable=False, index=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    result = db.Column(db.String(40), nullable=True)
    error = db.Column(db.Text, nullable=True)

    received_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    delivery_count = db.Column(db.Integer, default=1, nullable=False)
