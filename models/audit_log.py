from models.db import db
from utils.timeutil import utcnow


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.String(64), nullable=True)  # admin id, or null for system/gateway
    action = db.Column(db.String(80), nullable=False, index=True)  # e.g. PAYMENT_CONFIRMED, HOLD_EXPIRED
    entity = db.Column(db.String(80), nullable=True)   # e.g. booking, webhook_event
    entity_id = db.Column(db.String(255), nullable=True, index=True)

    ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)

    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False)
