from models.db import db
from utils.timeutil import utcnow


class SequenceCounter(db.Model):
    __tablename__ = "counters"

    name = db.Column(db.String(64), primary_key=True)
    value = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)
