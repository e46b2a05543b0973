from models.db import db
from utils.timeutil import utcnow


class Court(db.Model):
    __tablename__ = "courts"

    id = db.Column(db.String(64), primary_key=True)
    venue_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    location = db.Column(db.String(160), nullable=True)

    status = db.Column(db.String(20), nullable=False, default="active")
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
