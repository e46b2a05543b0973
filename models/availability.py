from models.db import db
from utils.timeutil import utcnow


class MonthlyAvailability(db.Model):
    __tablename__ = "monthly_availability"

    id = db.Column(db.Integer, primary_key=True)
    venue_id = db.Column(db.String(64), nullable=False, index=True)
    month = db.Column(db.String(7), nullable=False)  # YYYY-MM

    # {court_id: {YYYY-MM-DD: {HH:MM: {"available", "bookingId", "occupant"}}}}
    courts = db.Column(db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Single point of mutual exclusion for slot writes in this venue/month
    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.UniqueConstraint("venue_id", "month", name="uq_availability_venue_month"),
    )
