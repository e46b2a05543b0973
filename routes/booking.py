from datetime import date

from flask import Blueprint, current_app, jsonify, request

from services import build_state_machine, build_store
from services.errors import NotFoundError, ValidationError

booking_bp = Blueprint("booking", __name__)


# ---------- CUSTOMERS: view availability ----------
@booking_bp.get("/availability")
def availability():
    venue_id = request.args.get("venue_id")
    court_id = request.args.get("court_id")
    date_str = request.args.get("date")
    if not venue_id or not court_id or not date_str:
        raise ValidationError("venue_id, court_id and date are required")

    try:
        day = date.fromisoformat(date_str)
    except ValueError:
        raise ValidationError("Invalid date. Use YYYY-MM-DD", details={"field": "date"})

    slots = build_store().day_slots(venue_id, court_id, day)
    if slots is None:
        raise NotFoundError("No availability published for that month")

    return jsonify(
        venueId=venue_id,
        courtId=court_id,
        date=day.isoformat(),
        granularityMinutes=current_app.config["SLOT_GRANULARITY_MINUTES"],
        slots=[
            {"time": time_key, "available": state.available, "bookingId": state.booking_id}
            for time_key, state in slots.items()
        ],
    ), 200


# ---------- CUSTOMERS: hold, heartbeat, cancel ----------
@booking_bp.post("/bookings")
def create_booking():
    data = request.get_json(silent=True) or {}
    booking = build_state_machine().create_hold(data)
    return jsonify(success=True, booking=booking.to_dict()), 201


@booking_bp.get("/bookings/<booking_id>")
def get_booking(booking_id):
    booking = build_state_machine().get(booking_id)
    return jsonify(success=True, booking=booking.to_dict()), 200


@booking_bp.post("/bookings/<booking_id>/heartbeat")
def heartbeat(booking_id):
    booking = build_state_machine().touch(booking_id)
    return jsonify(success=True, status=booking.status, lastActive=booking.to_dict()["lastActive"]), 200


@booking_bp.post("/bookings/<booking_id>/cancel")
def cancel_booking(booking_id):
    data = request.get_json(silent=True) or {}
    result = build_state_machine().cancel(booking_id, data.get("reason"))
    return jsonify(success=True, result=result.to_dict(), booking=result.booking.to_dict()), 200
