from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy.exc import IntegrityError

from models import db
from models.audit_log import AuditLog
from models.booking import Booking
from models.court import Court
from security.rbac import require_admin, require_api_key
from services import build_reconciliation, build_state_machine
from services.errors import ConflictError, ValidationError
from utils.audit import log_event

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")

RECOVERY_MODES = ("single", "scan", "cleanup")


# ---------- OPERATIONS: payment/booking recovery ----------
@admin_bp.post("/recovery")
@require_api_key("RECOVERY_API_KEY")
def recovery():
    data = request.get_json(silent=True) or {}
    params = {**request.args.to_dict(), **data}
    mode = params.get("mode") or "scan"
    if mode not in RECOVERY_MODES:
        raise ValidationError('Invalid mode. Use "single", "scan", or "cleanup"')

    try:
        days = int(params.get("days") or current_app.config["RECOVERY_SCAN_DAYS"])
    except (TypeError, ValueError):
        raise ValidationError("days must be a whole number", details={"field": "days"})

    service = build_reconciliation()
    if mode == "single":
        if params.get("bookingId"):
            result = service.recover_booking(params["bookingId"])
        elif params.get("paymentIntentId"):
            result = service.recover_by_payment_reference(params["paymentIntentId"])
        else:
            raise ValidationError("bookingId or paymentIntentId required for single mode")
    elif mode == "scan":
        result = service.scan(days)
    else:
        result = service.cleanup_stuck(days)

    log_event("RECOVERY_RUN", entity="booking", entity_id=params.get("bookingId"),
              metadata={"mode": mode, "days": days, "result": result})
    return jsonify(result), 200


# ---------- ADMIN: refunds ----------
@admin_bp.post("/refunds")
@require_admin
def create_refund():
    data = request.get_json(silent=True) or {}
    booking_id = data.get("bookingId")
    if not booking_id:
        raise ValidationError("Booking ID is required", details={"field": "bookingId"})

    refund, result = build_state_machine().begin_refund(
        booking_id, amount=data.get("amount"), reason=data.get("reason"), admin_id=g.admin_id
    )
    return jsonify(
        success=True,
        refundId=refund.id,
        amount=refund.amount / 100,
        currency=refund.currency,
        status=refund.status,
        bookingStatus=result.booking.status if result.booking is not None else None,
        message="Refund processed successfully",
    ), 200


# ---------- ADMIN: courts ----------
@admin_bp.post("/courts")
@require_admin
def register_court():
    data = request.get_json(silent=True) or {}
    court_id = (data.get("id") or "").strip()
    venue_id = (data.get("venueId") or "").strip()
    name = (data.get("name") or "").strip()
    if not court_id or not venue_id or not name:
        raise ValidationError("id, venueId and name are required")

    if db.session.get(Court, court_id) is not None:
        raise ConflictError("Court already exists", details={"courtId": court_id})

    court = Court(id=court_id, venue_id=venue_id, name=name, location=(data.get("location") or "").strip() or None)
    db.session.add(court)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Court already exists", details={"courtId": court_id})

    log_event("COURT_CREATE", actor_id=g.admin_id, entity="court", entity_id=court.id)
    return jsonify(id=court.id, venueId=court.venue_id, name=court.name, location=court.location), 201


# ---------- ADMIN: manual review queue ----------
@admin_bp.get("/bookings/review")
@require_admin
def review_queue():
    rows = (
        Booking.query
        .filter(Booking.needs_manual_review.is_(True))
        .order_by(Booking.updated_at.desc())
        .limit(200)
        .all()
    )
    return jsonify([b.to_dict() for b in rows]), 200


# ---------- ADMIN: audit trail ----------
@admin_bp.get("/audit-logs")
@require_admin
def list_audit_logs():
    limit = request.args.get("limit", type=int) or 200
    limit = max(1, min(limit, 500))

    action = request.args.get("action")
    entity_id = request.args.get("entity_id")

    q = AuditLog.query
    if action:
        q = q.filter(AuditLog.action == action)
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)

    rows = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit).all()
    return jsonify([
        {
            "id": r.id,
            "timestamp": r.timestamp.isoformat() if r.timestamp else None,
            "actor_id": r.actor_id,
            "action": r.action,
            "entity": r.entity,
            "entity_id": r.entity_id,
            "ip": r.ip,
            "user_agent": r.user_agent,
            "metadata": r.metadata_json,
        }
        for r in rows
    ]), 200
