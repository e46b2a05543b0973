from flask import Blueprint, jsonify

from .admin import admin_bp
from .booking import booking_bp
from .payments import payments_bp
from .stripe_webhook import webhook_bp

health_bp = Blueprint("health", __name__)


@health_bp.get("/health")
def health():
    return jsonify(status="ok"), 200


__all__ = ["health_bp", "admin_bp", "booking_bp", "payments_bp", "webhook_bp"]
