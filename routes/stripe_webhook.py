import logging

from flask import Blueprint, jsonify, request

from services import build_event_processor, get_gateway
from services.errors import ConfigurationError, SignatureError
from utils.audit import log_event

logger = logging.getLogger(__name__)

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")


@webhook_bp.post("/stripe")
def stripe_webhook():
    # ConfigurationError -> 500, SignatureError -> 400 via the app error handler
    try:
        event = get_gateway().verify_webhook(request.get_data(), request.headers.get("Stripe-Signature"))
    except (SignatureError, ConfigurationError) as exc:
        logger.warning("Rejected Stripe webhook: %s", exc.message)
        log_event("WEBHOOK_REJECTED", entity="webhook", metadata={
            "errorCode": exc.code,
            "error": exc.message,
            "hasSignature": bool(request.headers.get("Stripe-Signature")),
        })
        raise

    result = build_event_processor().handle(event)
    logger.info("Webhook %s (%s): %s %s", result.event_id, event.get("type"), result.status, result.action or "")
    return jsonify(received=True, **result.to_dict()), 200
