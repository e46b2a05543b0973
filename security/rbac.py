import hmac
from functools import wraps

from flask import current_app, g, jsonify, request

from security.session import load_admin


def _bearer_token():
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


def require_admin(fn):
    """
    Usage: @require_admin
    Sets g.admin_id from a signed admin token.
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        token = _bearer_token()
        if token is None:
            return jsonify(success=False, error="Authentication required", errorCode="unauthorized"), 401

        admin_id = load_admin(token)
        if admin_id is None:
            return jsonify(success=False, error="Invalid or expired token", errorCode="unauthorized"), 401

        g.admin_id = admin_id
        return fn(*args, **kwargs)
    return wrapper


def require_api_key(config_key: str):
    """
    Usage: @require_api_key("RECOVERY_API_KEY")
    Compares X-API-Key against the configured secret; unset secret locks the endpoint.
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            expected = current_app.config.get(config_key)
            supplied = request.headers.get("X-API-Key") or ""
            if not expected or not hmac.compare_digest(supplied.encode(), expected.encode()):
                return jsonify(error="Unauthorized"), 401
            return fn(*args, **kwargs)
        return wrapper
    return decorator
