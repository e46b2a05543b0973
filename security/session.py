from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

ADMIN_TOKEN_SALT = "courtslot-admin"


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=ADMIN_TOKEN_SALT)


def issue_admin_token(admin_id: str) -> str:
    """
    Signed, timestamped bearer token for the admin endpoints.
    Nothing is stored server side; rotating SECRET_KEY revokes every token.
    """
    return _serializer().dumps({"admin_id": str(admin_id)})


def load_admin(token: str):
    """Returns the admin id for a valid token, None for a bad or expired one."""
    if not token:
        return None
    max_age = current_app.config.get("ADMIN_TOKEN_MAX_AGE_SECONDS", 43200)
    try:
        data = _serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        return None
    except BadSignature:
        return None
    return data.get("admin_id") if isinstance(data, dict) else None
