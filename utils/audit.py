import json
import logging

from flask import has_request_context, request

from models import db
from models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def log_event(action: str, actor_id=None, entity=None, entity_id=None, metadata=None, session=None, commit=True):
    """
    Append an audit row. Works from requests, CLI sweeps and tests alike;
    outside a request there is simply no ip/user agent to record.
    """
    session = session or db.session
    ip = None
    user_agent = None
    if has_request_context():
        ip = request.headers.get("X-Forwarded-For", request.remote_addr)
        user_agent = request.headers.get("User-Agent", "")

    row = AuditLog(
        actor_id=str(actor_id) if actor_id is not None else None,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        ip=ip,
        user_agent=user_agent[:255] if user_agent else None,
        metadata_json=json.dumps(metadata, default=str) if metadata else None,
    )
    session.add(row)
    if commit:
        session.commit()
    logger.debug("audit %s %s=%s %s", action, entity, entity_id, metadata or "")
    return row
