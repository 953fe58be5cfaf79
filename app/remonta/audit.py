import json
import logging
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.remonta.models import AuditEvent, User

logger = logging.getLogger(__name__)


def client_ip() -> str | None:
    if not has_request_context():
        return None
    forwarded = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return forwarded or request.headers.get("X-Real-IP") or request.remote_addr


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.
    """
    rid = request_id or (getattr(g, "request_id", None) if has_request_context() else None)
    ev = AuditEvent(
        request_id=rid,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=client_ip(),
    )
    s.add(ev)
    return ev


def record_event_safe(s: Session, **kwargs: Any) -> AuditEvent | None:
    """
    Like record_event, but for best-effort paths: failures are logged and swallowed.
    """
    try:
        return record_event(s, **kwargs)
    except Exception:
        logger.exception("Audit event failed (action=%s)", kwargs.get("action"))
        return None
