from __future__ import annotations

import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.orgdocs.models import AuditEvent, User


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
    Append an audit event to the session. Request id and client address are
    taken from the active request when there is one; the caller commits.
    """
    rid, client_ip = request_id, None
    if has_request_context():
        rid = rid or g.get("request_id")
        client_ip = request.remote_addr
    ev = AuditEvent(
        request_id=rid,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=client_ip,
    )
    s.add(ev)
    return ev


def events_for_entity(s: Session, entity_type: str, entity_id: str | int, *, limit: int = 200) -> list[AuditEvent]:
    """Newest first."""
    stmt = (
        select(AuditEvent)
        .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == str(entity_id))
        .order_by(AuditEvent.id.desc())
        .limit(limit)
    )
    return list(s.scalars(stmt))


def event_to_dict(ev: AuditEvent) -> dict[str, Any]:
    return {
        "id": ev.id,
        "action": ev.action,
        "actor_user_id": ev.actor_user_id,
        "actor_user_email": ev.actor_user_email,
        "reason": ev.reason,
        "metadata": json.loads(ev.metadata_json) if ev.metadata_json else {},
        "request_id": ev.request_id,
        "client_ip": ev.client_ip,
        "created_at": ev.created_at.isoformat() if ev.created_at else None,
    }
