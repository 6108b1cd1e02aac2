from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from backend.app.domain.errors import ValidationError
from backend.app.models import AuditLog


def log_audit_event(
    db: Session,
    *,
    entity_type: str,
    entity_id: Optional[str],
    event_type: str,
    actor: str,
    reason: Optional[str] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    row = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        event_type=event_type,
        actor=actor,
        reason=reason,
        before_state=_jsonable(before),
        after_state=_jsonable(after),
    )
    db.add(row)
    db.flush()
    return row


def _jsonable(state: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if state is None:
        return None
    return {key: value.isoformat() if isinstance(value, datetime) else value for key, value in state.items()}


def _encode_cursor(created_at: datetime, audit_id: str) -> str:
    return f"{created_at.isoformat()}|{audit_id}"


def _decode_cursor(cursor: str) -> Tuple[datetime, str]:
    try:
        created_at_raw, audit_id = cursor.split("|", 1)
        return datetime.fromisoformat(created_at_raw), audit_id
    except ValueError as exc:
        raise ValidationError("invalid cursor") from exc


def list_audit_events(
    db: Session,
    *,
    limit: int = 100,
    cursor: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    event_type: Optional[str] = None,
    actor: Optional[str] = None,
) -> Dict[str, Any]:
    query = select(AuditLog)
    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.where(AuditLog.entity_id == entity_id)
    if event_type:
        query = query.where(AuditLog.event_type == event_type)
    if actor:
        query = query.where(AuditLog.actor == actor)
    if cursor:
        cursor_created_at, cursor_id = _decode_cursor(cursor)
        query = query.where(
            or_(
                AuditLog.created_at < cursor_created_at,
                and_(AuditLog.created_at == cursor_created_at, AuditLog.id < cursor_id),
            )
        )

    rows = (
        db.execute(
            query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit + 1)
        )
        .scalars()
        .all()
    )

    next_cursor = None
    if len(rows) > limit:
        last = rows[limit - 1]
        next_cursor = _encode_cursor(last.created_at, last.id)
        rows = rows[:limit]

    items = [
        {
            "id": row.id,
            "entity_type": row.entity_type,
            "entity_id": row.entity_id,
            "event_type": row.event_type,
            "actor": row.actor,
            "reason": row.reason,
            "before_state": row.before_state,
            "after_state": row.after_state,
            "created_at": row.created_at,
        }
        for row in rows
    ]

    return {"items": items, "next_cursor": next_cursor}
