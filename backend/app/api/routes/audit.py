from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.app.api.deps import require_admin
from backend.app.db import get_db
from backend.app.services import audit_service

router = APIRouter(prefix="/api/audit", tags=["audit"])


class AuditLogOut(BaseModel):
    id: str
    entity_type: str
    entity_id: Optional[str] = None
    event_type: str
    actor: str
    reason: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    created_at: datetime


class AuditLogPageOut(BaseModel):
    items: List[AuditLogOut]
    next_cursor: Optional[str] = None


@router.get("", response_model=AuditLogPageOut, dependencies=[Depends(require_admin)])
def list_audit_events(
    limit: int = Query(100, ge=1, le=500),
    cursor: Optional[str] = Query(None),
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None),
    actor: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    result = audit_service.list_audit_events(
        db,
        limit=limit,
        cursor=cursor,
        entity_type=entity_type,
        entity_id=entity_id,
        event_type=event_type,
        actor=actor,
    )
    return AuditLogPageOut(
        items=[AuditLogOut(**item) for item in result["items"]],
        next_cursor=result["next_cursor"],
    )
