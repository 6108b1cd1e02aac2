from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.app.api.deps import CurrentActor, get_current_actor
from backend.app.db import get_db
from backend.app.services import notification_service


router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class NotificationOut(BaseModel):
    id: str
    user_id: str
    notification_type: str
    title: str
    message: str
    signal_id: Optional[str]
    action_url: Optional[str]
    read: bool
    created_at: datetime

    class Config:
        from_attributes = True


class UnreadCountOut(BaseModel):
    unread: int


class MarkAllReadOut(BaseModel):
    updated: int


@router.get("", response_model=List[NotificationOut])
def get_my_notifications(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    unread_only: bool = Query(False),
    notification_type: Optional[str] = Query(None, alias="type"),
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(get_current_actor),
):
    rows = notification_service.list_notifications(
        db,
        actor.user_id,
        limit=limit,
        offset=offset,
        unread_only=unread_only,
        notification_type=notification_type,
    )
    return [NotificationOut.model_validate(row) for row in rows]


@router.get("/unread-count", response_model=UnreadCountOut)
def get_unread_count(
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(get_current_actor),
):
    return UnreadCountOut(unread=notification_service.unread_count(db, actor.user_id))


@router.post("/read-all", response_model=MarkAllReadOut)
def post_mark_all_read(
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(get_current_actor),
):
    updated = notification_service.mark_all_read(db, actor.user_id)
    db.commit()
    return MarkAllReadOut(updated=updated)


@router.post("/{notification_id}/read", response_model=NotificationOut)
def post_mark_read(
    notification_id: str,
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(get_current_actor),
):
    row = notification_service.mark_read(db, actor.user_id, notification_id)
    db.commit()
    return NotificationOut.model_validate(row)


@router.delete("/{notification_id}", status_code=204)
def delete_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(get_current_actor),
):
    notification_service.delete_notification(db, actor.user_id, notification_id)
    db.commit()
