from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.app.api.deps import get_clock, get_gateway_dep, require_admin
from backend.app.db import get_db
from backend.app.domain.clock import Clock
from backend.app.integrations.base import MessagingGateway
from backend.app.services import group_service


router = APIRouter(prefix="/api/groups", tags=["groups"], dependencies=[Depends(require_admin)])


class DeliveryGroupOut(BaseModel):
    id: str
    group_name: str
    external_channel_id: str
    group_number: int
    member_count: int
    max_members: int
    is_active: bool
    month_key: str
    created_at: datetime

    class Config:
        from_attributes = True


class RefreshSummaryOut(BaseModel):
    month_key: str
    migrated: int
    groups_touched: int
    groups_created: int
    groups_retired: int
    failed: int
    error: Optional[str] = None
    members_added: int = 0
    member_add_failed: int = 0
    status: str


class DeliveryGroupMemberOut(BaseModel):
    id: str
    group_id: str
    user_id: str
    month_key: str
    external_status: str
    external_error: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


@router.post("/refresh", response_model=RefreshSummaryOut)
def post_refresh_groups(
    db: Session = Depends(get_db),
    gateway: MessagingGateway = Depends(get_gateway_dep),
    clock: Clock = Depends(get_clock),
):
    summary = group_service.refresh_groups(db, gateway=gateway, clock=clock)
    status = "partial_failure" if summary.failed or summary.member_add_failed else "ok"
    return RefreshSummaryOut(**asdict(summary), status=status)


@router.get("", response_model=List[DeliveryGroupOut])
def get_groups(
    month_key: Optional[str] = Query(default=None, pattern=r"^\d{4}-\d{2}$"),
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
):
    groups = group_service.list_groups(db, month_key=month_key, active_only=active_only)
    return [DeliveryGroupOut.model_validate(group) for group in groups]


@router.get("/{group_id}/members", response_model=List[DeliveryGroupMemberOut])
def get_group_members(group_id: str, db: Session = Depends(get_db)):
    members = group_service.list_members(db, group_id)
    return [DeliveryGroupMemberOut.model_validate(member) for member in members]
