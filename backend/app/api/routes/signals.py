from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import CurrentActor, get_current_actor, get_gateway_dep, require_admin
from backend.app.db import get_db
from backend.app.domain.errors import LedgerIntegrityError
from backend.app.integrations.base import MessagingGateway
from backend.app.services import notification_service, signal_ledger_service
from backend.app.services.notification_service import DispatchSummary


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/signals", tags=["signals"])


class SignalCreateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    trading_pair: str
    signal_type: str
    entry_price: float
    stop_loss: float
    take_profit_1: Optional[float] = None
    take_profit_2: Optional[float] = None
    take_profit_3: Optional[float] = None
    title: str
    analysis: Optional[str] = None
    confidence_level: Optional[str] = None


class SignalPatchIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    trading_pair: Optional[str] = None
    signal_type: Optional[str] = None
    entry_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit_1: Optional[float] = None
    take_profit_2: Optional[float] = None
    take_profit_3: Optional[float] = None
    title: Optional[str] = None
    analysis: Optional[str] = None
    confidence_level: Optional[str] = None
    status: Optional[str] = None


class SignalOut(BaseModel):
    id: str
    trading_pair: str
    signal_type: str
    entry_price: float
    stop_loss: float
    take_profit_1: Optional[float]
    take_profit_2: Optional[float]
    take_profit_3: Optional[float]
    title: str
    analysis: Optional[str]
    confidence_level: Optional[str]
    status: str
    created_by: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SignalRevisionOut(BaseModel):
    id: str
    signal_id: str
    sequence: int
    revision_type: str
    snapshot: Optional[Dict[str, Any]]
    changes: Optional[Dict[str, Any]]
    actor: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class DispatchOut(BaseModel):
    status: str
    event: Optional[str] = None
    total_subscribers: int = 0
    success_count: int = 0
    failure_count: int = 0
    inbox_created: int = 0
    inbox_failed: int = 0
    skipped: int = 0
    failures: List[Dict[str, Any]] = Field(default_factory=list)
    skipped_users: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class SignalCreateOut(BaseModel):
    signal: SignalOut
    dispatch: DispatchOut


class SignalUpdateOut(BaseModel):
    signal: SignalOut
    changes: Dict[str, Dict[str, Any]]
    dispatch: Optional[DispatchOut] = None


class LedgerCheckOut(BaseModel):
    signal_id: str
    ok: bool
    revisions: int = 0
    error: Optional[str] = None


def _dispatch_out(summary: DispatchSummary) -> DispatchOut:
    return DispatchOut(
        status=summary.status,
        event=summary.event,
        total_subscribers=summary.total_subscribers,
        success_count=summary.success_count,
        failure_count=summary.failure_count,
        inbox_created=summary.inbox_created,
        inbox_failed=summary.inbox_failed,
        skipped=summary.skipped,
        failures=summary.failures,
        skipped_users=summary.skipped_users,
    )


def _dispatch_after_commit(db: Session, send: Callable[[], DispatchSummary]) -> DispatchOut:
    # the mutation is already committed; nothing here may change its outcome
    try:
        return _dispatch_out(send())
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        logger.warning("Signal dispatch failed after commit: %s", exc)
        return DispatchOut(status="failed", error=str(exc))


@router.post("", response_model=SignalCreateOut, status_code=201)
def post_signal(
    req: SignalCreateIn,
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(require_admin),
    gateway: MessagingGateway = Depends(get_gateway_dep),
):
    signal, _ = signal_ledger_service.create_signal(
        db,
        fields=req.model_dump(exclude_unset=True),
        actor=actor.user_id,
    )
    db.commit()
    dispatch = _dispatch_after_commit(
        db,
        lambda: notification_service.on_signal_created(db, signal, gateway=gateway),
    )
    db.refresh(signal)
    return SignalCreateOut(signal=SignalOut.model_validate(signal), dispatch=dispatch)


@router.patch("/{signal_id}", response_model=SignalUpdateOut)
def patch_signal(
    signal_id: str,
    req: SignalPatchIn,
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(require_admin),
    gateway: MessagingGateway = Depends(get_gateway_dep),
):
    result = signal_ledger_service.update_signal(
        db,
        signal_id,
        fields=req.model_dump(exclude_unset=True),
        actor=actor.user_id,
    )
    db.commit()
    dispatch = None
    if result.revision is not None:
        dispatch = _dispatch_after_commit(
            db,
            lambda: notification_service.on_signal_updated(db, result.signal, result.changes, gateway=gateway),
        )
    db.refresh(result.signal)
    return SignalUpdateOut(
        signal=SignalOut.model_validate(result.signal),
        changes=result.changes.to_dict(),
        dispatch=dispatch,
    )


@router.get("", response_model=List[SignalOut])
def get_signals(
    status: Optional[str] = Query(default=None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(get_current_actor),
):
    signals = signal_ledger_service.list_signals(db, status=status, limit=limit)
    return [SignalOut.model_validate(signal) for signal in signals]


@router.get("/{signal_id}", response_model=SignalOut)
def get_signal(
    signal_id: str,
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(get_current_actor),
):
    return SignalOut.model_validate(signal_ledger_service.get_signal(db, signal_id))


@router.get("/{signal_id}/history", response_model=List[SignalRevisionOut])
def get_signal_history(
    signal_id: str,
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(get_current_actor),
):
    revisions = signal_ledger_service.get_signal_history(db, signal_id)
    return [SignalRevisionOut.model_validate(revision) for revision in revisions]


@router.get("/{signal_id}/ledger-check", response_model=LedgerCheckOut, dependencies=[Depends(require_admin)])
def get_ledger_check(signal_id: str, db: Session = Depends(get_db)):
    try:
        result = signal_ledger_service.verify_ledger(db, signal_id)
    except LedgerIntegrityError as exc:
        return LedgerCheckOut(signal_id=signal_id, ok=False, error=str(exc))
    return LedgerCheckOut(signal_id=signal_id, ok=True, revisions=result["revisions"])


@router.post("/{signal_id}/dispatch", response_model=DispatchOut, dependencies=[Depends(require_admin)])
def post_dispatch(
    signal_id: str,
    db: Session = Depends(get_db),
    gateway: MessagingGateway = Depends(get_gateway_dep),
):
    summary = notification_service.dispatch_signal_notifications(db, signal_id, gateway=gateway)
    return _dispatch_out(summary)
