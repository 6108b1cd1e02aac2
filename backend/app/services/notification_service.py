from __future__ import annotations

import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.domain.errors import ExternalServiceError, NotFound, ValidationError
from backend.app.domain.signal_fields import FIELD_LABELS, SignalChanges
from backend.app.integrations.base import DeliveryOutcome, MessagingGateway
from backend.app.models import (
    DELIVERY_STATUSES,
    REVISION_UPDATE,
    Notification,
    NotificationLog,
    Signal,
    utcnow,
)
from backend.app.services import signal_ledger_service, subscription_service


logger = logging.getLogger(__name__)

EVENT_CREATED = "created"
EVENT_UPDATED = "updated"


def dispatch_max_workers() -> int:
    return max(int(os.getenv("DISPATCH_MAX_WORKERS", "10")), 1)


@dataclass(frozen=True)
class Recipient:
    user_id: str
    subscription_id: str
    target: Optional[str]


@dataclass(frozen=True)
class RecipientOutcome:
    user_id: str
    target: Optional[str]
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class DispatchSummary:
    """
    Outcome of one fan-out.

    `total_subscribers` counts the recipients Channel A actually attempted;
    active subscribers without a deliverable contact are reported in
    `skipped` and still receive their in-app notification.
    """

    signal_id: str
    event: str
    total_subscribers: int
    success_count: int
    failure_count: int
    inbox_created: int
    inbox_failed: int
    skipped: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    skipped_users: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "partial_failure" if self.failure_count or self.inbox_failed else "ok"


# -------------------------
# Message formatting
# -------------------------

def _fmt(value: Any) -> str:
    if value is None:
        return "none"
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def _direction_emoji(signal_type: Optional[str]) -> str:
    return "📈" if signal_type == "buy" else "📉"


def format_signal_message(signal: Signal) -> str:
    lines = [
        f"🚨 *{signal.title}* 🚨",
        "",
        f"📊 *Pair*: {signal.trading_pair}",
        f"{_direction_emoji(signal.signal_type)} *Type*: {signal.signal_type.upper()}",
        "",
        f"💰 *Entry*: {_fmt(signal.entry_price)}",
    ]
    for label, value in (
        ("TP1", signal.take_profit_1),
        ("TP2", signal.take_profit_2),
        ("TP3", signal.take_profit_3),
    ):
        if value:
            lines.append(f"🎯 *{label}*: {_fmt(value)}")
    if signal.confidence_level:
        lines.append(f"💪 *Confidence*: {signal.confidence_level.upper()}")
    if signal.analysis and signal.analysis.strip():
        lines.extend(["", "📝 *Analysis*", signal.analysis.strip()])
    lines.extend(["", "_Trade responsibly. Manage your risk._"])
    return "\n".join(lines)


def format_update_message(signal: Signal, changes: SignalChanges) -> str:
    lines = [
        f"🔄 *Signal Update: {signal.title}*",
        "",
        f"📊 *Pair*: {signal.trading_pair}",
    ]
    for signal_field, change in changes.items():
        lines.append(f"• *{FIELD_LABELS[signal_field]}*: {_fmt(change.old)} → {_fmt(change.new)}")
    return "\n".join(lines)


def inbox_content(signal: Signal, event: str, changes: Optional[SignalChanges] = None) -> Tuple[str, str]:
    if event == EVENT_CREATED:
        return (
            f"{_direction_emoji(signal.signal_type)} New Signal: {signal.trading_pair}",
            f"{signal.title} - Entry at {_fmt(signal.entry_price)}",
        )
    summary = ", ".join(
        f"{FIELD_LABELS[signal_field]}: {_fmt(change.old)} → {_fmt(change.new)}"
        for signal_field, change in (changes or SignalChanges()).items()
    )
    return f"🔄 Signal Updated: {signal.trading_pair}", summary or signal.title


# -------------------------
# Recipients
# -------------------------

def resolve_recipients(db: Session) -> List[Recipient]:
    subscriptions = subscription_service.list_active_subscriptions(db)
    profiles = subscription_service.profiles_for_users(db, (sub.user_id for sub in subscriptions))
    recipients: List[Recipient] = []
    seen: set[str] = set()
    for sub in subscriptions:
        if sub.user_id in seen:
            continue
        seen.add(sub.user_id)
        target = subscription_service.deliverable_contact(profiles.get(sub.user_id))
        recipients.append(Recipient(user_id=sub.user_id, subscription_id=sub.id, target=target))
    return recipients


# -------------------------
# Channel A: external broadcast
# -------------------------

def _send_one(gateway: MessagingGateway, recipient: Recipient, message: str) -> RecipientOutcome:
    outcome: DeliveryOutcome = gateway.send_message(recipient.target, message)
    return RecipientOutcome(
        user_id=recipient.user_id,
        target=recipient.target,
        success=outcome.success,
        message_id=outcome.message_id,
        error=outcome.error,
    )


def _collect(recipient: Recipient, future: Future) -> RecipientOutcome:
    try:
        return future.result()
    except ExternalServiceError as exc:
        error = exc.detail
    except Exception as exc:  # noqa: BLE001
        error = f"{type(exc).__name__}: {exc}"
    logger.warning("Send to user_id=%s failed: %s", recipient.user_id, error)
    return RecipientOutcome(user_id=recipient.user_id, target=recipient.target, success=False, error=error)


def _record_delivery_logs(db: Session, signal_id: str, event: str, outcomes: List[RecipientOutcome]) -> None:
    now = utcnow()
    try:
        with db.begin_nested():
            for outcome in outcomes:
                db.add(
                    NotificationLog(
                        signal_id=signal_id,
                        user_id=outcome.user_id,
                        event=event,
                        target=outcome.target,
                        success=outcome.success,
                        message_id=outcome.message_id,
                        error_message=(outcome.error or None) and outcome.error[:400],
                        status="sent" if outcome.success else "failed",
                        sent_at=now if outcome.success else None,
                    )
                )
            db.flush()
    except SQLAlchemyError as exc:
        logger.warning("Failed to record delivery logs for signal_id=%s: %s", signal_id, exc)


# -------------------------
# Channel B: in-app mailbox
# -------------------------

def _deliver_inbox(
    db: Session,
    recipients: List[Recipient],
    *,
    signal_id: str,
    title: str,
    message: str,
) -> Tuple[int, int]:
    created = 0
    failed = 0
    for recipient in recipients:
        try:
            with db.begin_nested():
                db.add(
                    Notification(
                        user_id=recipient.user_id,
                        notification_type="signal",
                        title=title,
                        message=message,
                        signal_id=signal_id,
                        action_url=f"/dashboard/signals/{signal_id}",
                    )
                )
                db.flush()
            created += 1
        except SQLAlchemyError as exc:
            failed += 1
            logger.warning("In-app notification for user_id=%s failed: %s", recipient.user_id, exc)
    return created, failed


# -------------------------
# Fan-out
# -------------------------

def _dispatch(
    db: Session,
    signal: Signal,
    *,
    event: str,
    external_message: str,
    inbox_title: str,
    inbox_message: str,
    gateway: MessagingGateway,
    max_workers: Optional[int],
) -> DispatchSummary:
    if signal in db.new or db.is_modified(signal):
        raise RuntimeError("signal mutation must be committed before dispatch")

    signal_id = signal.id
    recipients = resolve_recipients(db)
    deliverable = [recipient for recipient in recipients if recipient.target]
    skipped = [recipient.user_id for recipient in recipients if not recipient.target]
    outcomes: List[RecipientOutcome] = []

    workers = min(max_workers or dispatch_max_workers(), max(len(deliverable), 1))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="signal-dispatch") as pool:
        futures = [
            (recipient, pool.submit(_send_one, gateway, recipient, external_message))
            for recipient in deliverable
        ]
        # Channel B runs on this thread while Channel A sends are in flight.
        inbox_created, inbox_failed = _deliver_inbox(
            db,
            recipients,
            signal_id=signal_id,
            title=inbox_title,
            message=inbox_message,
        )
        outcomes.extend(_collect(recipient, future) for recipient, future in futures)

    _record_delivery_logs(db, signal_id, event, outcomes)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("Failed to persist notification records for signal_id=%s: %s", signal_id, exc)

    success_count = sum(1 for outcome in outcomes if outcome.success)
    summary = DispatchSummary(
        signal_id=signal_id,
        event=event,
        total_subscribers=len(deliverable),
        success_count=success_count,
        failure_count=len(outcomes) - success_count,
        inbox_created=inbox_created,
        inbox_failed=inbox_failed,
        skipped=len(skipped),
        failures=[
            {"user_id": outcome.user_id, "target": outcome.target, "error": outcome.error}
            for outcome in outcomes
            if not outcome.success
        ],
        skipped_users=skipped,
    )
    logger.info(
        "Dispatched %s for signal_id=%s: total=%s success=%s failed=%s skipped=%s inbox_failed=%s",
        event,
        signal_id,
        summary.total_subscribers,
        summary.success_count,
        summary.failure_count,
        summary.skipped,
        summary.inbox_failed,
    )
    return summary


def on_signal_created(
    db: Session,
    signal: Signal,
    *,
    gateway: MessagingGateway,
    max_workers: Optional[int] = None,
) -> DispatchSummary:
    title, message = inbox_content(signal, EVENT_CREATED)
    return _dispatch(
        db,
        signal,
        event=EVENT_CREATED,
        external_message=format_signal_message(signal),
        inbox_title=title,
        inbox_message=message,
        gateway=gateway,
        max_workers=max_workers,
    )


def on_signal_updated(
    db: Session,
    signal: Signal,
    changes: SignalChanges,
    *,
    gateway: MessagingGateway,
    max_workers: Optional[int] = None,
) -> DispatchSummary:
    title, message = inbox_content(signal, EVENT_UPDATED, changes)
    return _dispatch(
        db,
        signal,
        event=EVENT_UPDATED,
        external_message=format_update_message(signal, changes),
        inbox_title=title,
        inbox_message=message,
        gateway=gateway,
        max_workers=max_workers,
    )


def dispatch_signal_notifications(
    db: Session,
    signal_id: str,
    *,
    gateway: MessagingGateway,
    max_workers: Optional[int] = None,
) -> DispatchSummary:
    """Manual re-trigger: re-announce the signal's latest ledger event."""
    signal = signal_ledger_service.get_signal(db, signal_id)
    revision = signal_ledger_service.latest_revision(db, signal_id)
    if revision is not None and revision.revision_type == REVISION_UPDATE:
        changes = SignalChanges.from_dict(revision.changes or {})
        return on_signal_updated(db, signal, changes, gateway=gateway, max_workers=max_workers)
    return on_signal_created(db, signal, gateway=gateway, max_workers=max_workers)


# -------------------------
# Mailbox
# -------------------------

def _mailbox(user_id: str):
    return select(Notification).where(Notification.user_id == user_id, Notification.deleted.is_(False))


def list_notifications(
    db: Session,
    user_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
    unread_only: bool = False,
    notification_type: Optional[str] = None,
) -> List[Notification]:
    stmt = _mailbox(user_id)
    if unread_only:
        stmt = stmt.where(Notification.read.is_(False))
    if notification_type:
        stmt = stmt.where(Notification.notification_type == notification_type)
    return (
        db.execute(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit)
        )
        .scalars()
        .all()
    )


def unread_count(db: Session, user_id: str) -> int:
    return db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.deleted.is_(False),
            Notification.read.is_(False),
        )
    ).scalar_one()


def _require_notification(db: Session, user_id: str, notification_id: str) -> Notification:
    row = db.execute(_mailbox(user_id).where(Notification.id == notification_id)).scalars().first()
    if row is None:
        raise NotFound("notification not found", context={"notification_id": notification_id})
    return row


def mark_read(db: Session, user_id: str, notification_id: str) -> Notification:
    row = _require_notification(db, user_id, notification_id)
    row.read = True
    db.flush()
    return row


def mark_all_read(db: Session, user_id: str) -> int:
    result = db.execute(
        update(Notification)
        .where(
            Notification.user_id == user_id,
            Notification.deleted.is_(False),
            Notification.read.is_(False),
        )
        .values(read=True)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


def delete_notification(db: Session, user_id: str, notification_id: str) -> None:
    """Soft delete: the row stays for delivery history but leaves the mailbox."""
    row = _require_notification(db, user_id, notification_id)
    row.deleted = True
    db.flush()


# -------------------------
# Provider delivery receipts
# -------------------------

_STATUS_RANK = {"sent": 1, "delivered": 2, "read": 3}
_STATUS_TIMESTAMP = {"sent": "sent_at", "delivered": "delivered_at", "read": "read_at"}


def update_delivery_status(
    db: Session,
    message_id: str,
    status: str,
    *,
    error: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Apply a provider receipt to every log row carrying `message_id`.

    Receipts only move a row forward (sent -> delivered -> read); "failed" is
    terminal and wins over anything but itself. Returns the number of rows changed.
    """
    if status not in DELIVERY_STATUSES:
        raise ValidationError("invalid delivery status", context={"status": status})
    if not message_id:
        raise ValidationError("message_id is required")
    stamp = now or utcnow()
    rows = db.execute(select(NotificationLog).where(NotificationLog.message_id == message_id)).scalars().all()
    changed = 0
    for row in rows:
        if row.status == "failed":
            continue
        if status == "failed":
            row.status = "failed"
            row.success = False
            row.error_message = (error or "delivery failed")[:400]
        elif _STATUS_RANK[status] > _STATUS_RANK.get(row.status, 0):
            row.status = status
            setattr(row, _STATUS_TIMESTAMP[status], stamp)
        else:
            continue
        changed += 1
    if not rows:
        logger.info("Delivery receipt for unknown message_id=%s (%s)", message_id, status)
    db.flush()
    return changed
