from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.db import Base


# -------------------------
# Helpers
# -------------------------

SIGNAL_STATUSES = ("active", "closed", "cancelled")
SIGNAL_TERMINAL_STATUSES = ("closed", "cancelled")

REVISION_INITIAL = "initial"
REVISION_UPDATE = "update"

PRICING_TYPES = ("monthly", "per_pip")
SUBSCRIPTION_STATUSES = ("pending", "active", "cancelled", "expired")
SUBSCRIPTION_OPEN_STATUSES = ("pending", "active")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")

# provider-reported lifecycle of an external send; "failed" is terminal
DELIVERY_STATUSES = ("sent", "delivered", "read", "failed")

_OPEN_SUBSCRIPTION_WHERE = text("status IN ('pending', 'active')")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def uuid_str() -> str:
    return str(uuid.uuid4())


# -------------------------
# Signal ledger
# -------------------------

class Signal(Base):
    __tablename__ = "signals"
    __table_args__ = (
        Index("ix_signals_status_created", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)

    trading_pair: Mapped[str] = mapped_column(String(20), nullable=False)
    signal_type: Mapped[str] = mapped_column(String(10), nullable=False)  # buy/sell
    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    stop_loss: Mapped[float] = mapped_column(Float, nullable=False)
    take_profit_1: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    take_profit_2: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    take_profit_3: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    analysis: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence_level: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    created_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    revisions = relationship(
        "SignalRevision",
        back_populates="signal",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SignalRevision.sequence",
    )


class SignalRevision(Base):
    """
    Append-only ledger entry for a signal.

    revision_type:
      - initial: `snapshot` holds the full field map, sequence is always 0
      - update:  `changes` holds {field: {"old": ..., "new": ...}}
    """
    __tablename__ = "signal_revisions"
    __table_args__ = (
        UniqueConstraint("signal_id", "sequence", name="uq_signal_revisions_signal_sequence"),
        Index("ix_signal_revisions_signal_id", "signal_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    signal_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("signals.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    revision_type: Mapped[str] = mapped_column(String(10), nullable=False)
    snapshot: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    changes: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    actor: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    signal = relationship("Signal", back_populates="revisions")


# -------------------------
# Billing
# -------------------------

class PricingPlan(Base):
    __tablename__ = "pricing_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    pricing_type: Mapped[str] = mapped_column(String(10), nullable=False, unique=True)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    description: Mapped[Optional[str]] = mapped_column(String(400), nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("true"),
        default=True,
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # at most one pending/active subscription per user, enforced by the store
        Index(
            "uq_subscriptions_user_open",
            "user_id",
            unique=True,
            sqlite_where=_OPEN_SUBSCRIPTION_WHERE,
            postgresql_where=_OPEN_SUBSCRIPTION_WHERE,
        ),
        CheckConstraint("pips_used <= pips_purchased", name="ck_subscriptions_pips_within_quota"),
        CheckConstraint("pips_used >= 0", name="ck_subscriptions_pips_used_non_negative"),
        Index("ix_subscriptions_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pricing_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("pricing_plans.id"),
        nullable=False,
    )

    subscription_type: Mapped[str] = mapped_column(String(10), nullable=False)  # monthly/per_pip
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    payment_reference: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    amount_paid: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    pips_purchased: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pips_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    pricing = relationship("PricingPlan")


class SubscriberProfile(Base):
    """
    Contact details for Channel-A delivery. Identity itself lives upstream.
    """
    __tablename__ = "subscriber_profiles"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    phone_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    messaging_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


# -------------------------
# Delivery groups
# -------------------------

class DeliveryGroup(Base):
    __tablename__ = "delivery_groups"
    __table_args__ = (
        UniqueConstraint("month_key", "group_number", name="uq_delivery_groups_month_number"),
        CheckConstraint("member_count <= max_members", name="ck_delivery_groups_capacity"),
        Index("ix_delivery_groups_month_active", "month_key", "is_active"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    group_name: Mapped[str] = mapped_column(String(200), nullable=False)
    external_channel_id: Mapped[str] = mapped_column(String(200), nullable=False)
    group_number: Mapped[int] = mapped_column(Integer, nullable=False)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_members: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    month_key: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    members = relationship(
        "DeliveryGroupMember",
        back_populates="group",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class DeliveryGroupMember(Base):
    __tablename__ = "delivery_group_members"
    __table_args__ = (
        UniqueConstraint("user_id", "month_key", name="uq_delivery_group_members_user_month"),
        Index("ix_delivery_group_members_group_id", "group_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    group_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("delivery_groups.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    month_key: Mapped[str] = mapped_column(String(7), nullable=False)
    external_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    external_error: Mapped[Optional[str]] = mapped_column(String(400), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    group = relationship("DeliveryGroup", back_populates="members")


# -------------------------
# Notifications
# -------------------------

class Notification(Base):
    """
    In-app mailbox entry (Channel B).
    """
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(20), nullable=False, default="signal")
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    signal_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("signals.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    action_url: Mapped[Optional[str]] = mapped_column(String(400), nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class NotificationLog(Base):
    """
    Per-recipient outcome of an external (Channel A) send.
    """
    __tablename__ = "notification_logs"
    __table_args__ = (
        Index("ix_notification_logs_signal_id", "signal_id"),
        Index("ix_notification_logs_message_id", "message_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)
    signal_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("signals.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event: Mapped[str] = mapped_column(String(20), nullable=False)  # created/updated
    target: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    message_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(String(400), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="sent")
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# -------------------------
# Audit
# -------------------------

class AuditLog(Base):
    """
    Append-only audit log for admin billing edits and group rotation.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
        Index("ix_audit_logs_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid_str)

    entity_type: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    event_type: Mapped[str] = mapped_column(String(80), nullable=False)
    actor: Mapped[str] = mapped_column(String(40), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    before_state: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    after_state: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
