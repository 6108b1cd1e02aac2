"""Signal ledger, billing, delivery group and notification tables.

Revision ID: 5c1e0a7d2b91
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1e0a7d2b91"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_OPEN_SUBSCRIPTION_WHERE = sa.text("status IN ('pending', 'active')")


def upgrade() -> None:
    op.create_table(
        "signals",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("trading_pair", sa.String(length=20), nullable=False),
        sa.Column("signal_type", sa.String(length=10), nullable=False),
        sa.Column("entry_price", sa.Float(), nullable=False),
        sa.Column("stop_loss", sa.Float(), nullable=False),
        sa.Column("take_profit_1", sa.Float(), nullable=True),
        sa.Column("take_profit_2", sa.Float(), nullable=True),
        sa.Column("take_profit_3", sa.Float(), nullable=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("analysis", sa.Text(), nullable=True),
        sa.Column("confidence_level", sa.String(length=10), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_by", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_signals_status_created", "signals", ["status", "created_at"])

    op.create_table(
        "signal_revisions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("signal_id", sa.String(length=36), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("revision_type", sa.String(length=10), nullable=False),
        sa.Column("snapshot", sa.JSON(), nullable=True),
        sa.Column("changes", sa.JSON(), nullable=True),
        sa.Column("actor", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["signal_id"], ["signals.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("signal_id", "sequence", name="uq_signal_revisions_signal_sequence"),
    )
    op.create_index("ix_signal_revisions_signal_id", "signal_revisions", ["signal_id"])

    op.create_table(
        "pricing_plans",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("pricing_type", sa.String(length=10), nullable=False, unique=True),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("description", sa.String(length=400), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("pricing_id", sa.String(length=36), nullable=False),
        sa.Column("subscription_type", sa.String(length=10), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("payment_status", sa.String(length=20), nullable=False),
        sa.Column("payment_reference", sa.String(length=120), nullable=True),
        sa.Column("amount_paid", sa.Float(), nullable=False),
        sa.Column("start_date", sa.DateTime(), nullable=True),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("pips_purchased", sa.Integer(), nullable=False),
        sa.Column("pips_used", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["pricing_id"], ["pricing_plans.id"]),
        sa.CheckConstraint("pips_used <= pips_purchased", name="ck_subscriptions_pips_within_quota"),
        sa.CheckConstraint("pips_used >= 0", name="ck_subscriptions_pips_used_non_negative"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index(
        "uq_subscriptions_user_open",
        "subscriptions",
        ["user_id"],
        unique=True,
        sqlite_where=_OPEN_SUBSCRIPTION_WHERE,
        postgresql_where=_OPEN_SUBSCRIPTION_WHERE,
    )

    op.create_table(
        "subscriber_profiles",
        sa.Column("user_id", sa.String(length=36), primary_key=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("phone_verified", sa.Boolean(), nullable=False),
        sa.Column("messaging_enabled", sa.Boolean(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "delivery_groups",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("group_name", sa.String(length=200), nullable=False),
        sa.Column("external_channel_id", sa.String(length=200), nullable=False),
        sa.Column("group_number", sa.Integer(), nullable=False),
        sa.Column("member_count", sa.Integer(), nullable=False),
        sa.Column("max_members", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("month_key", sa.String(length=7), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("month_key", "group_number", name="uq_delivery_groups_month_number"),
        sa.CheckConstraint("member_count <= max_members", name="ck_delivery_groups_capacity"),
    )
    op.create_index("ix_delivery_groups_month_active", "delivery_groups", ["month_key", "is_active"])

    op.create_table(
        "delivery_group_members",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("group_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("month_key", sa.String(length=7), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["group_id"], ["delivery_groups.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "month_key", name="uq_delivery_group_members_user_month"),
    )
    op.create_index("ix_delivery_group_members_group_id", "delivery_group_members", ["group_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("notification_type", sa.String(length=20), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("signal_id", sa.String(length=36), nullable=True),
        sa.Column("action_url", sa.String(length=400), nullable=True),
        sa.Column("read", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["signal_id"], ["signals.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_notifications_user_created", "notifications", ["user_id", "created_at"])

    op.create_table(
        "notification_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("signal_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("event", sa.String(length=20), nullable=False),
        sa.Column("target", sa.String(length=64), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("message_id", sa.String(length=120), nullable=True),
        sa.Column("error_message", sa.String(length=400), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["signal_id"], ["signals.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_notification_logs_signal_id", "notification_logs", ["signal_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("entity_type", sa.String(length=40), nullable=False),
        sa.Column("entity_id", sa.String(length=36), nullable=True),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("actor", sa.String(length=40), nullable=False),
        sa.Column("reason", sa.String(length=200), nullable=True),
        sa.Column("before_state", sa.JSON(), nullable=True),
        sa.Column("after_state", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("notification_logs")
    op.drop_table("notifications")
    op.drop_table("delivery_group_members")
    op.drop_table("delivery_groups")
    op.drop_table("subscriber_profiles")
    op.drop_index("uq_subscriptions_user_open", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("pricing_plans")
    op.drop_table("signal_revisions")
    op.drop_table("signals")
