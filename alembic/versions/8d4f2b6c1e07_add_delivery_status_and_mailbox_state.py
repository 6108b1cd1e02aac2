"""add delivery status, mailbox state and member sync fields

Revision ID: 8d4f2b6c1e07
Revises: 5c1e0a7d2b91
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "8d4f2b6c1e07"
down_revision = "5c1e0a7d2b91"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("notification_logs") as batch_op:
        batch_op.add_column(sa.Column("status", sa.String(length=20), nullable=False, server_default="sent"))
        batch_op.add_column(sa.Column("sent_at", sa.DateTime(), nullable=True))
        batch_op.add_column(sa.Column("delivered_at", sa.DateTime(), nullable=True))
        batch_op.add_column(sa.Column("read_at", sa.DateTime(), nullable=True))
    op.create_index("ix_notification_logs_message_id", "notification_logs", ["message_id"])

    with op.batch_alter_table("notifications") as batch_op:
        batch_op.add_column(sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()))

    with op.batch_alter_table("delivery_group_members") as batch_op:
        batch_op.add_column(
            sa.Column("external_status", sa.String(length=20), nullable=False, server_default="pending")
        )
        batch_op.add_column(sa.Column("external_error", sa.String(length=400), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("delivery_group_members") as batch_op:
        batch_op.drop_column("external_error")
        batch_op.drop_column("external_status")

    with op.batch_alter_table("notifications") as batch_op:
        batch_op.drop_column("deleted")

    op.drop_index("ix_notification_logs_message_id", table_name="notification_logs")
    with op.batch_alter_table("notification_logs") as batch_op:
        batch_op.drop_column("read_at")
        batch_op.drop_column("delivered_at")
        batch_op.drop_column("sent_at")
        batch_op.drop_column("status")
