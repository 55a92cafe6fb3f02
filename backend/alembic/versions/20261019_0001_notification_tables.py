"""Create booking, scheduled notification, and notification event tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "bookings",
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("lifecycle_status", sa.String(length=16), nullable=False, server_default="quoted"),
        sa.Column("payment_state", sa.String(length=32), nullable=False, server_default="none"),
        sa.Column("final_payment_state", sa.String(length=32), nullable=False, server_default="none"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_date", sa.Date(), nullable=True),
        sa.Column("ready_time", sa.String(length=32), nullable=True),
        sa.Column("is_manual", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("client_name", sa.String(length=256), nullable=True),
        sa.Column("client_email", sa.String(length=256), nullable=True),
        sa.Column("client_phone", sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint("subject_id"),
    )

    op.create_table(
        "scheduled_notifications",
        sa.Column(
            "notification_id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            nullable=False,
            autoincrement=True,
        ),
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("notification_id"),
        sa.UniqueConstraint("subject_id", "kind", name="uq_scheduled_notifications_subject_kind"),
    )
    op.create_index(
        "ix_scheduled_notifications_subject_id", "scheduled_notifications", ["subject_id"], unique=False
    )
    op.create_index("ix_scheduled_notifications_due_at", "scheduled_notifications", ["due_at"], unique=False)
    op.create_index("ix_scheduled_notifications_sent", "scheduled_notifications", ["sent"], unique=False)

    op.create_table(
        "notification_events",
        sa.Column(
            "event_id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            nullable=False,
            autoincrement=True,
        ),
        sa.Column("notification_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=True),
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index(
        "ix_notification_events_notification_id", "notification_events", ["notification_id"], unique=False
    )
    op.create_index("ix_notification_events_subject_id", "notification_events", ["subject_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_notification_events_subject_id", table_name="notification_events")
    op.drop_index("ix_notification_events_notification_id", table_name="notification_events")
    op.drop_table("notification_events")
    op.drop_index("ix_scheduled_notifications_sent", table_name="scheduled_notifications")
    op.drop_index("ix_scheduled_notifications_due_at", table_name="scheduled_notifications")
    op.drop_index("ix_scheduled_notifications_subject_id", table_name="scheduled_notifications")
    op.drop_table("scheduled_notifications")
    op.drop_table("bookings")
