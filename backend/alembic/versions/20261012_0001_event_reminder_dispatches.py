"""Create the event reminder dispatch ledger table."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261012_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "event_reminder_dispatches",
        sa.Column("dispatch_id", sa.String(length=64), nullable=False),
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("lead_days", sa.Integer(), nullable=False),
        sa.Column("rsvp_token_hash", sa.String(length=64), nullable=False),
        sa.Column("unsubscribe_token_hash", sa.String(length=64), nullable=False),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("dispatch_id"),
        sa.UniqueConstraint("event_id", "user_id", name="uq_event_reminder_dispatches_event_user"),
        sa.UniqueConstraint("rsvp_token_hash"),
        sa.UniqueConstraint("unsubscribe_token_hash"),
        sa.CheckConstraint("lead_days >= 0", name="ck_event_reminder_dispatches_lead_days"),
    )
    op.create_index(
        "ix_event_reminder_dispatches_event_id",
        "event_reminder_dispatches",
        ["event_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_event_reminder_dispatches_event_id", table_name="event_reminder_dispatches")
    op.drop_table("event_reminder_dispatches")
