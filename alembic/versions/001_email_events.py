"""Create email_events table

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One row per notification, keyed by (message_id, sent_at)
    op.create_table(
        "email_events",
        sa.Column("message_id", sa.String(255), nullable=False),
        sa.Column("sent_at", sa.BigInteger, nullable=False, autoincrement=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("source", sa.String(320), nullable=True),
        sa.Column("destination", postgresql.JSONB, nullable=True),
        sa.Column("subject", sa.Text, nullable=True),
        sa.Column("bounce_type", sa.String(50), nullable=True),
        sa.Column("bounce_sub_type", sa.String(50), nullable=True),
        sa.Column("complaint_feedback_type", sa.String(50), nullable=True),
        sa.Column("processing_time_ms", sa.Integer, nullable=True),
        sa.Column("additional_data", postgresql.JSONB, nullable=True),
        sa.Column("raw_event", postgresql.JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.Column("expires_at", sa.BigInteger, nullable=False),
        sa.PrimaryKeyConstraint("message_id", "sent_at"),
    )
    op.create_index("ix_email_events_account_sent_at", "email_events", ["account_id", "sent_at"])
    op.create_index("ix_email_events_sent_at", "email_events", ["sent_at"])
    op.create_index("ix_email_events_expires_at", "email_events", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_email_events_expires_at", table_name="email_events")
    op.drop_index("ix_email_events_sent_at", table_name="email_events")
    op.drop_index("ix_email_events_account_sent_at", table_name="email_events")
    op.drop_table("email_events")
