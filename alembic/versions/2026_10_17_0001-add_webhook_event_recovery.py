"""Add recovery tracking to webhook_events.

Revision ID: 2026_10_17_0001
Revises: 2026_10_17_0000
Create Date: 2026-10-17

Failed events are re-fetched from Stripe and re-processed a bounded number
of times before they are given up as unrecoverable.
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_17_0001"
down_revision: str | None = "2026_10_17_0000"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Add retry_count, recoverable and last_retry_at to webhook_events."""
    op.add_column(
        "webhook_events",
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
    )
    op.add_column(
        "webhook_events",
        sa.Column("recoverable", sa.Boolean(), nullable=False, server_default="true"),
    )
    op.add_column(
        "webhook_events",
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_check_constraint(
        "ck_webhook_event_retry_count_non_negative",
        "webhook_events",
        "retry_count >= 0",
    )

    # Recovery scans failed, still-recoverable events oldest first
    op.create_index(
        "idx_webhook_events_recovery",
        "webhook_events",
        ["status", "recoverable", "retry_count", "created_at"],
    )


def downgrade() -> None:
    """Remove recovery tracking from webhook_events."""
    op.drop_index("idx_webhook_events_recovery", table_name="webhook_events")
    op.drop_constraint(
        "ck_webhook_event_retry_count_non_negative", "webhook_events", type_="check"
    )
    op.drop_column("webhook_events", "last_retry_at")
    op.drop_column("webhook_events", "recoverable")
    op.drop_column("webhook_events", "retry_count")
