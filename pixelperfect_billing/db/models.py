"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Profile(Base):
    """
    ORM model for profiles table.

    One row per authenticated user; holds both credit pools and the
    denormalised subscription state shown in the dashboard.
    """

    __tablename__ = "profiles"

    # Primary Key - the auth provider's user id
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Subscription summary
    subscription_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    subscription_tier: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Credit pools
    subscription_credits_balance: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    purchased_credits_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "subscription_credits_balance >= 0", name="ck_subscription_credits_non_negative"
        ),
        CheckConstraint(
            "purchased_credits_balance >= 0", name="ck_purchased_credits_non_negative"
        ),
        UniqueConstraint("stripe_customer_id", name="uq_profiles_stripe_customer_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Profile(id={self.id}, tier={self.subscription_tier}, "
            f"subscription={self.subscription_credits_balance}, "
            f"purchased={self.purchased_credits_balance})>"
        )


class Subscription(Base):
    """
    ORM model for subscriptions table.

    Local cache of the provider's subscription; the provider remains the
    source of truth and webhooks reconcile this table.
    """

    __tablename__ = "subscriptions"

    # Primary Key - Stripe subscription id (sub_...)
    id: Mapped[str] = mapped_column(String(255), primary_key=True)

    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    price_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Billing period
    current_period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    trial_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index("idx_subscriptions_user_status_created", "user_id", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"status={self.status}, price_id={self.price_id})>"
        )


class WebhookEvent(Base):
    """
    ORM model for webhook_events table.

    The unique event_id is the concurrency-control primitive for
    webhook deliveries: exactly one insert per provider event wins.
    """

    __tablename__ = "webhook_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="processing")
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Recovery of failed events
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recoverable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_webhook_events_event_id"),
        CheckConstraint("retry_count >= 0", name="ck_webhook_event_retry_count_non_negative"),
        CheckConstraint(
            "status IN ('processing', 'completed', 'failed', 'unrecoverable')",
            name="ck_webhook_event_status",
        ),
        Index("idx_webhook_events_status_created", "status", "created_at"),
        Index(
            "idx_webhook_events_recovery", "status", "recoverable", "retry_count", "created_at"
        ),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(event_id={self.event_id}, type={self.event_type}, status={self.status})>"


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Append-only audit log; every balance mutation writes exactly one row.
    (user_id, type, reference_id) is unique so replays of the same grant no-op.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)  # signed
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "type", "reference_id", name="uq_credit_transactions_reference"
        ),
        CheckConstraint(
            "type IN ('purchase', 'subscription', 'usage', 'refund', 'bonus', "
            "'plan_upgrade', 'expired', 'rollover_cap', 'adjustment', 'clawback')",
            name="ck_credit_transaction_type",
        ),
        Index("idx_credit_transactions_user_created", "user_id", "created_at"),
        Index("idx_credit_transactions_reference", "reference_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, type={self.type})>"
        )
