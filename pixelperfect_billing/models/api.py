"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class WebhookEventStatus(str, Enum):
    """Lifecycle of a received payment-provider event."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    UNRECOVERABLE = "unrecoverable"


class TransactionType(str, Enum):
    """Credit transaction type enumeration."""

    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"
    PLAN_UPGRADE = "plan_upgrade"
    EXPIRED = "expired"
    ROLLOVER_CAP = "rollover_cap"
    ADJUSTMENT = "adjustment"
    CLAWBACK = "clawback"


class SubscriptionStatus(str, Enum):
    """Subscription status as reported by Stripe."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


# Statuses that count as "has a current subscription"
CURRENT_SUBSCRIPTION_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class ExpirationMode(str, Enum):
    """How unused subscription credits behave at renewal."""

    NEVER = "never"
    END_OF_CYCLE = "end_of_cycle"
    ROLLING_WINDOW = "rolling_window"


class TierChangeType(str, Enum):
    """Direction of a plan change."""

    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    UNCHANGED = "unchanged"


class ChangeErrorCode(str, Enum):
    """Error codes returned by the subscription change endpoint."""

    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_JSON = "INVALID_JSON"
    MISSING_PRICE_ID = "MISSING_PRICE_ID"
    INVALID_PRICE_ID = "INVALID_PRICE_ID"
    SAME_PLAN = "SAME_PLAN"
    NO_ACTIVE_SUBSCRIPTION = "NO_ACTIVE_SUBSCRIPTION"
    SUBSCRIPTION_MODIFIED = "SUBSCRIPTION_MODIFIED"
    STRIPE_ERROR = "STRIPE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# ============================================================================
# Error Envelope
# ============================================================================


class ErrorDetail(BaseModel):
    """Machine-readable error code plus a human message."""

    code: ChangeErrorCode
    message: str


class ErrorResponse(BaseModel):
    """Failure envelope used by the subscription endpoints."""

    success: Literal[False] = False
    error: ErrorDetail


# ============================================================================
# Subscription Change Models
# ============================================================================


class SubscriptionChangeRequest(BaseModel):
    """POST /api/subscription/change request body."""

    model_config = ConfigDict(populate_by_name=True)

    target_price_id: str = Field(..., alias="targetPriceId", min_length=1, max_length=255)

    @field_validator("target_price_id")
    @classmethod
    def strip_price_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("targetPriceId cannot be blank")
        return v


class SubscriptionChangeData(BaseModel):
    """Outcome of a successful plan change."""

    subscription_id: str
    status: str
    new_price_id: str
    credits_added: int = 0
    effective_immediately: bool = True
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None


class SubscriptionChangeResponse(BaseModel):
    """POST /api/subscription/change success response."""

    success: Literal[True] = True
    data: SubscriptionChangeData


# ============================================================================
# Webhook Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the payment provider."""

    received: bool = True
    skipped: bool | None = None
    reason: str | None = None
    warning: str | None = None


class WebhookEventResponse(BaseModel):
    """Admin view of a stored webhook event."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_id: str
    event_type: str
    status: WebhookEventStatus
    error_message: str | None = None
    retry_count: int = 0
    recoverable: bool = True
    last_retry_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class WebhookEventListResponse(BaseModel):
    """GET /admin/webhook-events response."""

    events: list[WebhookEventResponse]
    count: int


class StaleEventSweepResponse(BaseModel):
    """POST /admin/webhook-events/sweep response."""

    swept: int
    older_than_seconds: int


class WebhookRecoveryResponse(BaseModel):
    """POST /admin/webhook-events/recover response."""

    processed: int
    recovered: int
    failed: int
    unrecoverable: int


class ExpirationCheckResponse(BaseModel):
    """POST /admin/subscriptions/check-expirations response."""

    processed: int
    fixed: int


# ============================================================================
# Credit Models
# ============================================================================


class CreditBalanceResponse(BaseModel):
    """GET /api/credits/balance response."""

    user_id: UUID
    subscription_credits: int
    purchased_credits: int
    total_credits: int
    subscription_tier: str | None = None
    subscription_status: str | None = None


class CreditAdjustmentRequest(BaseModel):
    """POST /admin/credits/adjust request body."""

    user_id: UUID
    amount: int = Field(..., description="Signed credit delta; negative removes credits")
    reason: str = Field(..., min_length=1, max_length=500)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: int) -> int:
        """Reject no-op adjustments."""
        if v == 0:
            raise ValueError("amount must be non-zero")
        return v

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reason cannot be blank")
        return v


class CreditAdjustmentResponse(BaseModel):
    """POST /admin/credits/adjust response."""

    user_id: UUID
    amount_requested: int
    amount_applied: int
    subscription_credits: int
    purchased_credits: int
    new_balance: int
    transaction_id: UUID


class CreditTransactionResponse(BaseModel):
    """Single ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    amount: int
    type: TransactionType
    reference_id: str | None = None
    description: str | None = None
    created_at: datetime
