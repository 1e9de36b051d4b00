"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pixelperfect_billing.models.api import (
    TierChangeType,
    TransactionType,
    WebhookEventStatus,
)

# Credit amounts are integers in storage; the ledger arithmetic also accepts fractions.
Credits = int | float


class EventKind(str, Enum):
    """Payment-provider event kinds this service reconciles."""

    CHECKOUT_COMPLETED = "checkout_completed"
    CUSTOMER_CREATED = "customer_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    CHARGE_REFUNDED = "charge_refunded"
    CHARGE_DISPUTE_CREATED = "charge_dispute_created"
    TRIAL_WILL_END = "trial_will_end"
    SCHEDULE_COMPLETED = "schedule_completed"
    INVOICE_PAYMENT_REFUNDED = "invoice_payment_refunded"
    UNHANDLED = "unhandled"

    @classmethod
    def from_event_type(cls, event_type: str) -> "EventKind":
        """Map a Stripe event type string to its kind; unknown types are UNHANDLED."""
        return _EVENT_TYPE_TO_KIND.get(event_type, cls.UNHANDLED)


_EVENT_TYPE_TO_KIND: dict[str, EventKind] = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "customer.created": EventKind.CUSTOMER_CREATED,
    "customer.subscription.created": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "invoice_payment.paid": EventKind.INVOICE_PAID,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
    "invoice_payment.failed": EventKind.INVOICE_PAYMENT_FAILED,
    "charge.refunded": EventKind.CHARGE_REFUNDED,
    "charge.dispute.created": EventKind.CHARGE_DISPUTE_CREATED,
    "customer.subscription.trial_will_end": EventKind.TRIAL_WILL_END,
    "subscription_schedule.completed": EventKind.SCHEDULE_COMPLETED,
    "invoice.payment_refunded": EventKind.INVOICE_PAYMENT_REFUNDED,
}


@dataclass(frozen=True)
class CreditBalance:
    """Immutable snapshot of a profile's two credit pools."""

    subscription_credits: int
    purchased_credits: int

    def __post_init__(self) -> None:
        """Validate pool constraints."""
        if self.subscription_credits < 0:
            raise ValueError(
                f"Subscription credits cannot be negative: {self.subscription_credits}"
            )
        if self.purchased_credits < 0:
            raise ValueError(f"Purchased credits cannot be negative: {self.purchased_credits}")

    @property
    def total(self) -> int:
        return self.subscription_credits + self.purchased_credits


@dataclass(frozen=True)
class BalanceCalculation:
    """Result of applying a credit grant under an expiration policy."""

    new_balance: Credits
    expired_amount: Credits


@dataclass(frozen=True)
class CreditCalculation:
    """Credits to grant for a tier change, with a human-readable reason."""

    credits_to_add: int
    reason: str


@dataclass(frozen=True)
class TierChangeResult:
    """Outcome of reconciling credits across a plan change."""

    change_type: TierChangeType
    previous_balance: CreditBalance
    new_balance: CreditBalance
    credits_added: int
    credits_capped: int


@dataclass(frozen=True)
class RenewalResult:
    """Outcome of a billing-cycle renewal grant."""

    new_balance: CreditBalance
    credits_added: int
    expired_amount: int
    capped: bool


@dataclass(frozen=True)
class DebitSplit:
    """How a debit is drawn from the two pools (subscription first)."""

    from_subscription: int
    from_purchased: int

    @property
    def total(self) -> int:
        return self.from_subscription + self.from_purchased


@dataclass(frozen=True)
class IdempotencyResult:
    """Result of attempting to claim a webhook event for processing."""

    is_new: bool
    existing_status: WebhookEventStatus | None = None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Provider-side view of a subscription, normalised."""

    id: str
    customer_id: str | None
    status: str
    item_id: str | None
    price_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    trial_end: datetime | None = None


@dataclass(frozen=True)
class VerifiedWebhook:
    """A webhook event whose origin has been verified."""

    event_id: str
    event_type: str
    kind: EventKind
    data_object: Any
    previous_attributes: Any | None
    payload: dict[str, Any]
    is_test_mode: bool = False

    def __post_init__(self) -> None:
        if not self.event_id:
            raise ValueError("event_id cannot be empty")
        if not self.event_type:
            raise ValueError("event_type cannot be empty")


@dataclass(frozen=True)
class WebhookResult:
    """Outcome of processing one webhook delivery."""

    event_id: str
    event_type: str
    skipped: bool = False
    reason: str | None = None
    warning: str | None = None


@dataclass(frozen=True)
class LedgerEntry:
    """A persisted credit transaction and the balance it produced."""

    transaction_id: UUID
    user_id: UUID
    amount: int
    transaction_type: TransactionType
    reference_id: str | None
    balance_after: CreditBalance


@dataclass(frozen=True)
class AdjustmentResult:
    """Outcome of an admin credit adjustment."""

    user_id: UUID
    amount_requested: int
    amount_applied: int
    balance: CreditBalance
    transaction_id: UUID


@dataclass(frozen=True)
class SubscriptionChangeResult:
    """Outcome of a synchronous plan change."""

    subscription_id: str
    status: str
    new_price_id: str
    credits_added: int
    current_period_start: datetime | None
    current_period_end: datetime | None
    effective_immediately: bool = True


@dataclass(frozen=True)
class RecoveryResult:
    """Outcome of one failed-webhook recovery run."""

    processed: int
    recovered: int
    failed: int
    unrecoverable: int


@dataclass(frozen=True)
class ExpirationCheckResult:
    """Outcome of re-checking lapsed subscriptions against the provider."""

    processed: int
    fixed: int
