"""
Subscription plan and credit pack catalog.

Maps Stripe price IDs to plan tiers and one-time credit packs.
"""

from dataclasses import dataclass
from typing import Literal

from pixelperfect_billing.config import settings
from pixelperfect_billing.exceptions import InvalidPlanError, UnknownPriceIdError
from pixelperfect_billing.models.api import ExpirationMode

DEFAULT_ROLLOVER_MULTIPLIER = 6


@dataclass(frozen=True)
class PlanConfig:
    """Subscription tier configuration."""

    key: str
    name: str
    price_id: str
    price_minor: int
    credits_per_month: int
    rollover_multiplier: int = DEFAULT_ROLLOVER_MULTIPLIER
    max_rollover: int | None = None
    expiration_mode: ExpirationMode = ExpirationMode.NEVER
    enabled: bool = True
    # Trial: None grants a full cycle at trial start, otherwise the trial
    # allowance is topped up to a full cycle when the trial converts
    trial_enabled: bool = False
    trial_credits: int | None = None

    def __post_init__(self) -> None:
        """Validate plan configuration."""
        if not self.key:
            raise ValueError("Plan key required")
        if self.trial_credits is not None and self.trial_credits <= 0:
            raise ValueError(f"Trial credits must be positive: {self.trial_credits}")
        if not self.price_id:
            raise ValueError("Price ID required")
        if self.credits_per_month <= 0:
            raise ValueError(f"Credits per month must be positive: {self.credits_per_month}")
        if self.rollover_multiplier < 1:
            raise ValueError(f"Rollover multiplier must be >= 1: {self.rollover_multiplier}")
        if self.max_rollover is not None and self.max_rollover < self.credits_per_month:
            raise ValueError(
                f"Max rollover {self.max_rollover} is below monthly credits "
                f"{self.credits_per_month}"
            )

    @property
    def trial_allowance(self) -> int:
        return self.trial_credits if self.trial_credits is not None else self.credits_per_month

    @property
    def rollover_cap(self) -> int:
        """Maximum balance the subscription pool may reach under this plan."""
        if self.max_rollover is not None:
            return self.max_rollover
        return self.credits_per_month * self.rollover_multiplier


@dataclass(frozen=True)
class CreditPack:
    """One-time credit pack configuration."""

    key: str
    name: str
    price_id: str
    credits: int
    price_minor: int
    enabled: bool = True

    def __post_init__(self) -> None:
        """Validate pack configuration."""
        if self.credits <= 0:
            raise ValueError(f"Credits must be positive: {self.credits}")
        if not self.price_id:
            raise ValueError("Price ID required")


@dataclass(frozen=True)
class ResolvedPrice:
    """A price id resolved to either a plan or a credit pack."""

    kind: Literal["plan", "pack"]
    plan: PlanConfig | None = None
    pack: CreditPack | None = None


# Plan catalog (price ids must match the Stripe dashboard for this deployment)
PLANS: dict[str, PlanConfig] = {
    "starter": PlanConfig(
        key="starter",
        name="Starter",
        price_id=settings.stripe_price_starter,
        price_minor=900,
        credits_per_month=100,
    ),
    "hobby": PlanConfig(
        key="hobby",
        name="Hobby",
        price_id=settings.stripe_price_hobby,
        price_minor=1900,
        credits_per_month=200,
    ),
    "pro": PlanConfig(
        key="pro",
        name="Professional",
        price_id=settings.stripe_price_pro,
        price_minor=4900,
        credits_per_month=1000,
    ),
    "business": PlanConfig(
        key="business",
        name="Business",
        price_id=settings.stripe_price_business,
        price_minor=14900,
        credits_per_month=5000,
    ),
}

CREDIT_PACKS: dict[str, CreditPack] = {
    "small": CreditPack(
        key="small",
        name="50 Credits",
        price_id=settings.stripe_price_pack_small,
        credits=50,
        price_minor=499,
    ),
    "medium": CreditPack(
        key="medium",
        name="200 Credits",
        price_id=settings.stripe_price_pack_medium,
        credits=200,
        price_minor=1499,
    ),
    "large": CreditPack(
        key="large",
        name="600 Credits",
        price_id=settings.stripe_price_pack_large,
        credits=600,
        price_minor=3999,
    ),
}


def resolve_price_id(price_id: str | None) -> ResolvedPrice | None:
    """Resolve a Stripe price id against enabled plans and packs."""
    if not price_id:
        return None
    for plan in PLANS.values():
        if plan.enabled and plan.price_id == price_id:
            return ResolvedPrice(kind="plan", plan=plan)
    for pack in CREDIT_PACKS.values():
        if pack.enabled and pack.price_id == price_id:
            return ResolvedPrice(kind="pack", pack=pack)
    return None


def assert_known_price_id(price_id: str | None) -> ResolvedPrice:
    """
    Resolve a price id, failing loudly when it is unknown.

    Raises:
        UnknownPriceIdError: If the price id matches no plan or pack
    """
    resolved = resolve_price_id(price_id)
    if resolved is None:
        raise UnknownPriceIdError(price_id or "<empty>")
    return resolved


def get_plan_by_price_id(price_id: str | None) -> PlanConfig:
    """
    Get subscription plan configuration by Stripe price id.

    Raises:
        UnknownPriceIdError: If the price id is unknown
        InvalidPlanError: If the price id belongs to a credit pack
    """
    resolved = assert_known_price_id(price_id)
    if resolved.plan is None:
        raise InvalidPlanError(resolved.pack.price_id if resolved.pack else "<empty>")
    return resolved.plan


def get_plan_by_key(key: str) -> PlanConfig:
    plan = PLANS.get(key)
    if not plan:
        raise ValueError(f"Unknown plan key: {key}")
    return plan


def get_credit_pack_by_price_id(price_id: str | None) -> CreditPack | None:
    resolved = resolve_price_id(price_id)
    return resolved.pack if resolved else None


def get_credit_pack_by_key(key: str) -> CreditPack | None:
    return CREDIT_PACKS.get(key)


def get_enabled_plans() -> list[PlanConfig]:
    """Enabled plans ordered by monthly credits."""
    return sorted(
        (plan for plan in PLANS.values() if plan.enabled),
        key=lambda plan: plan.credits_per_month,
    )
