"""
Credit Ledger Engine - pure balance arithmetic.

No I/O. Every function here is deterministic so the persistence layer
(CreditService) and the property tests share the same rules.

Rules:
- Subscription credits roll over up to a plan-specific cap (never mode).
- Upgrades grant the monthly-credit delta immediately.
- Downgrades never debit; the existing pool is only capped at the new tier's cap.
- Debits draw from subscription credits first, then purchased credits.
"""

import math
from decimal import Decimal

from pixelperfect_billing.models.api import ExpirationMode, TierChangeType
from pixelperfect_billing.models.domain import (
    BalanceCalculation,
    CreditBalance,
    CreditCalculation,
    Credits,
    DebitSplit,
    RenewalResult,
    TierChangeResult,
)
from pixelperfect_billing.services.plan_catalog import PlanConfig


def _validate_number(name: str, value: Credits) -> None:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"{name} must be finite, got {value}")


def _exact_sum(a: Credits, b: Credits) -> Credits | Decimal:
    # ints are exact at any magnitude; floats go through their shortest repr
    if isinstance(a, int) and isinstance(b, int):
        return a + b
    return Decimal(str(a)) + Decimal(str(b))


def _to_credits(value: Credits | Decimal) -> Credits:
    if isinstance(value, Decimal):
        return float(value)
    return value


def parse_expiration_mode(value: ExpirationMode | str | None) -> ExpirationMode:
    """Coerce a configured mode, falling back to NEVER for anything unknown."""
    try:
        return ExpirationMode(value)
    except ValueError:
        return ExpirationMode.NEVER


def calculate_balance_with_expiration(
    current_balance: Credits,
    new_credits: Credits,
    expiration_mode: ExpirationMode | str,
    max_rollover: Credits | None = None,
) -> BalanceCalculation:
    """
    Apply a credit grant to a balance under an expiration policy.

    NEVER mode: credits accumulate and the sum is capped at max_rollover
    (when set). Capping is not expiration, so expired_amount is always 0.

    END_OF_CYCLE / ROLLING_WINDOW: the previous positive balance expires and is
    reported in expired_amount. A negative previous balance is debt, not credit,
    and carries into the new balance.

    Negative and fractional inputs are accepted. Integer inputs produce exact
    integer results at any magnitude; fractional inputs are summed in decimal so
    cap comparisons are exact (599.99 + 0.01 capped at 600 is exactly 600).

    An unrecognised expiration mode is treated as NEVER, the only mode that
    cannot destroy credits.

    Raises:
        ValueError: On non-finite inputs or a negative cap
    """
    _validate_number("current_balance", current_balance)
    _validate_number("new_credits", new_credits)
    if max_rollover is not None:
        _validate_number("max_rollover", max_rollover)
        if max_rollover < 0:
            raise ValueError(f"max_rollover cannot be negative: {max_rollover}")

    mode = parse_expiration_mode(expiration_mode)

    if mode is ExpirationMode.NEVER:
        summed = _exact_sum(current_balance, new_credits)
        if max_rollover is not None:
            cap = max_rollover if isinstance(summed, int) else Decimal(str(max_rollover))
            if summed > cap:
                summed = cap
        return BalanceCalculation(new_balance=_to_credits(summed), expired_amount=0)

    # Expiring modes
    carried_debt = min(current_balance, 0)
    expired = max(current_balance, 0)
    return BalanceCalculation(
        new_balance=_to_credits(_exact_sum(new_credits, carried_debt)),
        expired_amount=expired,
    )


def calculate_upgrade_credits(
    current_balance: int,
    previous_tier_credits: int,
    new_tier_credits: int,
) -> CreditCalculation:
    """
    Credits granted immediately on an upgrade: the monthly-credit delta.

    Raises:
        ValueError: On negative inputs or when the change is not an upgrade
    """
    if current_balance < 0 or previous_tier_credits < 0 or new_tier_credits < 0:
        raise ValueError("Credit values cannot be negative")
    if new_tier_credits <= previous_tier_credits:
        raise ValueError(
            f"Not an upgrade: {previous_tier_credits} -> {new_tier_credits} credits per month"
        )

    delta = new_tier_credits - previous_tier_credits
    return CreditCalculation(
        credits_to_add=delta,
        reason=f"Tier upgrade: {previous_tier_credits} -> {new_tier_credits} credits/month",
    )


def calculate_downgrade_credits() -> CreditCalculation:
    """Downgrades never debit; the lower allocation applies from the next renewal."""
    return CreditCalculation(credits_to_add=0, reason="Tier downgrade: no immediate change")


def classify_tier_change(from_plan: PlanConfig, to_plan: PlanConfig) -> TierChangeType:
    if to_plan.credits_per_month > from_plan.credits_per_month:
        return TierChangeType.UPGRADE
    if to_plan.credits_per_month < from_plan.credits_per_month:
        return TierChangeType.DOWNGRADE
    return TierChangeType.UNCHANGED


def apply_tier_change(
    balance: CreditBalance,
    from_plan: PlanConfig,
    to_plan: PlanConfig,
) -> TierChangeResult:
    """
    Reconcile credit pools across a plan change.

    Upgrade: add the monthly-credit delta to the subscription pool, capping the
    total at the target plan's cap only if it would otherwise exceed it.
    Downgrade: nothing is debited; the subscription pool is capped at the
    target plan's cap if it already exceeds it (min(current, cap)).
    """
    change_type = classify_tier_change(from_plan, to_plan)

    if change_type is TierChangeType.UPGRADE:
        calculation = calculate_upgrade_credits(
            balance.total, from_plan.credits_per_month, to_plan.credits_per_month
        )
        result = calculate_balance_with_expiration(
            balance.total,
            calculation.credits_to_add,
            ExpirationMode.NEVER,
            to_plan.rollover_cap,
        )
        added = max(int(result.new_balance) - balance.total, 0)
        return TierChangeResult(
            change_type=change_type,
            previous_balance=balance,
            new_balance=CreditBalance(
                subscription_credits=balance.subscription_credits + added,
                purchased_credits=balance.purchased_credits,
            ),
            credits_added=added,
            credits_capped=calculation.credits_to_add - added,
        )

    if change_type is TierChangeType.DOWNGRADE:
        capped_pool = min(balance.subscription_credits, to_plan.rollover_cap)
        return TierChangeResult(
            change_type=change_type,
            previous_balance=balance,
            new_balance=CreditBalance(
                subscription_credits=capped_pool,
                purchased_credits=balance.purchased_credits,
            ),
            credits_added=0,
            credits_capped=balance.subscription_credits - capped_pool,
        )

    return TierChangeResult(
        change_type=change_type,
        previous_balance=balance,
        new_balance=balance,
        credits_added=0,
        credits_capped=0,
    )


def apply_renewal(balance: CreditBalance, plan: PlanConfig) -> RenewalResult:
    """
    Grant one billing cycle of credits.

    The cap is evaluated against the total of both pools, but only the
    difference lands in the subscription pool. Expiring modes clear the
    subscription pool first; purchased credits never expire.
    """
    mode = parse_expiration_mode(plan.expiration_mode)
    subscription_pool = balance.subscription_credits
    expired = 0

    if mode is not ExpirationMode.NEVER:
        expiry = calculate_balance_with_expiration(subscription_pool, 0, mode)
        expired = int(expiry.expired_amount)
        subscription_pool = 0

    total = subscription_pool + balance.purchased_credits
    result = calculate_balance_with_expiration(
        total, plan.credits_per_month, ExpirationMode.NEVER, plan.rollover_cap
    )
    added = max(int(result.new_balance) - total, 0)

    return RenewalResult(
        new_balance=CreditBalance(
            subscription_credits=subscription_pool + added,
            purchased_credits=balance.purchased_credits,
        ),
        credits_added=added,
        expired_amount=expired,
        capped=added < plan.credits_per_month,
    )


def split_debit(balance: CreditBalance, amount: int, allow_partial: bool = False) -> DebitSplit:
    """
    Split a debit across pools, subscription credits first.

    With allow_partial the debit is floored at the available total;
    otherwise an amount above the total raises ValueError.
    """
    if amount < 0:
        raise ValueError(f"Debit amount cannot be negative: {amount}")
    if amount > balance.total and not allow_partial:
        raise ValueError(f"Debit {amount} exceeds balance {balance.total}")

    from_subscription = min(amount, balance.subscription_credits)
    from_purchased = min(amount - from_subscription, balance.purchased_credits)
    return DebitSplit(from_subscription=from_subscription, from_purchased=from_purchased)


def apply_debit(balance: CreditBalance, split: DebitSplit) -> CreditBalance:
    return CreditBalance(
        subscription_credits=balance.subscription_credits - split.from_subscription,
        purchased_credits=balance.purchased_credits - split.from_purchased,
    )
