"""
Property-based tests for the credit ledger.

Uses Hypothesis to check balance invariants across generated inputs.
"""

from hypothesis import assume, given, settings
from hypothesis import strategies as st

from pixelperfect_billing.models.api import ExpirationMode, TierChangeType
from pixelperfect_billing.models.domain import CreditBalance
from pixelperfect_billing.services import credit_ledger
from pixelperfect_billing.services.plan_catalog import PLANS

credit_amounts = st.integers(min_value=0, max_value=10_000_000)
signed_amounts = st.integers(min_value=-10_000_000, max_value=10_000_000)
plans = st.sampled_from(list(PLANS.values()))
balances = st.builds(CreditBalance, subscription_credits=credit_amounts, purchased_credits=credit_amounts)


class TestBalanceProperties:
    """Invariants of calculate_balance_with_expiration."""

    @given(current=signed_amounts, new=credit_amounts, cap=credit_amounts)
    def test_capped_result_never_exceeds_cap(self, current: int, new: int, cap: int) -> None:
        result = credit_ledger.calculate_balance_with_expiration(
            current, new, ExpirationMode.NEVER, cap
        )
        assert result.new_balance <= cap
        assert result.expired_amount == 0

    @given(current=signed_amounts, new=signed_amounts)
    def test_uncapped_sum_is_exact(self, current: int, new: int) -> None:
        result = credit_ledger.calculate_balance_with_expiration(current, new, ExpirationMode.NEVER)
        assert result.new_balance == current + new

    @given(current=signed_amounts, new=credit_amounts, cap=credit_amounts)
    def test_cap_only_applies_when_exceeded(self, current: int, new: int, cap: int) -> None:
        assume(current + new <= cap)
        result = credit_ledger.calculate_balance_with_expiration(
            current, new, ExpirationMode.NEVER, cap
        )
        assert result.new_balance == current + new

    @given(
        current=signed_amounts,
        new=credit_amounts,
        mode=st.sampled_from([ExpirationMode.END_OF_CYCLE, ExpirationMode.ROLLING_WINDOW]),
    )
    def test_expiring_modes_conserve_credits(
        self, current: int, new: int, mode: ExpirationMode
    ) -> None:
        result = credit_ledger.calculate_balance_with_expiration(current, new, mode)
        assert result.expired_amount >= 0
        assert result.new_balance + result.expired_amount == current + new


class TestTierChangeProperties:
    """Invariants of apply_tier_change."""

    @given(balance=balances, from_plan=plans, to_plan=plans)
    def test_downgrade_is_min_of_pool_and_cap(self, balance, from_plan, to_plan) -> None:
        assume(to_plan.credits_per_month < from_plan.credits_per_month)
        result = credit_ledger.apply_tier_change(balance, from_plan, to_plan)

        assert result.change_type is TierChangeType.DOWNGRADE
        assert result.new_balance.subscription_credits == min(
            balance.subscription_credits, to_plan.rollover_cap
        )
        assert result.new_balance.purchased_credits == balance.purchased_credits
        assert result.credits_added == 0

    @given(balance=balances, from_plan=plans, to_plan=plans)
    def test_upgrade_adds_at_most_delta_and_respects_cap(
        self, balance, from_plan, to_plan
    ) -> None:
        assume(to_plan.credits_per_month > from_plan.credits_per_month)
        delta = to_plan.credits_per_month - from_plan.credits_per_month
        result = credit_ledger.apply_tier_change(balance, from_plan, to_plan)

        assert 0 <= result.credits_added <= delta
        assert result.credits_added + result.credits_capped == delta
        if balance.total + delta <= to_plan.rollover_cap:
            assert result.credits_added == delta
        else:
            assert result.new_balance.total <= max(balance.total, to_plan.rollover_cap)


class TestRenewalProperties:
    """Invariants of apply_renewal."""

    @given(balance=balances, plan=plans)
    def test_renewal_never_pushes_total_over_cap(self, balance, plan) -> None:
        result = credit_ledger.apply_renewal(balance, plan)

        assert result.credits_added >= 0
        assert result.credits_added <= plan.credits_per_month
        if balance.total <= plan.rollover_cap:
            assert result.new_balance.total <= plan.rollover_cap
        assert result.new_balance.purchased_credits == balance.purchased_credits

    @settings(max_examples=50)
    @given(plan=plans, renewals=st.integers(min_value=7, max_value=30))
    def test_repeated_renewals_converge_to_cap(self, plan, renewals: int) -> None:
        balance = CreditBalance(subscription_credits=0, purchased_credits=0)
        for _ in range(renewals):
            balance = credit_ledger.apply_renewal(balance, plan).new_balance
        assert balance.total == plan.rollover_cap


class TestDebitProperties:
    """Invariants of split_debit."""

    @given(balance=balances, amount=credit_amounts)
    def test_partial_debit_never_goes_negative(self, balance, amount: int) -> None:
        split = credit_ledger.split_debit(balance, amount, allow_partial=True)
        after = credit_ledger.apply_debit(balance, split)

        assert split.total == min(amount, balance.total)
        assert after.total == balance.total - split.total
