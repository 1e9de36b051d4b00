"""
Credit Service - persists ledger decisions with write verification.

NO DICTIONARIES - All operations use strongly typed domain models.

Every balance mutation:
1. Skips if a transaction with the same (user, type, reference) exists
2. Locks the profile row (SELECT ... FOR UPDATE)
3. Computes the new pools with credit_ledger
4. Writes the audit transaction(s) and pools, flushes
5. Reads the profile back and verifies the pools, then commits
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pixelperfect_billing.db.models import CreditTransaction, Profile
from pixelperfect_billing.exceptions import (
    AdjustmentRejectedError,
    DataIntegrityError,
    InsufficientCreditsError,
    ProfileNotFoundError,
    WriteVerificationError,
)
from pixelperfect_billing.models.api import TierChangeType, TransactionType
from pixelperfect_billing.models.domain import (
    AdjustmentResult,
    CreditBalance,
    LedgerEntry,
    RenewalResult,
    TierChangeResult,
)
from pixelperfect_billing.observability.metrics import metrics
from pixelperfect_billing.services import credit_ledger
from pixelperfect_billing.services.idempotency import is_unique_violation
from pixelperfect_billing.services.plan_catalog import PlanConfig

logger = get_logger(__name__)

# Grants whose reference ids can be clawed back on refund
CLAWBACK_SOURCE_TYPES = (TransactionType.SUBSCRIPTION.value, TransactionType.PURCHASE.value)


def plan_change_reference(
    subscription_id: str,
    from_price_id: str,
    to_price_id: str,
    period_start: datetime | None,
) -> str:
    """
    Reference for a plan-change credit reconciliation.

    Both the synchronous change endpoint and the subscription webhook build
    the same reference, so the delta is applied once whichever lands first.
    """
    anchor = int(period_start.timestamp()) if period_start else "none"
    return f"plan_change_{subscription_id}_{from_price_id}_{to_price_id}_{anchor}"


@dataclass(frozen=True)
class _PendingTransaction:
    amount: int
    transaction_type: TransactionType
    reference_id: str | None
    description: str | None


class CreditService:
    """Credit pool mutations backed by an append-only transaction log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_profile(self, user_id: UUID) -> Profile:
        """
        Raises:
            ProfileNotFoundError: No profile for user_id
        """
        profile = await self._find_profile(user_id)
        if profile is None:
            raise ProfileNotFoundError(str(user_id))
        return profile

    async def get_balance(self, user_id: UUID) -> CreditBalance:
        return self._balance_of(await self.get_profile(user_id))

    async def list_transactions(self, user_id: UUID, limit: int = 50) -> list[CreditTransaction]:
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ========================================================================
    # Grants
    # ========================================================================

    async def add_subscription_credits(
        self,
        user_id: UUID,
        amount: int,
        reference_id: str,
        description: str | None = None,
        transaction_type: TransactionType = TransactionType.SUBSCRIPTION,
    ) -> LedgerEntry | None:
        """
        Add credits to the subscription pool.

        Returns None when this reference was already applied.
        """
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive: {amount}")

        if await self._find_transaction(user_id, transaction_type, reference_id):
            return self._skipped(user_id, transaction_type, reference_id)

        profile = await self._lock_profile(user_id)
        balance = self._balance_of(profile)
        new_balance = CreditBalance(
            subscription_credits=balance.subscription_credits + amount,
            purchased_credits=balance.purchased_credits,
        )
        written = await self._commit_mutation(
            profile,
            new_balance,
            [_PendingTransaction(amount, transaction_type, reference_id, description)],
        )
        if written is None:
            return self._skipped(user_id, transaction_type, reference_id)

        logger.info(
            "subscription_credits_added",
            user_id=str(user_id),
            amount=amount,
            reference_id=reference_id,
            transaction_type=transaction_type.value,
        )
        return self._entry(written[0], new_balance)

    async def add_purchased_credits(
        self,
        user_id: UUID,
        amount: int,
        reference_id: str,
        description: str | None = None,
    ) -> LedgerEntry | None:
        """
        Add credits to the purchased pool (never capped, never expires).

        Returns None when this reference was already applied.
        """
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive: {amount}")

        if await self._find_transaction(user_id, TransactionType.PURCHASE, reference_id):
            return self._skipped(user_id, TransactionType.PURCHASE, reference_id)

        profile = await self._lock_profile(user_id)
        balance = self._balance_of(profile)
        new_balance = CreditBalance(
            subscription_credits=balance.subscription_credits,
            purchased_credits=balance.purchased_credits + amount,
        )
        written = await self._commit_mutation(
            profile,
            new_balance,
            [_PendingTransaction(amount, TransactionType.PURCHASE, reference_id, description)],
        )
        if written is None:
            return self._skipped(user_id, TransactionType.PURCHASE, reference_id)

        logger.info(
            "purchased_credits_added",
            user_id=str(user_id),
            amount=amount,
            reference_id=reference_id,
        )
        return self._entry(written[0], new_balance)

    async def apply_renewal(
        self,
        user_id: UUID,
        plan: PlanConfig,
        reference_id: str,
        description: str | None = None,
    ) -> RenewalResult | None:
        """
        Grant one billing cycle of credits under the plan's rollover cap.

        The subscription transaction is written even when the cap leaves
        nothing to add, so a replayed invoice is recognised and skipped.
        """
        if await self._find_transaction(user_id, TransactionType.SUBSCRIPTION, reference_id):
            self._skipped(user_id, TransactionType.SUBSCRIPTION, reference_id)
            return None

        profile = await self._lock_profile(user_id)
        balance = self._balance_of(profile)
        renewal = credit_ledger.apply_renewal(balance, plan)

        pending: list[_PendingTransaction] = []
        if renewal.expired_amount > 0:
            pending.append(
                _PendingTransaction(
                    -renewal.expired_amount,
                    TransactionType.EXPIRED,
                    f"{reference_id}_expired",
                    f"{plan.name} credits expired at renewal",
                )
            )
        pending.append(
            _PendingTransaction(
                renewal.credits_added,
                TransactionType.SUBSCRIPTION,
                reference_id,
                description or f"{plan.name} monthly credits",
            )
        )

        written = await self._commit_mutation(profile, renewal.new_balance, pending)
        if written is None:
            self._skipped(user_id, TransactionType.SUBSCRIPTION, reference_id)
            return None

        logger.info(
            "subscription_renewal_applied",
            user_id=str(user_id),
            plan=plan.key,
            reference_id=reference_id,
            previous_total=balance.total,
            new_total=renewal.new_balance.total,
            credits_added=renewal.credits_added,
            expired_amount=renewal.expired_amount,
            capped=renewal.capped,
            max_rollover=plan.rollover_cap,
        )
        return renewal

    async def apply_tier_change(
        self,
        user_id: UUID,
        from_plan: PlanConfig,
        to_plan: PlanConfig,
        reference_id: str,
    ) -> TierChangeResult | None:
        """
        Reconcile pools for a plan change.

        Upgrade writes one plan_upgrade transaction for the delta actually added.
        Downgrade writes a negative rollover_cap transaction only when capping
        reduced the stored subscription pool. Returns None when already applied.
        """
        change_type = credit_ledger.classify_tier_change(from_plan, to_plan)
        if change_type is TierChangeType.UNCHANGED:
            balance = await self.get_balance(user_id)
            return credit_ledger.apply_tier_change(balance, from_plan, to_plan)

        marker_type = (
            TransactionType.PLAN_UPGRADE
            if change_type is TierChangeType.UPGRADE
            else TransactionType.ROLLOVER_CAP
        )
        if await self._find_transaction(user_id, marker_type, reference_id):
            self._skipped(user_id, marker_type, reference_id)
            return None

        profile = await self._lock_profile(user_id)
        balance = self._balance_of(profile)
        result = credit_ledger.apply_tier_change(balance, from_plan, to_plan)

        if change_type is TierChangeType.UPGRADE:
            pending = [
                _PendingTransaction(
                    result.credits_added,
                    TransactionType.PLAN_UPGRADE,
                    reference_id,
                    f"Plan upgrade {from_plan.name} -> {to_plan.name}",
                )
            ]
        elif result.credits_capped > 0:
            pending = [
                _PendingTransaction(
                    -result.credits_capped,
                    TransactionType.ROLLOVER_CAP,
                    reference_id,
                    f"Plan downgrade {from_plan.name} -> {to_plan.name}: "
                    f"balance capped at {to_plan.rollover_cap}",
                )
            ]
        else:
            logger.info(
                "plan_downgrade_balance_preserved",
                user_id=str(user_id),
                from_plan=from_plan.key,
                to_plan=to_plan.key,
                subscription_credits=balance.subscription_credits,
                new_cap=to_plan.rollover_cap,
            )
            return result

        written = await self._commit_mutation(profile, result.new_balance, pending)
        if written is None:
            self._skipped(user_id, marker_type, reference_id)
            return None

        logger.info(
            "plan_change_credits_reconciled",
            user_id=str(user_id),
            change_type=change_type.value,
            from_plan=from_plan.key,
            to_plan=to_plan.key,
            credits_added=result.credits_added,
            credits_capped=result.credits_capped,
            reference_id=reference_id,
        )
        return result

    # ========================================================================
    # Debits
    # ========================================================================

    async def consume_credits(
        self,
        user_id: UUID,
        amount: int,
        reference_id: str,
        description: str | None = None,
    ) -> LedgerEntry | None:
        """
        Debit credits for usage, subscription pool first.

        Raises:
            InsufficientCreditsError: Total balance below amount
        """
        if amount <= 0:
            raise ValueError(f"Usage amount must be positive: {amount}")

        if await self._find_transaction(user_id, TransactionType.USAGE, reference_id):
            return self._skipped(user_id, TransactionType.USAGE, reference_id)

        profile = await self._lock_profile(user_id)
        balance = self._balance_of(profile)
        if balance.total < amount:
            raise InsufficientCreditsError(balance.total, amount)

        split = credit_ledger.split_debit(balance, amount)
        new_balance = credit_ledger.apply_debit(balance, split)
        written = await self._commit_mutation(
            profile,
            new_balance,
            [_PendingTransaction(-amount, TransactionType.USAGE, reference_id, description)],
        )
        if written is None:
            return self._skipped(user_id, TransactionType.USAGE, reference_id)

        logger.info(
            "credits_consumed",
            user_id=str(user_id),
            amount=amount,
            from_subscription=split.from_subscription,
            from_purchased=split.from_purchased,
            reference_id=reference_id,
        )
        return self._entry(written[0], new_balance)

    async def adjust_credits(
        self,
        user_id: UUID,
        amount: int,
        reason: str,
        admin_id: str,
    ) -> AdjustmentResult:
        """
        Admin correction. Always writes an adjustment transaction.

        Positive amounts go to the purchased pool. Negative amounts are drawn
        subscription pool first and floored at zero; the transaction records
        the amount actually applied.

        Raises:
            AdjustmentRejectedError: amount is zero
            ProfileNotFoundError: No profile for user_id
        """
        if amount == 0:
            raise AdjustmentRejectedError(user_id, "amount must be non-zero")

        profile = await self._lock_profile(user_id)
        balance = self._balance_of(profile)

        if amount > 0:
            applied = amount
            new_balance = CreditBalance(
                subscription_credits=balance.subscription_credits,
                purchased_credits=balance.purchased_credits + amount,
            )
        else:
            split = credit_ledger.split_debit(balance, -amount, allow_partial=True)
            applied = -split.total
            new_balance = credit_ledger.apply_debit(balance, split)

        reference_id = f"adjustment_{uuid4().hex}"
        written = await self._commit_mutation(
            profile,
            new_balance,
            [
                _PendingTransaction(
                    applied,
                    TransactionType.ADJUSTMENT,
                    reference_id,
                    f"{reason} (by {admin_id})",
                )
            ],
        )
        if written is None:
            raise DataIntegrityError(f"Adjustment reference collision: {reference_id}")

        logger.info(
            "credits_adjusted",
            user_id=str(user_id),
            admin_id=admin_id,
            amount_requested=amount,
            amount_applied=applied,
            previous_total=balance.total,
            new_total=new_balance.total,
            reason=reason,
        )
        return AdjustmentResult(
            user_id=user_id,
            amount_requested=amount,
            amount_applied=applied,
            balance=new_balance,
            transaction_id=written[0].id,
        )

    async def clawback_reference(
        self,
        user_id: UUID,
        reference_id: str,
        reason: str,
    ) -> LedgerEntry | None:
        """
        Remove the credits granted under a reference (refunds), floored at zero.

        Returns None when nothing was granted under the reference or the
        clawback was already applied.
        """
        clawback_ref = f"{reference_id}_clawback"
        if await self._find_transaction(user_id, TransactionType.CLAWBACK, clawback_ref):
            return self._skipped(user_id, TransactionType.CLAWBACK, clawback_ref)

        granted = await self._sum_granted(user_id, reference_id)
        if granted <= 0:
            logger.info(
                "clawback_nothing_granted",
                user_id=str(user_id),
                reference_id=reference_id,
            )
            return None

        profile = await self._lock_profile(user_id)
        balance = self._balance_of(profile)
        split = credit_ledger.split_debit(balance, granted, allow_partial=True)
        new_balance = credit_ledger.apply_debit(balance, split)

        written = await self._commit_mutation(
            profile,
            new_balance,
            [
                _PendingTransaction(
                    -split.total, TransactionType.CLAWBACK, clawback_ref, reason
                )
            ],
        )
        if written is None:
            return self._skipped(user_id, TransactionType.CLAWBACK, clawback_ref)

        if split.total < granted:
            logger.warning(
                "clawback_partial",
                user_id=str(user_id),
                reference_id=reference_id,
                granted=granted,
                clawed_back=split.total,
            )
        else:
            logger.info(
                "clawback_applied",
                user_id=str(user_id),
                reference_id=reference_id,
                clawed_back=split.total,
            )
        return self._entry(written[0], new_balance)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _commit_mutation(
        self,
        profile: Profile,
        new_balance: CreditBalance,
        pending: list[_PendingTransaction],
    ) -> list[CreditTransaction] | None:
        """
        Write transactions and pools, verify, commit.

        Returns None if a concurrent request already wrote the same reference.
        """
        transactions = [
            CreditTransaction(
                id=uuid4(),
                user_id=profile.id,
                amount=p.amount,
                type=p.transaction_type.value,
                reference_id=p.reference_id,
                description=p.description,
            )
            for p in pending
        ]
        for transaction in transactions:
            self.session.add(transaction)

        profile.subscription_credits_balance = new_balance.subscription_credits
        profile.purchased_credits_balance = new_balance.purchased_credits

        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            if not is_unique_violation(exc):
                raise
            return None

        verified = await self.session.get(Profile, profile.id)
        if verified is None:
            raise WriteVerificationError(f"Profile {profile.id} disappeared after update")
        if self._balance_of(verified) != new_balance:
            raise DataIntegrityError(
                f"Balance mismatch for {profile.id}: expected {new_balance}, "
                f"got {self._balance_of(verified)}"
            )

        await self.session.commit()

        for transaction in transactions:
            metrics.record_credit_mutation(transaction.type, transaction.amount)
        return transactions

    def _skipped(
        self, user_id: UUID, transaction_type: TransactionType, reference_id: str
    ) -> None:
        metrics.record_credit_mutation_skipped(transaction_type.value)
        logger.info(
            "credit_mutation_already_applied",
            user_id=str(user_id),
            transaction_type=transaction_type.value,
            reference_id=reference_id,
        )
        return None

    @staticmethod
    def _balance_of(profile: Profile) -> CreditBalance:
        return CreditBalance(
            subscription_credits=profile.subscription_credits_balance,
            purchased_credits=profile.purchased_credits_balance,
        )

    @staticmethod
    def _entry(transaction: CreditTransaction, balance: CreditBalance) -> LedgerEntry:
        return LedgerEntry(
            transaction_id=transaction.id,
            user_id=transaction.user_id,
            amount=transaction.amount,
            transaction_type=TransactionType(transaction.type),
            reference_id=transaction.reference_id,
            balance_after=balance,
        )

    async def _find_profile(self, user_id: UUID) -> Profile | None:
        stmt = select(Profile).where(Profile.id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_profile(self, user_id: UUID) -> Profile:
        """Lock profile row for update (SELECT FOR UPDATE)."""
        stmt = select(Profile).where(Profile.id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        profile = result.scalar_one_or_none()
        if profile is None:
            raise ProfileNotFoundError(str(user_id))
        return profile

    async def _find_transaction(
        self, user_id: UUID, transaction_type: TransactionType, reference_id: str | None
    ) -> CreditTransaction | None:
        if reference_id is None:
            return None
        stmt = select(CreditTransaction).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.type == transaction_type.value,
            CreditTransaction.reference_id == reference_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _sum_granted(self, user_id: UUID, reference_id: str) -> int:
        stmt = select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.reference_id == reference_id,
            CreditTransaction.type.in_(CLAWBACK_SOURCE_TYPES),
            CreditTransaction.amount > 0,
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())
