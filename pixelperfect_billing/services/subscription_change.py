"""
Subscription Change Service - synchronous plan change with conflict detection.

The provider is the source of truth. The stored subscription is only an
expectation: it is re-checked against a fresh provider read right before the
mutation, and the local write is a compare-and-swap on price_id so a
concurrent change (webhook or another tab) is never silently overwritten.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pixelperfect_billing.db.models import Profile, Subscription
from pixelperfect_billing.exceptions import (
    BillingError,
    PaymentProviderError,
    SubscriptionChangeError,
)
from pixelperfect_billing.models.api import CURRENT_SUBSCRIPTION_STATUSES, ChangeErrorCode
from pixelperfect_billing.models.domain import SubscriptionChangeResult, SubscriptionSnapshot
from pixelperfect_billing.observability.metrics import metrics
from pixelperfect_billing.observability.tracing import trace_operation
from pixelperfect_billing.services.credits import CreditService, plan_change_reference
from pixelperfect_billing.services.plan_catalog import PlanConfig, resolve_price_id
from pixelperfect_billing.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

CURRENT_STATUS_VALUES = tuple(status.value for status in CURRENT_SUBSCRIPTION_STATUSES)

SUBSCRIPTION_MODIFIED_MESSAGE = (
    "Your subscription was modified elsewhere. Please refresh the page and try again."
)


class SubscriptionChangeService:
    """Per-request service for the synchronous change-plan path."""

    def __init__(
        self,
        session: AsyncSession,
        provider: StripeProvider,
        credits: CreditService | None = None,
    ) -> None:
        self.session = session
        self.provider = provider
        self.credits = credits or CreditService(session)

    async def change_plan(self, user_id: UUID, target_price_id: str) -> SubscriptionChangeResult:
        """
        Move the user's current subscription to target_price_id.

        Raises:
            SubscriptionChangeError: With one of INVALID_PRICE_ID, NO_ACTIVE_SUBSCRIPTION,
                SAME_PLAN (400), SUBSCRIPTION_MODIFIED (409) or STRIPE_ERROR (500)
        """
        with trace_operation(
            "subscription_change", user_id=str(user_id), target_price_id=target_price_id
        ):
            resolved = resolve_price_id(target_price_id)
            if resolved is None or resolved.plan is None:
                raise self._reject(ChangeErrorCode.INVALID_PRICE_ID, "Invalid price ID", 400)
            target_plan = resolved.plan

            current = await self._find_current_subscription(user_id)
            if current is None:
                raise self._reject(
                    ChangeErrorCode.NO_ACTIVE_SUBSCRIPTION, "No active subscription found", 400
                )

            expected_price_id = current.price_id
            subscription_id = current.id
            if expected_price_id == target_price_id:
                raise self._reject(ChangeErrorCode.SAME_PLAN, "You are already on this plan", 400)

            fresh = await self._fetch_fresh(subscription_id)
            if fresh.price_id != expected_price_id or fresh.status not in CURRENT_STATUS_VALUES:
                logger.warning(
                    "subscription_change_conflict",
                    user_id=str(user_id),
                    subscription_id=subscription_id,
                    expected_price_id=expected_price_id,
                    provider_price_id=fresh.price_id,
                    provider_status=fresh.status,
                )
                raise self._reject(
                    ChangeErrorCode.SUBSCRIPTION_MODIFIED, SUBSCRIPTION_MODIFIED_MESSAGE, 409
                )

            if not fresh.item_id:
                raise self._reject(
                    ChangeErrorCode.STRIPE_ERROR,
                    "Failed to change subscription: subscription has no items",
                    500,
                )

            try:
                updated = await self.provider.update_subscription_price(
                    subscription_id, fresh.item_id, target_price_id
                )
            except PaymentProviderError as exc:
                raise self._reject(
                    ChangeErrorCode.STRIPE_ERROR,
                    f"Failed to change subscription: {exc.message}",
                    500,
                ) from exc

            credits_added = await self._reconcile_locally(
                user_id, subscription_id, expected_price_id, target_plan, updated
            )

        metrics.record_subscription_change("OK")
        logger.info(
            "subscription_changed",
            user_id=str(user_id),
            subscription_id=subscription_id,
            from_price_id=expected_price_id,
            to_price_id=target_price_id,
            credits_added=credits_added,
        )
        return SubscriptionChangeResult(
            subscription_id=subscription_id,
            status=updated.status,
            new_price_id=target_price_id,
            credits_added=credits_added,
            current_period_start=updated.current_period_start,
            current_period_end=updated.current_period_end,
            effective_immediately=True,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _fetch_fresh(self, subscription_id: str) -> SubscriptionSnapshot:
        try:
            return await self.provider.retrieve_subscription(subscription_id)
        except PaymentProviderError as exc:
            raise self._reject(
                ChangeErrorCode.STRIPE_ERROR,
                f"Failed to change subscription: {exc.message}",
                500,
            ) from exc

    async def _reconcile_locally(
        self,
        user_id: UUID,
        subscription_id: str,
        expected_price_id: str,
        target_plan: PlanConfig,
        updated: SubscriptionSnapshot,
    ) -> int:
        """
        Best-effort local writes after the provider accepted the change.

        The provider change is already committed, so store errors here are
        logged and left to the subscription webhook to reconcile.
        """
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "price_id": target_plan.price_id,
            "status": updated.status,
            "updated_at": now,
        }
        if updated.current_period_start is not None:
            values["current_period_start"] = updated.current_period_start
        if updated.current_period_end is not None:
            values["current_period_end"] = updated.current_period_end

        try:
            result = await self.session.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    Subscription.price_id == expected_price_id,
                )
                .values(**values)
            )
            if not result.rowcount:
                logger.warning(
                    "subscription_change_local_cas_miss",
                    subscription_id=subscription_id,
                    expected_price_id=expected_price_id,
                )
            await self.session.execute(
                update(Profile)
                .where(Profile.id == user_id)
                .values(subscription_tier=target_plan.key, updated_at=now)
            )
            await self.session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                "subscription_change_local_update_failed",
                subscription_id=subscription_id,
                error=str(exc),
            )
            await self._safe_rollback()

        previous = resolve_price_id(expected_price_id)
        if previous is None or previous.plan is None:
            logger.warning(
                "subscription_change_previous_price_unknown",
                subscription_id=subscription_id,
                previous_price_id=expected_price_id,
            )
            return 0

        try:
            change = await self.credits.apply_tier_change(
                user_id,
                previous.plan,
                target_plan,
                plan_change_reference(
                    subscription_id,
                    expected_price_id,
                    target_plan.price_id,
                    updated.current_period_start,
                ),
            )
        except (SQLAlchemyError, BillingError) as exc:
            logger.error(
                "subscription_change_credit_reconcile_failed",
                user_id=str(user_id),
                subscription_id=subscription_id,
                error=str(exc),
            )
            await self._safe_rollback()
            return 0

        return change.credits_added if change else 0

    async def _find_current_subscription(self, user_id: UUID) -> Subscription | None:
        """Newest active or trialing subscription for the user."""
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(CURRENT_STATUS_VALUES),
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _safe_rollback(self) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError as exc:
            logger.error("session_rollback_failed", error=str(exc))

    @staticmethod
    def _reject(code: ChangeErrorCode, message: str, status_code: int) -> SubscriptionChangeError:
        metrics.record_subscription_change(code.value)
        return SubscriptionChangeError(code, message, status_code)
