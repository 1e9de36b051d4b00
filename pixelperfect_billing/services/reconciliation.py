"""
Reconciliation jobs - bring the store back in line with Stripe.

Two periodic jobs, both safe to run concurrently with live webhooks:

- Failed-event recovery: failed webhook events are re-fetched from Stripe
  and re-dispatched through the normal handlers, at most max_retries times.
  Events Stripe no longer has (older than 30 days) are given up at once.
- Expiration check: active subscriptions whose billing period has ended are
  re-read from Stripe, covering renewals and cancellations whose webhooks
  never arrived.
"""

from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pixelperfect_billing.config import settings
from pixelperfect_billing.db.models import Profile, Subscription
from pixelperfect_billing.exceptions import (
    EventStatusUpdateError,
    PaymentProviderError,
    WebhookProcessingError,
    WebhookVerificationError,
)
from pixelperfect_billing.models.api import SubscriptionStatus
from pixelperfect_billing.models.domain import (
    ExpirationCheckResult,
    RecoveryResult,
    VerifiedWebhook,
)
from pixelperfect_billing.observability.metrics import metrics
from pixelperfect_billing.observability.tracing import trace_operation
from pixelperfect_billing.services.idempotency import IdempotencyService
from pixelperfect_billing.services.stripe_provider import StripeProvider
from pixelperfect_billing.services.webhook_processor import WebhookProcessor, apply_snapshot

logger = get_logger(__name__)

EVENT_NOT_FOUND_MESSAGE = "Event not found in Stripe (expired or invalid)"


class ReconciliationService:
    """Failed-webhook recovery and lapsed-subscription checks."""

    def __init__(
        self,
        session: AsyncSession,
        provider: StripeProvider,
        idempotency: IdempotencyService | None = None,
        processor: WebhookProcessor | None = None,
    ) -> None:
        self.session = session
        self.provider = provider
        self.idempotency = idempotency or IdempotencyService(session)
        self.processor = processor or WebhookProcessor(
            session, provider, idempotency=self.idempotency
        )

    # ========================================================================
    # Failed-event recovery
    # ========================================================================

    async def recover_failed_events(self, limit: int | None = None) -> RecoveryResult:
        """Retry every recoverable failed event once."""
        events = await self.idempotency.list_recoverable_events(limit)
        if not events:
            logger.info("webhook_recovery_nothing_to_do")
            return RecoveryResult(processed=0, recovered=0, failed=0, unrecoverable=0)

        logger.info("webhook_recovery_started", count=len(events))
        processed = recovered = failed = unrecoverable = 0

        for event in events:
            # Snapshot before claim_for_retry commits new values onto the row
            event_id = event.event_id
            event_type = event.event_type
            payload = event.payload

            if not await self.idempotency.claim_for_retry(event_id):
                continue
            processed += 1

            with trace_operation(
                "stripe_webhook_recovery", event_id=event_id, event_type=event_type
            ):
                outcome = await self._retry_event(event_id, event_type, payload)

            metrics.record_webhook_recovery(event_type, outcome)
            if outcome == "recovered":
                recovered += 1
            elif outcome == "unrecoverable":
                unrecoverable += 1
            else:
                failed += 1

        logger.info(
            "webhook_recovery_complete",
            processed=processed,
            recovered=recovered,
            failed=failed,
            unrecoverable=unrecoverable,
        )
        return RecoveryResult(
            processed=processed,
            recovered=recovered,
            failed=failed,
            unrecoverable=unrecoverable,
        )

    async def _retry_event(
        self, event_id: str, event_type: str, payload: dict | None
    ) -> str:
        """Re-run one claimed event. Returns recovered, failed or unrecoverable."""
        try:
            webhook = await self._load_event(event_id, payload)
        except PaymentProviderError as exc:
            if exc.not_found:
                await self.idempotency.mark_event_unrecoverable(
                    event_id, event_type, reason=EVENT_NOT_FOUND_MESSAGE
                )
                logger.warning("webhook_recovery_event_gone", event_id=event_id)
                return "unrecoverable"
            await self.idempotency.mark_event_failed(event_id, exc.message)
            return await self._after_failure(event_id)
        except WebhookVerificationError as exc:
            await self.idempotency.mark_event_unrecoverable(
                event_id, event_type, reason=exc.message
            )
            return "unrecoverable"

        try:
            result = await self.processor.dispatch(webhook)
        except WebhookProcessingError:
            return await self._after_failure(event_id)
        except EventStatusUpdateError:
            # Left in processing; the stale sweep returns it to failed
            return "failed"

        if result.warning:
            return "unrecoverable"
        logger.info("webhook_event_recovered", event_id=event_id, event_type=event_type)
        return "recovered"

    async def _load_event(self, event_id: str, payload: dict | None) -> VerifiedWebhook:
        if self.provider.is_test_mode:
            if not payload:
                raise WebhookVerificationError("No stored payload to replay in test mode")
            return StripeProvider.webhook_from_event(payload, is_test_mode=True)
        return await self.provider.retrieve_event(event_id)

    async def _after_failure(self, event_id: str) -> str:
        if await self.idempotency.retire_if_exhausted(event_id):
            return "unrecoverable"
        return "failed"

    # ========================================================================
    # Expiration check
    # ========================================================================

    async def check_expired_subscriptions(
        self, limit: int | None = None
    ) -> ExpirationCheckResult:
        """
        Re-read active subscriptions whose period has ended.

        Stripe still active means the renewal webhook is late: the period is
        refreshed. Any other status is copied over, and a subscription Stripe
        no longer knows is marked canceled. Credits are never granted here;
        the invoice webhook (or its recovery) does that.
        """
        now = datetime.now(UTC)
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.current_period_end < now,
            )
            .order_by(Subscription.current_period_end.asc())
            .limit(limit or settings.expiration_check_batch_size)
        )
        lapsed = list(result.scalars().all())
        if not lapsed:
            logger.info("expiration_check_nothing_to_do")
            return ExpirationCheckResult(processed=0, fixed=0)

        processed = fixed = 0
        for subscription in lapsed:
            processed += 1
            subscription_id = subscription.id
            try:
                if await self._refresh_subscription(subscription, now):
                    fixed += 1
            except PaymentProviderError as exc:
                logger.error(
                    "expiration_check_provider_error",
                    subscription_id=subscription_id,
                    error=exc.message,
                )

        logger.info("expiration_check_complete", processed=processed, fixed=fixed)
        return ExpirationCheckResult(processed=processed, fixed=fixed)

    async def _refresh_subscription(self, subscription: Subscription, now: datetime) -> bool:
        try:
            snapshot = await self.provider.retrieve_subscription(subscription.id)
        except PaymentProviderError as exc:
            if not exc.not_found:
                raise
            logger.warning("expiration_check_subscription_gone", subscription_id=subscription.id)
            subscription.status = SubscriptionStatus.CANCELED.value
            subscription.canceled_at = subscription.canceled_at or now
            subscription.updated_at = now
            await self._set_profile_status(subscription, SubscriptionStatus.CANCELED.value)
            await self.session.commit()
            return True

        if snapshot.status == SubscriptionStatus.ACTIVE.value:
            logger.info("expiration_check_webhook_delayed", subscription_id=subscription.id)
        else:
            logger.warning(
                "expiration_check_status_drift",
                subscription_id=subscription.id,
                stripe_status=snapshot.status,
            )
            await self._set_profile_status(subscription, snapshot.status)

        apply_snapshot(subscription, snapshot, now)
        await self.session.commit()
        return True

    async def _set_profile_status(self, subscription: Subscription, status: str) -> None:
        profile = await self.session.get(Profile, subscription.user_id)
        if profile is not None:
            profile.subscription_status = status
