"""
Webhook Event Processor - dispatches verified Stripe events to handlers.

Each delivery:
1. Claims the event (IdempotencyService); duplicates short-circuit
2. Unhandled kinds are marked unrecoverable and acknowledged
3. The kind's handler re-derives state from the store and applies mutations
4. Success marks the event completed (failure to do so propagates)
5. Handler errors roll back, mark the event failed and propagate

Handlers never assume delivery order: the cached subscription row is written
from the provider's current state rather than the event payload, the cache
is committed before any credit write, and every credit grant is keyed by a
provider reference so replays and reorderings no-op.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pixelperfect_billing.db.models import Profile, Subscription
from pixelperfect_billing.exceptions import ProfileNotFoundError, WebhookProcessingError
from pixelperfect_billing.models.api import CURRENT_SUBSCRIPTION_STATUSES, SubscriptionStatus
from pixelperfect_billing.models.domain import (
    EventKind,
    SubscriptionSnapshot,
    VerifiedWebhook,
    WebhookResult,
)
from pixelperfect_billing.observability.logging import log_context
from pixelperfect_billing.observability.metrics import metrics, track_webhook_processing
from pixelperfect_billing.observability.tracing import trace_operation, webhook_attributes
from pixelperfect_billing.services.credits import CreditService, plan_change_reference
from pixelperfect_billing.services.idempotency import IdempotencyService
from pixelperfect_billing.services.plan_catalog import (
    PlanConfig,
    get_credit_pack_by_key,
    get_plan_by_price_id,
    resolve_price_id,
)
from pixelperfect_billing.services.stripe_provider import StripeProvider, field

logger = get_logger(__name__)

Handler = Callable[[VerifiedWebhook], Awaitable[None]]

# Period used when neither the event nor the provider reports one
FALLBACK_PERIOD = timedelta(days=30)

# Invoices raised by a mid-cycle plan change; the delta is granted by the plan change itself
PRORATION_BILLING_REASON = "subscription_update"

CURRENT_STATUS_VALUES = tuple(status.value for status in CURRENT_SUBSCRIPTION_STATUSES)


def _customer_id(obj: Any) -> str | None:
    customer = field(obj, "customer")
    return customer if isinstance(customer, str) else field(customer, "id")


def _price_id_of(item: Any) -> str | None:
    """Price id of a subscription item or invoice line, across API versions."""
    price = field(item, "price")
    if isinstance(price, str):
        return price
    price_id = field(price, "id")
    if price_id:
        return price_id
    price_details = field(field(item, "pricing"), "price_details")
    price_id = field(price_details, "price")
    if price_id:
        return price_id
    return field(field(item, "plan"), "id")


def previous_price_id(previous_attributes: Any) -> str | None:
    """Price the subscription had before this update, if the event reports it."""
    if not previous_attributes:
        return None
    items = field(field(previous_attributes, "items"), "data", [])
    if items:
        price_id = _price_id_of(items[0])
        if price_id:
            return price_id
    return _price_id_of(previous_attributes)


def invoice_price_id(invoice: Any) -> str | None:
    """
    Price id that determines the credit grant for an invoice.

    Prefers the subscription line, then a positive proration line, then any
    priced line.
    """
    lines = field(field(invoice, "lines"), "data", [])
    priced = [line for line in lines if _price_id_of(line)]

    for line in priced:
        if field(line, "type") == "subscription":
            return _price_id_of(line)
    for line in priced:
        if field(line, "proration") and field(line, "amount", 0) > 0:
            return _price_id_of(line)
    return _price_id_of(priced[0]) if priced else None


def invoice_subscription_id(invoice: Any) -> str | None:
    subscription = field(invoice, "subscription")
    if subscription:
        return subscription if isinstance(subscription, str) else field(subscription, "id")

    details = field(field(invoice, "parent"), "subscription_details")
    subscription = field(details, "subscription")
    if subscription:
        return subscription

    for line in field(field(invoice, "lines"), "data", []):
        subscription = field(line, "subscription") or field(
            field(field(line, "parent"), "subscription_item_details"), "subscription"
        )
        if subscription:
            return subscription
    return None


def schedule_price_id(schedule: Any) -> str | None:
    """Price of the schedule's final phase, which stays in effect once it completes."""
    phases = field(schedule, "phases", [])
    if not phases:
        return None
    items = field(phases[-1], "items", [])
    return _price_id_of(items[0]) if items else None


def snapshot_of_row(subscription: Subscription, price_id: str | None) -> SubscriptionSnapshot:
    """The cached row as a snapshot, with the price replaced."""
    return SubscriptionSnapshot(
        id=subscription.id,
        customer_id=None,
        status=subscription.status,
        item_id=None,
        price_id=price_id,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        canceled_at=subscription.canceled_at,
        trial_end=subscription.trial_end,
    )


def apply_snapshot(
    subscription: Subscription, snapshot: SubscriptionSnapshot, now: datetime
) -> None:
    """Copy the provider's view of a subscription onto the cached row."""
    period_start = snapshot.current_period_start or now
    period_end = snapshot.current_period_end or period_start + FALLBACK_PERIOD
    if snapshot.current_period_start is None or snapshot.current_period_end is None:
        logger.warning("stripe_subscription_period_fallback", subscription_id=snapshot.id)

    subscription.status = snapshot.status
    if snapshot.price_id:
        subscription.price_id = snapshot.price_id
    subscription.current_period_start = period_start
    subscription.current_period_end = period_end
    subscription.cancel_at_period_end = snapshot.cancel_at_period_end
    subscription.canceled_at = snapshot.canceled_at
    subscription.trial_end = snapshot.trial_end
    subscription.updated_at = now


class WebhookProcessor:
    """Per-request processor for verified Stripe webhook events."""

    def __init__(
        self,
        session: AsyncSession,
        provider: StripeProvider,
        idempotency: IdempotencyService | None = None,
        credits: CreditService | None = None,
    ) -> None:
        self.session = session
        self.provider = provider
        self.idempotency = idempotency or IdempotencyService(session)
        self.credits = credits or CreditService(session)
        self._handlers: dict[EventKind, Handler] = {
            EventKind.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            EventKind.CUSTOMER_CREATED: self._handle_customer_created,
            EventKind.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            EventKind.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            EventKind.INVOICE_PAID: self._handle_invoice_paid,
            EventKind.INVOICE_PAYMENT_FAILED: self._handle_invoice_payment_failed,
            EventKind.CHARGE_REFUNDED: self._handle_charge_refunded,
            EventKind.CHARGE_DISPUTE_CREATED: self._handle_charge_dispute_created,
            EventKind.TRIAL_WILL_END: self._handle_trial_will_end,
            EventKind.SCHEDULE_COMPLETED: self._handle_schedule_completed,
            EventKind.INVOICE_PAYMENT_REFUNDED: self._handle_invoice_payment_refunded,
        }

    async def process(self, webhook: VerifiedWebhook) -> WebhookResult:
        """
        Process one verified delivery.

        Raises:
            WebhookProcessingError: Handler failed; event recorded as failed
            EventStatusUpdateError: Handler succeeded but completion could not be recorded
        """
        with log_context(event_id=webhook.event_id, event_type=webhook.event_type):
            claim = await self.idempotency.check_and_claim_event(
                webhook.event_id, webhook.event_type, webhook.payload
            )
            if not claim.is_new:
                status = claim.existing_status.value if claim.existing_status else "processed"
                metrics.record_webhook_event(webhook.event_type, "skipped")
                logger.info("stripe_webhook_duplicate_skipped", existing_status=status)
                return WebhookResult(
                    event_id=webhook.event_id,
                    event_type=webhook.event_type,
                    skipped=True,
                    reason=f"Event already {status}",
                )

            return await self.dispatch(webhook)

    async def dispatch(self, webhook: VerifiedWebhook) -> WebhookResult:
        """
        Run the handler for an event this worker already owns (status processing).

        Shared by first delivery and failed-event recovery.

        Raises:
            WebhookProcessingError: Handler failed; event recorded as failed
            EventStatusUpdateError: Handler succeeded but completion could not be recorded
        """
        with log_context(event_id=webhook.event_id, event_type=webhook.event_type):
            handler = self._handlers.get(webhook.kind)
            if handler is None:
                await self.idempotency.mark_event_unrecoverable(
                    webhook.event_id, webhook.event_type
                )
                metrics.record_webhook_event(webhook.event_type, "unrecoverable")
                logger.warning("stripe_webhook_unhandled_event_type")
                return WebhookResult(
                    event_id=webhook.event_id,
                    event_type=webhook.event_type,
                    warning=f"Unhandled event type: {webhook.event_type}",
                )

            try:
                with track_webhook_processing(webhook.event_type), trace_operation(
                    "stripe_webhook_dispatch", **webhook_attributes(webhook)
                ):
                    await handler(webhook)
            except Exception as exc:
                logger.error(
                    "stripe_webhook_handler_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
                metrics.record_error(type(exc).__name__, "stripe_webhook")
                await self._safe_rollback()
                await self.idempotency.mark_event_failed(webhook.event_id, str(exc))
                raise WebhookProcessingError(
                    webhook.event_id, webhook.event_type, str(exc)
                ) from exc

            await self.idempotency.mark_event_completed(webhook.event_id)
            logger.info("stripe_webhook_processed")
            return WebhookResult(event_id=webhook.event_id, event_type=webhook.event_type)

    # ========================================================================
    # Handlers
    # ========================================================================

    async def _handle_checkout_completed(self, webhook: VerifiedWebhook) -> None:
        checkout = webhook.data_object
        session_id = field(checkout, "id")
        metadata = field(checkout, "metadata", {})
        customer_id = _customer_id(checkout)

        user_id = field(metadata, "user_id") or field(checkout, "client_reference_id")
        profile = await self._find_profile(user_id) if user_id else None
        if profile is None and customer_id:
            profile = await self._find_profile_by_customer(customer_id)
        if profile is None:
            raise ProfileNotFoundError(f"checkout session {session_id}")

        if customer_id and profile.stripe_customer_id != customer_id:
            profile.stripe_customer_id = customer_id
            await self.session.commit()
            logger.info(
                "stripe_customer_linked", user_id=str(profile.id), customer_id=customer_id
            )

        if field(checkout, "payment_status") not in ("paid", "no_payment_required"):
            logger.info(
                "stripe_checkout_payment_pending",
                session_id=session_id,
                payment_status=field(checkout, "payment_status"),
            )
            return

        mode = field(checkout, "mode")
        if mode == "subscription":
            await self._grant_checkout_subscription(webhook, checkout, profile)
        elif mode == "payment":
            await self._grant_checkout_purchase(checkout, profile)
        else:
            logger.info("stripe_checkout_mode_ignored", session_id=session_id, mode=mode)

    async def _grant_checkout_subscription(
        self, webhook: VerifiedWebhook, checkout: Any, profile: Profile
    ) -> None:
        session_id = field(checkout, "id")
        subscription_id = field(checkout, "subscription")
        price_id = field(field(checkout, "metadata", {}), "price_id")

        if subscription_id and not webhook.is_test_mode:
            snapshot = await self.provider.retrieve_subscription(subscription_id)
            price_id = snapshot.price_id or price_id
            await self._upsert_subscription(profile.id, snapshot)

        plan = get_plan_by_price_id(price_id)
        invoice_id = field(checkout, "invoice")
        reference_id = f"invoice_{invoice_id}" if invoice_id else f"session_{session_id}"

        await self.credits.apply_renewal(
            profile.id, plan, reference_id, f"{plan.name} subscription started"
        )

        profile.subscription_status = SubscriptionStatus.ACTIVE.value
        profile.subscription_tier = plan.key
        await self.session.commit()

    async def _grant_checkout_purchase(self, checkout: Any, profile: Profile) -> None:
        session_id = field(checkout, "id")
        metadata = field(checkout, "metadata", {})

        credits_amount: int | None = None
        if field(metadata, "credits"):
            credits_amount = int(field(metadata, "credits"))
        elif field(metadata, "pack_key"):
            pack = get_credit_pack_by_key(field(metadata, "pack_key"))
            credits_amount = pack.credits if pack else None
        if not credits_amount or credits_amount <= 0:
            raise ValueError(f"Checkout session {session_id} has no credit amount in metadata")

        payment_intent = field(checkout, "payment_intent")
        if not isinstance(payment_intent, (str, type(None))):
            payment_intent = field(payment_intent, "id")
        reference_id = payment_intent or f"session_{session_id}"

        await self.credits.add_purchased_credits(
            profile.id,
            credits_amount,
            reference_id,
            f"Purchased {credits_amount} credits",
        )

    async def _handle_customer_created(self, webhook: VerifiedWebhook) -> None:
        customer = webhook.data_object
        customer_id = field(customer, "id")
        user_id = field(field(customer, "metadata", {}), "user_id")
        if not user_id:
            logger.info("stripe_customer_without_user_id", customer_id=customer_id)
            return

        profile = await self._find_profile(user_id)
        if profile is None:
            logger.warning("stripe_customer_profile_not_found", customer_id=customer_id)
            return

        if profile.stripe_customer_id != customer_id:
            profile.stripe_customer_id = customer_id
            await self.session.commit()
            logger.info("stripe_customer_linked", user_id=str(profile.id), customer_id=customer_id)

    async def _handle_subscription_updated(self, webhook: VerifiedWebhook) -> None:
        event_snapshot = StripeProvider.snapshot_from_object(webhook.data_object)

        profile = await self._find_profile_by_customer(event_snapshot.customer_id)
        if profile is None:
            logger.warning(
                "stripe_subscription_profile_not_found",
                subscription_id=event_snapshot.id,
                customer_id=event_snapshot.customer_id,
            )
            return
        user_id = profile.id

        event_plan = get_plan_by_price_id(event_snapshot.price_id)

        existing = await self._find_subscription(event_snapshot.id)
        previous_status = existing.status if existing else None
        stored_price_id = existing.price_id if existing else None

        # The event may be older than the provider's state; the cache follows the provider
        current = event_snapshot
        if not webhook.is_test_mode:
            current = await self.provider.retrieve_subscription(event_snapshot.id)
        current_plan = (
            event_plan
            if current.price_id == event_snapshot.price_id
            else get_plan_by_price_id(current.price_id)
        )

        previous = previous_price_id(webhook.previous_attributes)
        if previous is None and current.price_id == event_snapshot.price_id:
            previous = stored_price_id

        subscription = await self._upsert_subscription(user_id, current)

        if (
            previous
            and previous != event_snapshot.price_id
            and event_snapshot.status in CURRENT_STATUS_VALUES
        ):
            resolved = resolve_price_id(previous)
            if resolved is None or resolved.plan is None:
                logger.warning(
                    "stripe_subscription_previous_price_unknown",
                    subscription_id=event_snapshot.id,
                    previous_price_id=previous,
                )
            else:
                anchor = event_snapshot.current_period_start or subscription.current_period_start
                await self.credits.apply_tier_change(
                    user_id,
                    resolved.plan,
                    event_plan,
                    plan_change_reference(
                        event_snapshot.id, previous, event_plan.price_id, anchor
                    ),
                )

        await self._reconcile_trial(user_id, current, current_plan, previous_status)

        profile.subscription_status = current.status
        profile.subscription_tier = current_plan.key
        await self.session.commit()

        logger.info(
            "stripe_subscription_synced",
            subscription_id=current.id,
            user_id=str(user_id),
            status=current.status,
            price_id=current.price_id,
            event_price_id=event_snapshot.price_id,
            previous_price_id=previous,
        )

    async def _reconcile_trial(
        self,
        user_id: UUID,
        snapshot: SubscriptionSnapshot,
        plan: PlanConfig,
        previous_status: str | None,
    ) -> None:
        """Grant trial credits on trial start; top up to a full cycle on conversion."""
        if not plan.trial_enabled:
            return

        trialing = SubscriptionStatus.TRIALING.value
        if snapshot.status == trialing and previous_status != trialing:
            await self.credits.add_subscription_credits(
                user_id,
                plan.trial_allowance,
                f"trial_{snapshot.id}",
                f"Trial credits - {plan.name} plan",
            )
            logger.info(
                "stripe_trial_started",
                user_id=str(user_id),
                subscription_id=snapshot.id,
                credits=plan.trial_allowance,
            )
            return

        if (
            snapshot.status == SubscriptionStatus.ACTIVE.value
            and previous_status == trialing
            and plan.trial_credits is not None
        ):
            balance = await self.credits.get_balance(user_id)
            top_up = max(0, plan.credits_per_month - balance.total)
            if top_up > 0:
                await self.credits.add_subscription_credits(
                    user_id,
                    top_up,
                    f"trial_conversion_{snapshot.id}",
                    f"Trial conversion - {plan.name} plan",
                )
            logger.info(
                "stripe_trial_converted",
                user_id=str(user_id),
                subscription_id=snapshot.id,
                credits_added=top_up,
            )

    async def _handle_subscription_deleted(self, webhook: VerifiedWebhook) -> None:
        snapshot = StripeProvider.snapshot_from_object(webhook.data_object)
        now = datetime.now(UTC)

        subscription = await self._find_subscription(snapshot.id)
        if subscription is not None:
            subscription.status = SubscriptionStatus.CANCELED.value
            subscription.canceled_at = snapshot.canceled_at or now
        else:
            logger.warning("stripe_subscription_delete_unknown", subscription_id=snapshot.id)

        profile = await self._find_profile_by_customer(snapshot.customer_id)
        if profile is not None:
            profile.subscription_status = SubscriptionStatus.CANCELED.value

        await self.session.commit()
        logger.info(
            "stripe_subscription_canceled",
            subscription_id=snapshot.id,
            user_id=str(profile.id) if profile else None,
        )

    async def _handle_invoice_paid(self, webhook: VerifiedWebhook) -> None:
        invoice = webhook.data_object
        invoice_id = field(invoice, "id")

        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("stripe_invoice_not_subscription", invoice_id=invoice_id)
            return

        if field(invoice, "billing_reason") == PRORATION_BILLING_REASON:
            logger.info(
                "stripe_invoice_proration_skipped",
                invoice_id=invoice_id,
                subscription_id=subscription_id,
            )
            return

        customer_id = _customer_id(invoice)
        profile = await self._find_profile_by_customer(customer_id)
        if profile is None:
            raise ProfileNotFoundError(f"customer {customer_id}")

        plan = get_plan_by_price_id(invoice_price_id(invoice))

        if not webhook.is_test_mode:
            snapshot = await self.provider.retrieve_subscription(subscription_id)
            await self._upsert_subscription(profile.id, snapshot)

        await self.credits.apply_renewal(
            profile.id, plan, f"invoice_{invoice_id}", f"{plan.name} monthly credits"
        )

        profile.subscription_tier = plan.key
        await self.session.commit()

    async def _handle_invoice_payment_failed(self, webhook: VerifiedWebhook) -> None:
        invoice = webhook.data_object
        customer_id = _customer_id(invoice)

        profile = await self._find_profile_by_customer(customer_id)
        if profile is None:
            logger.warning("stripe_invoice_failed_profile_not_found", customer_id=customer_id)
            return

        profile.subscription_status = SubscriptionStatus.PAST_DUE.value
        await self.session.commit()
        logger.warning(
            "stripe_invoice_payment_failed",
            user_id=str(profile.id),
            invoice_id=field(invoice, "id"),
        )

    async def _handle_charge_refunded(self, webhook: VerifiedWebhook) -> None:
        charge = webhook.data_object
        charge_id = field(charge, "id")
        amount_refunded = field(charge, "amount_refunded", 0)
        if not amount_refunded:
            logger.info("stripe_charge_no_refund_amount", charge_id=charge_id)
            return

        customer_id = _customer_id(charge)
        profile = await self._find_profile_by_customer(customer_id)
        if profile is None:
            logger.error(
                "stripe_refund_profile_not_found", charge_id=charge_id, customer_id=customer_id
            )
            return

        invoice_id = field(charge, "invoice")
        payment_intent = field(charge, "payment_intent")
        reference_id = f"invoice_{invoice_id}" if invoice_id else payment_intent
        if not reference_id:
            logger.warning("stripe_refund_without_reference", charge_id=charge_id)
            return

        await self.credits.clawback_reference(
            profile.id,
            reference_id,
            f"Refund for charge {charge_id} ({amount_refunded} cents)",
        )

    async def _handle_charge_dispute_created(self, webhook: VerifiedWebhook) -> None:
        dispute = webhook.data_object
        logger.warning(
            "stripe_charge_dispute_created",
            dispute_id=field(dispute, "id"),
            charge_id=field(dispute, "charge"),
            amount=field(dispute, "amount"),
            reason=field(dispute, "reason"),
        )

    async def _handle_trial_will_end(self, webhook: VerifiedWebhook) -> None:
        snapshot = StripeProvider.snapshot_from_object(webhook.data_object)

        profile = await self._find_profile_by_customer(snapshot.customer_id)
        if profile is None:
            if webhook.is_test_mode:
                logger.warning(
                    "stripe_trial_will_end_profile_not_found",
                    subscription_id=snapshot.id,
                    customer_id=snapshot.customer_id,
                )
                return
            raise ProfileNotFoundError(f"customer {snapshot.customer_id}")

        if snapshot.trial_end is None:
            logger.error("stripe_trial_will_end_without_trial_end", subscription_id=snapshot.id)
            return

        days_remaining = (snapshot.trial_end - datetime.now(UTC)).days
        logger.info(
            "stripe_trial_ending_notice",
            user_id=str(profile.id),
            email=profile.email,
            subscription_id=snapshot.id,
            trial_end=snapshot.trial_end.isoformat(),
            days_remaining=days_remaining,
        )

    async def _handle_schedule_completed(self, webhook: VerifiedWebhook) -> None:
        schedule = webhook.data_object
        schedule_id = field(schedule, "id")
        subscription_id = field(schedule, "subscription")
        if subscription_id is not None and not isinstance(subscription_id, str):
            subscription_id = field(subscription_id, "id")
        if not subscription_id:
            logger.info("stripe_schedule_without_subscription", schedule_id=schedule_id)
            return

        existing = await self._find_subscription(subscription_id)
        if existing is None:
            logger.warning(
                "stripe_schedule_subscription_unknown",
                schedule_id=schedule_id,
                subscription_id=subscription_id,
            )
            return
        user_id = existing.user_id
        previous = existing.price_id

        if webhook.is_test_mode:
            snapshot = snapshot_of_row(existing, schedule_price_id(schedule) or previous)
        else:
            snapshot = await self.provider.retrieve_subscription(subscription_id)
        plan = get_plan_by_price_id(snapshot.price_id)

        subscription = await self._upsert_subscription(user_id, snapshot)

        if previous != plan.price_id and snapshot.status in CURRENT_STATUS_VALUES:
            resolved = resolve_price_id(previous)
            if resolved is not None and resolved.plan is not None:
                await self.credits.apply_tier_change(
                    user_id,
                    resolved.plan,
                    plan,
                    plan_change_reference(
                        subscription_id,
                        previous,
                        plan.price_id,
                        subscription.current_period_start,
                    ),
                )

        profile = await self._find_profile(user_id)
        if profile is not None:
            profile.subscription_status = snapshot.status
            profile.subscription_tier = plan.key
            await self.session.commit()

        logger.info(
            "stripe_schedule_completed",
            schedule_id=schedule_id,
            subscription_id=subscription_id,
            previous_price_id=previous,
            price_id=plan.price_id,
        )

    async def _handle_invoice_payment_refunded(self, webhook: VerifiedWebhook) -> None:
        invoice = webhook.data_object
        invoice_id = field(invoice, "id")
        customer_id = _customer_id(invoice)

        profile = await self._find_profile_by_customer(customer_id)
        if profile is None:
            logger.error(
                "stripe_invoice_refund_profile_not_found",
                invoice_id=invoice_id,
                customer_id=customer_id,
            )
            return

        await self.credits.clawback_reference(
            profile.id, f"invoice_{invoice_id}", f"Refund for invoice {invoice_id}"
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_profile(self, user_id: str | UUID) -> Profile | None:
        try:
            profile_id = user_id if isinstance(user_id, UUID) else UUID(str(user_id))
        except ValueError:
            logger.warning("stripe_metadata_invalid_user_id", user_id=str(user_id))
            return None
        result = await self.session.execute(select(Profile).where(Profile.id == profile_id))
        return result.scalar_one_or_none()

    async def _find_profile_by_customer(self, customer_id: str | None) -> Profile | None:
        if not customer_id:
            return None
        result = await self.session.execute(
            select(Profile).where(Profile.stripe_customer_id == customer_id)
        )
        return result.scalar_one_or_none()

    async def _find_subscription(self, subscription_id: str) -> Subscription | None:
        result = await self.session.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def _upsert_subscription(
        self, user_id: UUID, snapshot: SubscriptionSnapshot
    ) -> Subscription:
        """
        Write the provider's view of a subscription into the local cache.

        Committed on its own: a credit write that loses a race rolls the
        session back, and that must not take the cached subscription with it.
        """
        now = datetime.now(UTC)
        subscription = await self._find_subscription(snapshot.id)
        if subscription is None:
            subscription = Subscription(id=snapshot.id, user_id=user_id, created_at=now)
            self.session.add(subscription)

        subscription.user_id = user_id
        apply_snapshot(subscription, snapshot, now)

        await self.session.commit()
        return subscription

    async def _safe_rollback(self) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError as exc:
            logger.error("session_rollback_failed", error=str(exc))
