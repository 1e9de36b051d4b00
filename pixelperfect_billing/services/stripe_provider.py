"""
Stripe Payment Provider - webhook verification and subscription client.

NO DICTIONARIES - provider objects are normalised into typed snapshots;
only the raw event payload stays a mapping.
"""

import json
from datetime import UTC, datetime
from typing import Any

import stripe
from structlog import get_logger

from pixelperfect_billing.config import KNOWN_TEST_WEBHOOK_SECRET
from pixelperfect_billing.exceptions import (
    PaymentProviderError,
    WebhookConfigurationError,
    WebhookVerificationError,
)
from pixelperfect_billing.models.domain import EventKind, SubscriptionSnapshot, VerifiedWebhook

logger = get_logger(__name__)

TEST_MODE_KEY_MARKER = "dummy_key"


def field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or plain mapping, None-safe."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def is_not_found(exc: stripe.StripeError) -> bool:
    """True when Stripe reports the requested object does not exist."""
    return isinstance(exc, stripe.InvalidRequestError) and exc.code == "resource_missing"


def to_datetime(timestamp: Any) -> datetime | None:
    """Convert a Stripe unix timestamp to an aware UTC datetime."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(int(timestamp), UTC)


class StripeProvider:
    """
    Stripe provider.

    Verifies webhook origin and reads/updates subscriptions. Instances are
    created per request with the settings of the running environment.
    """

    def __init__(self, api_key: str, webhook_secret: str, environment: str = "production") -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            environment: Runtime environment name ("test" enables test mode checks)
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.environment = environment.lower()
        stripe.api_key = api_key

    @property
    def is_test_mode(self) -> bool:
        """Test mode requires BOTH the test environment and a dummy API key."""
        return self.environment == "test" and TEST_MODE_KEY_MARKER in (self.api_key or "")

    # ========================================================================
    # Webhook Verification
    # ========================================================================

    async def verify_webhook(self, payload: bytes, signature: str | None) -> VerifiedWebhook:
        """
        Verify and parse a Stripe webhook delivery. Fails closed.

        Raises:
            WebhookConfigurationError: Known test secret configured outside the
                test environment (fatal misconfiguration)
            WebhookVerificationError: Missing or invalid signature, malformed payload
        """
        if self.webhook_secret == KNOWN_TEST_WEBHOOK_SECRET and self.environment != "test":
            logger.critical(
                "stripe_webhook_test_secret_outside_test",
                environment=self.environment,
            )
            raise WebhookConfigurationError(
                "Test webhook secret is configured outside the test environment"
            )

        if not signature:
            logger.warning("stripe_webhook_missing_signature")
            raise WebhookVerificationError("Missing stripe-signature header")

        if self.is_test_mode:
            logger.info("stripe_webhook_test_mode_parse")
            return self._parse_event(payload, is_test_mode=True)

        try:
            stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        return self._parse_event(payload, is_test_mode=False)

    def _parse_event(self, payload: bytes, is_test_mode: bool) -> VerifiedWebhook:
        try:
            event = json.loads(payload)
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        return self.webhook_from_event(event, is_test_mode=is_test_mode)

    @staticmethod
    def webhook_from_event(event: Any, is_test_mode: bool = False) -> VerifiedWebhook:
        """
        Build a verified webhook from an event body already known to be genuine.

        Used for signature-checked deliveries, events fetched back from the
        Stripe API and stored payloads replayed in test mode.

        Raises:
            WebhookVerificationError: Event is missing id, type or data
        """
        event_id = field(event, "id")
        event_type = field(event, "type")
        data = field(event, "data", {})
        if not event_id or not event_type or not isinstance(data, dict):
            raise WebhookVerificationError("Webhook payload is missing id, type or data")

        logger.info("stripe_webhook_verified", event_id=event_id, event_type=event_type)

        return VerifiedWebhook(
            event_id=event_id,
            event_type=event_type,
            kind=EventKind.from_event_type(event_type),
            data_object=field(data, "object", {}),
            previous_attributes=field(data, "previous_attributes"),
            payload=event,
            is_test_mode=is_test_mode,
        )

    async def retrieve_event(self, event_id: str) -> VerifiedWebhook:
        """
        Fetch an event back from the Stripe API for reprocessing.

        Stripe keeps events for 30 days; older ids come back not_found.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info("retrieving_stripe_event", event_id=event_id)
            event = stripe.Event.retrieve(event_id)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_event_retrieve_failed",
                event_id=event_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(str(exc), not_found=is_not_found(exc)) from exc

        return self.webhook_from_event(event, is_test_mode=False)

    # ========================================================================
    # Subscriptions
    # ========================================================================

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        """
        Fetch the current state of a subscription from Stripe.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info("retrieving_stripe_subscription", subscription_id=subscription_id)
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_subscription_retrieve_failed",
                subscription_id=subscription_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(str(exc), not_found=is_not_found(exc)) from exc

        return self.snapshot_from_object(subscription)

    async def update_subscription_price(
        self, subscription_id: str, item_id: str, price_id: str
    ) -> SubscriptionSnapshot:
        """
        Swap the subscription item's price with immediate proration.

        Raises:
            PaymentProviderError: If Stripe rejects the change
        """
        try:
            logger.info(
                "updating_stripe_subscription_price",
                subscription_id=subscription_id,
                item_id=item_id,
                price_id=price_id,
            )
            updated = stripe.Subscription.modify(
                subscription_id,
                items=[{"id": item_id, "price": price_id}],
                proration_behavior="create_prorations",
                payment_behavior="error_if_incomplete",
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_subscription_update_failed",
                subscription_id=subscription_id,
                price_id=price_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(str(exc)) from exc

        snapshot = self.snapshot_from_object(updated)
        logger.info(
            "stripe_subscription_price_updated",
            subscription_id=subscription_id,
            price_id=snapshot.price_id,
            status=snapshot.status,
        )
        return snapshot

    @staticmethod
    def snapshot_from_object(subscription: Any) -> SubscriptionSnapshot:
        """Normalise a Stripe subscription (API object or webhook payload)."""
        items = field(field(subscription, "items"), "data", [])
        first_item = items[0] if items else None
        price = field(first_item, "price")
        price_id = field(price, "id") if not isinstance(price, str) else price
        if price_id is None:
            price_id = field(field(first_item, "plan"), "id")

        # Newer API versions carry the period on the item, not the subscription
        period_start = field(subscription, "current_period_start") or field(
            first_item, "current_period_start"
        )
        period_end = field(subscription, "current_period_end") or field(
            first_item, "current_period_end"
        )

        customer = field(subscription, "customer")
        customer_id = customer if isinstance(customer, str) else field(customer, "id")

        return SubscriptionSnapshot(
            id=field(subscription, "id"),
            customer_id=customer_id,
            status=field(subscription, "status", "incomplete"),
            item_id=field(first_item, "id"),
            price_id=price_id,
            current_period_start=to_datetime(period_start),
            current_period_end=to_datetime(period_end),
            cancel_at_period_end=bool(field(subscription, "cancel_at_period_end", False)),
            canceled_at=to_datetime(field(subscription, "canceled_at")),
            trial_end=to_datetime(field(subscription, "trial_end")),
        )
