"""
Tests for WebhookProcessor.

Dispatch, idempotency short-circuits, failure recording and the
per-kind handlers.
"""

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pixelperfect_billing.db.models import WebhookEvent
from pixelperfect_billing.exceptions import EventStatusUpdateError, WebhookProcessingError
from pixelperfect_billing.models.api import TransactionType, WebhookEventStatus
from pixelperfect_billing.models.domain import CreditBalance, IdempotencyResult
from pixelperfect_billing.services.credits import CreditService, plan_change_reference
from pixelperfect_billing.services.idempotency import IdempotencyService
from pixelperfect_billing.services.plan_catalog import PLANS
from pixelperfect_billing.services.webhook_processor import (
    WebhookProcessor,
    invoice_price_id,
    invoice_subscription_id,
    previous_price_id,
)

from tests.conftest import (
    InMemoryLedger,
    create_mock_profile,
    create_mock_subscription,
    create_snapshot,
    make_webhook,
)

PERIOD_START = 1790812800  # 2026-10-01T00:00:00Z
PERIOD_END = 1793404800


@pytest.fixture
def idempotency() -> MagicMock:
    service = MagicMock(spec=IdempotencyService)
    service.check_and_claim_event = AsyncMock(return_value=IdempotencyResult(is_new=True))
    service.mark_event_completed = AsyncMock()
    service.mark_event_failed = AsyncMock()
    service.mark_event_unrecoverable = AsyncMock()
    return service


@pytest.fixture
def credits() -> MagicMock:
    service = MagicMock(spec=CreditService)
    service.apply_renewal = AsyncMock()
    service.add_purchased_credits = AsyncMock()
    service.apply_tier_change = AsyncMock()
    service.clawback_reference = AsyncMock()
    service.add_subscription_credits = AsyncMock()
    service.get_balance = AsyncMock(
        return_value=CreditBalance(subscription_credits=0, purchased_credits=0)
    )
    return service


@pytest.fixture
def profile_mock() -> MagicMock:
    return create_mock_profile(stripe_customer_id="cus_test123")


@pytest.fixture
def processor(
    db_session: AsyncMock,
    stripe_provider: MagicMock,
    idempotency: MagicMock,
    credits: MagicMock,
    profile_mock: MagicMock,
) -> WebhookProcessor:
    processor = WebhookProcessor(db_session, stripe_provider, idempotency, credits)
    patchers = [
        patch.object(
            processor, "_find_profile", new_callable=AsyncMock, return_value=profile_mock
        ),
        patch.object(
            processor,
            "_find_profile_by_customer",
            new_callable=AsyncMock,
            return_value=profile_mock,
        ),
        patch.object(processor, "_find_subscription", new_callable=AsyncMock, return_value=None),
        patch.object(
            processor,
            "_upsert_subscription",
            new_callable=AsyncMock,
            return_value=create_mock_subscription(
                period_start=datetime.fromtimestamp(PERIOD_START, UTC)
            ),
        ),
    ]
    for patcher in patchers:
        patcher.start()
    yield processor
    for patcher in patchers:
        patcher.stop()


def invoice_object(price_id: str, billing_reason: str = "subscription_cycle") -> dict:
    return {
        "id": "in_1",
        "customer": "cus_test123",
        "subscription": "sub_test123",
        "billing_reason": billing_reason,
        "lines": {"data": [{"type": "subscription", "price": {"id": price_id}, "amount": 900}]},
    }


def subscription_object(price_id: str, status: str = "active") -> dict:
    return {
        "id": "sub_test123",
        "customer": "cus_test123",
        "status": status,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "items": {"data": [{"id": "si_1", "price": {"id": price_id}}]},
    }


class TestDispatch:
    """Tests for the process() lifecycle."""

    async def test_duplicate_event_is_skipped(
        self, processor: WebhookProcessor, idempotency: MagicMock, credits: MagicMock
    ) -> None:
        idempotency.check_and_claim_event.return_value = IdempotencyResult(
            is_new=False, existing_status=WebhookEventStatus.COMPLETED
        )
        webhook = make_webhook("invoice.paid", invoice_object(PLANS["starter"].price_id))

        result = await processor.process(webhook)

        assert result.skipped is True
        assert result.reason == "Event already completed"
        credits.apply_renewal.assert_not_awaited()
        idempotency.mark_event_completed.assert_not_awaited()

    async def test_in_flight_duplicate_is_skipped(
        self, processor: WebhookProcessor, idempotency: MagicMock
    ) -> None:
        idempotency.check_and_claim_event.return_value = IdempotencyResult(
            is_new=False, existing_status=WebhookEventStatus.PROCESSING
        )

        result = await processor.process(make_webhook("invoice.paid"))

        assert result.reason == "Event already processing"

    async def test_unhandled_event_is_unrecoverable(
        self, processor: WebhookProcessor, idempotency: MagicMock
    ) -> None:
        webhook = make_webhook("payment_method.attached", event_id="evt_unhandled")

        result = await processor.process(webhook)

        assert result.skipped is False
        assert result.warning == "Unhandled event type: payment_method.attached"
        idempotency.mark_event_unrecoverable.assert_awaited_once_with(
            "evt_unhandled", "payment_method.attached"
        )
        idempotency.mark_event_completed.assert_not_awaited()

    async def test_handler_failure_marks_failed_and_raises(
        self,
        processor: WebhookProcessor,
        idempotency: MagicMock,
        db_session: AsyncMock,
    ) -> None:
        processor._find_profile_by_customer.return_value = None
        webhook = make_webhook(
            "invoice.paid", invoice_object(PLANS["starter"].price_id), event_id="evt_fail"
        )

        with pytest.raises(WebhookProcessingError) as exc_info:
            await processor.process(webhook)

        assert exc_info.value.event_id == "evt_fail"
        db_session.rollback.assert_awaited()
        idempotency.mark_event_failed.assert_awaited_once()
        assert idempotency.mark_event_failed.await_args.args[0] == "evt_fail"
        idempotency.mark_event_completed.assert_not_awaited()

    async def test_completion_failure_propagates(
        self, processor: WebhookProcessor, idempotency: MagicMock
    ) -> None:
        idempotency.mark_event_completed.side_effect = EventStatusUpdateError(
            "evt_1", "completed", 3
        )
        webhook = make_webhook("charge.dispute.created", {"id": "dp_1", "charge": "ch_1"})

        with pytest.raises(EventStatusUpdateError):
            await processor.process(webhook)

        idempotency.mark_event_failed.assert_not_awaited()

    async def test_successful_event_is_completed(
        self, processor: WebhookProcessor, idempotency: MagicMock
    ) -> None:
        webhook = make_webhook("charge.dispute.created", {"id": "dp_1"}, event_id="evt_ok")

        result = await processor.process(webhook)

        assert result.skipped is False
        assert result.warning is None
        idempotency.mark_event_completed.assert_awaited_once_with("evt_ok")


class TestInvoiceHandlers:
    """Tests for invoice.paid and invoice.payment_failed."""

    async def test_invoice_paid_grants_renewal(
        self, processor: WebhookProcessor, credits: MagicMock, profile_mock: MagicMock
    ) -> None:
        starter = PLANS["starter"]
        webhook = make_webhook("invoice.paid", invoice_object(starter.price_id), is_test_mode=True)

        await processor.process(webhook)

        credits.apply_renewal.assert_awaited_once_with(
            profile_mock.id, starter, "invoice_in_1", "Starter monthly credits"
        )
        assert profile_mock.subscription_tier == "starter"

    async def test_invoice_paid_refreshes_subscription_outside_test_mode(
        self, processor: WebhookProcessor, stripe_provider: MagicMock
    ) -> None:
        webhook = make_webhook("invoice.paid", invoice_object(PLANS["hobby"].price_id))

        await processor.process(webhook)

        stripe_provider.retrieve_subscription.assert_awaited_once_with("sub_test123")
        processor._upsert_subscription.assert_awaited_once()

    async def test_proration_invoice_does_not_grant(
        self, processor: WebhookProcessor, credits: MagicMock, idempotency: MagicMock
    ) -> None:
        webhook = make_webhook(
            "invoice.paid",
            invoice_object(PLANS["pro"].price_id, billing_reason="subscription_update"),
        )

        await processor.process(webhook)

        credits.apply_renewal.assert_not_awaited()
        idempotency.mark_event_completed.assert_awaited_once()

    async def test_non_subscription_invoice_is_ignored(
        self, processor: WebhookProcessor, credits: MagicMock
    ) -> None:
        await processor.process(make_webhook("invoice.paid", {"id": "in_2", "customer": "cus_1"}))

        credits.apply_renewal.assert_not_awaited()

    async def test_payment_failed_marks_past_due(
        self, processor: WebhookProcessor, profile_mock: MagicMock
    ) -> None:
        await processor.process(
            make_webhook("invoice.payment_failed", {"id": "in_1", "customer": "cus_test123"})
        )

        assert profile_mock.subscription_status == "past_due"


class TestSubscriptionHandlers:
    """Tests for customer.subscription.* events."""

    async def test_price_change_reconciles_credits(
        self,
        processor: WebhookProcessor,
        credits: MagicMock,
        profile_mock: MagicMock,
        stripe_provider: MagicMock,
    ) -> None:
        hobby, pro = PLANS["hobby"], PLANS["pro"]
        stripe_provider.retrieve_subscription.return_value = create_snapshot(price_id=pro.price_id)
        webhook = make_webhook(
            "customer.subscription.updated",
            subscription_object(pro.price_id),
            previous_attributes={"items": {"data": [{"price": {"id": hobby.price_id}}]}},
        )

        await processor.process(webhook)

        credits.apply_tier_change.assert_awaited_once_with(
            profile_mock.id,
            hobby,
            pro,
            plan_change_reference(
                "sub_test123",
                hobby.price_id,
                pro.price_id,
                datetime.fromtimestamp(PERIOD_START, UTC),
            ),
        )
        assert profile_mock.subscription_tier == "pro"
        assert profile_mock.subscription_status == "active"

    async def test_previous_price_falls_back_to_stored_subscription(
        self, processor: WebhookProcessor, credits: MagicMock
    ) -> None:
        processor._find_subscription.return_value = create_mock_subscription(
            price_id=PLANS["starter"].price_id
        )
        webhook = make_webhook(
            "customer.subscription.updated", subscription_object(PLANS["hobby"].price_id)
        )

        await processor.process(webhook)

        args = credits.apply_tier_change.await_args.args
        assert args[1] is PLANS["starter"]
        assert args[2] is PLANS["hobby"]

    async def test_same_price_does_not_touch_credits(
        self, processor: WebhookProcessor, credits: MagicMock
    ) -> None:
        hobby = PLANS["hobby"]
        webhook = make_webhook(
            "customer.subscription.updated",
            subscription_object(hobby.price_id),
            previous_attributes={"cancel_at_period_end": True},
        )

        await processor.process(webhook)

        credits.apply_tier_change.assert_not_awaited()

    async def test_inactive_subscription_does_not_touch_credits(
        self,
        processor: WebhookProcessor,
        credits: MagicMock,
        profile_mock: MagicMock,
        stripe_provider: MagicMock,
    ) -> None:
        stripe_provider.retrieve_subscription.return_value = create_snapshot(
            price_id=PLANS["pro"].price_id, status="past_due"
        )
        webhook = make_webhook(
            "customer.subscription.updated",
            subscription_object(PLANS["pro"].price_id, status="past_due"),
            previous_attributes={"items": {"data": [{"price": {"id": PLANS["hobby"].price_id}}]}},
        )

        await processor.process(webhook)

        credits.apply_tier_change.assert_not_awaited()
        assert profile_mock.subscription_status == "past_due"

    async def test_unknown_price_fails_the_event(
        self, processor: WebhookProcessor, idempotency: MagicMock
    ) -> None:
        webhook = make_webhook(
            "customer.subscription.updated", subscription_object("price_not_in_catalog")
        )

        with pytest.raises(WebhookProcessingError):
            await processor.process(webhook)

        idempotency.mark_event_failed.assert_awaited_once()

    async def test_unknown_customer_is_acknowledged(
        self, processor: WebhookProcessor, idempotency: MagicMock
    ) -> None:
        processor._find_profile_by_customer.return_value = None
        webhook = make_webhook(
            "customer.subscription.updated", subscription_object(PLANS["pro"].price_id)
        )

        await processor.process(webhook)

        idempotency.mark_event_completed.assert_awaited_once()

    async def test_subscription_deleted_cancels(
        self, processor: WebhookProcessor, profile_mock: MagicMock
    ) -> None:
        subscription = create_mock_subscription()
        processor._find_subscription.return_value = subscription

        await processor.process(
            make_webhook(
                "customer.subscription.deleted",
                subscription_object(PLANS["hobby"].price_id, status="canceled"),
            )
        )

        assert subscription.status == "canceled"
        assert subscription.canceled_at is not None
        assert profile_mock.subscription_status == "canceled"


class TestCheckoutAndRefundHandlers:
    """Tests for checkout.session.completed and charge.refunded."""

    async def test_credit_pack_purchase(
        self, processor: WebhookProcessor, credits: MagicMock, profile_mock: MagicMock
    ) -> None:
        checkout = {
            "id": "cs_1",
            "mode": "payment",
            "payment_status": "paid",
            "customer": "cus_test123",
            "payment_intent": "pi_1",
            "metadata": {"user_id": str(profile_mock.id), "credits": "200"},
        }

        await processor.process(make_webhook("checkout.session.completed", checkout))

        credits.add_purchased_credits.assert_awaited_once_with(
            profile_mock.id, 200, "pi_1", "Purchased 200 credits"
        )

    async def test_credit_pack_purchase_by_pack_key(
        self, processor: WebhookProcessor, credits: MagicMock, profile_mock: MagicMock
    ) -> None:
        checkout = {
            "id": "cs_2",
            "mode": "payment",
            "payment_status": "paid",
            "customer": "cus_test123",
            "metadata": {"user_id": str(profile_mock.id), "pack_key": "large"},
        }

        await processor.process(make_webhook("checkout.session.completed", checkout))

        args = credits.add_purchased_credits.await_args.args
        assert args[1] == 600
        assert args[2] == "session_cs_2"

    async def test_subscription_checkout_grants_first_cycle(
        self, processor: WebhookProcessor, credits: MagicMock, profile_mock: MagicMock
    ) -> None:
        starter = PLANS["starter"]
        checkout = {
            "id": "cs_3",
            "mode": "subscription",
            "payment_status": "paid",
            "customer": "cus_test123",
            "subscription": "sub_test123",
            "invoice": "in_9",
            "metadata": {"user_id": str(profile_mock.id), "price_id": starter.price_id},
        }

        await processor.process(
            make_webhook("checkout.session.completed", checkout, is_test_mode=True)
        )

        credits.apply_renewal.assert_awaited_once()
        assert credits.apply_renewal.await_args.args[2] == "invoice_in_9"
        assert profile_mock.subscription_status == "active"
        assert profile_mock.subscription_tier == "starter"

    async def test_unpaid_checkout_grants_nothing(
        self, processor: WebhookProcessor, credits: MagicMock, profile_mock: MagicMock
    ) -> None:
        checkout = {
            "id": "cs_4",
            "mode": "payment",
            "payment_status": "unpaid",
            "metadata": {"user_id": str(profile_mock.id), "credits": "50"},
        }

        await processor.process(make_webhook("checkout.session.completed", checkout))

        credits.add_purchased_credits.assert_not_awaited()

    async def test_refund_claws_back_invoice_grant(
        self, processor: WebhookProcessor, credits: MagicMock, profile_mock: MagicMock
    ) -> None:
        charge = {
            "id": "ch_1",
            "customer": "cus_test123",
            "invoice": "in_1",
            "amount_refunded": 900,
        }

        await processor.process(make_webhook("charge.refunded", charge))

        args = credits.clawback_reference.await_args.args
        assert args[0] == profile_mock.id
        assert args[1] == "invoice_in_1"

    async def test_refund_of_pack_uses_payment_intent(
        self, processor: WebhookProcessor, credits: MagicMock
    ) -> None:
        charge = {
            "id": "ch_2",
            "customer": "cus_test123",
            "payment_intent": "pi_7",
            "amount_refunded": 499,
        }

        await processor.process(make_webhook("charge.refunded", charge))

        assert credits.clawback_reference.await_args.args[1] == "pi_7"

    async def test_zero_refund_is_ignored(
        self, processor: WebhookProcessor, credits: MagicMock
    ) -> None:
        charge = {"id": "ch_3", "customer": "cus_test123", "amount_refunded": 0}

        await processor.process(make_webhook("charge.refunded", charge))

        credits.clawback_reference.assert_not_awaited()


class TestPayloadHelpers:
    """Tests for invoice and subscription payload helpers."""

    def test_invoice_price_prefers_subscription_line(self) -> None:
        invoice = {
            "lines": {
                "data": [
                    {"type": "invoiceitem", "price": {"id": "price_a"}, "amount": 100},
                    {"type": "subscription", "price": {"id": "price_b"}, "amount": 900},
                ]
            }
        }
        assert invoice_price_id(invoice) == "price_b"

    def test_invoice_price_uses_positive_proration(self) -> None:
        invoice = {
            "lines": {
                "data": [
                    {"proration": True, "amount": -500, "price": {"id": "price_old"}},
                    {"proration": True, "amount": 1500, "price": {"id": "price_new"}},
                ]
            }
        }
        assert invoice_price_id(invoice) == "price_new"

    def test_invoice_price_reads_pricing_details(self) -> None:
        invoice = {"lines": {"data": [{"pricing": {"price_details": {"price": "price_c"}}}]}}
        assert invoice_price_id(invoice) == "price_c"

    def test_invoice_subscription_from_parent(self) -> None:
        invoice = {"parent": {"subscription_details": {"subscription": "sub_9"}}}
        assert invoice_subscription_id(invoice) == "sub_9"

    def test_invoice_subscription_absent(self) -> None:
        assert invoice_subscription_id({"lines": {"data": []}}) is None

    def test_previous_price_from_plan(self) -> None:
        assert previous_price_id({"plan": {"id": "price_old"}}) == "price_old"
        assert previous_price_id(None) is None


@pytest.fixture
def cache_writing_processor(
    db_session: AsyncMock,
    stripe_provider: MagicMock,
    idempotency: MagicMock,
    credits: MagicMock,
    profile_mock: MagicMock,
) -> WebhookProcessor:
    """Processor whose subscription cache writes reach the session."""
    processor = WebhookProcessor(db_session, stripe_provider, idempotency, credits)
    patchers = [
        patch.object(
            processor,
            "_find_profile_by_customer",
            new_callable=AsyncMock,
            return_value=profile_mock,
        ),
        patch.object(processor, "_find_subscription", new_callable=AsyncMock, return_value=None),
    ]
    for patcher in patchers:
        patcher.start()
    yield processor
    for patcher in patchers:
        patcher.stop()


class TestProviderStateWins:
    """The cache follows the provider even when events arrive late or out of order."""

    async def test_late_update_does_not_overwrite_newer_plan(
        self,
        processor: WebhookProcessor,
        credits: MagicMock,
        profile_mock: MagicMock,
        stripe_provider: MagicMock,
    ) -> None:
        starter, pro, business = PLANS["starter"], PLANS["pro"], PLANS["business"]
        processor._find_subscription.return_value = create_mock_subscription(
            price_id=business.price_id
        )
        business_now = create_snapshot(price_id=business.price_id)
        stripe_provider.retrieve_subscription.return_value = business_now
        # starter -> pro, delivered after the pro -> business change already landed
        webhook = make_webhook(
            "customer.subscription.updated",
            subscription_object(pro.price_id),
            previous_attributes={"items": {"data": [{"price": {"id": starter.price_id}}]}},
        )

        await processor.process(webhook)

        processor._upsert_subscription.assert_awaited_once_with(profile_mock.id, business_now)
        assert profile_mock.subscription_tier == "business"
        credits.apply_tier_change.assert_awaited_once_with(
            profile_mock.id,
            starter,
            pro,
            plan_change_reference(
                "sub_test123",
                starter.price_id,
                pro.price_id,
                datetime.fromtimestamp(PERIOD_START, UTC),
            ),
        )

    async def test_late_update_without_previous_price_grants_nothing(
        self,
        processor: WebhookProcessor,
        credits: MagicMock,
        profile_mock: MagicMock,
        stripe_provider: MagicMock,
    ) -> None:
        business = PLANS["business"]
        processor._find_subscription.return_value = create_mock_subscription(
            price_id=business.price_id
        )
        stripe_provider.retrieve_subscription.return_value = create_snapshot(
            price_id=business.price_id
        )
        webhook = make_webhook(
            "customer.subscription.updated", subscription_object(PLANS["pro"].price_id)
        )

        await processor.process(webhook)

        credits.apply_tier_change.assert_not_awaited()
        assert profile_mock.subscription_tier == "business"

    async def test_cache_is_committed_before_credit_write(
        self,
        cache_writing_processor: WebhookProcessor,
        db_session: AsyncMock,
        credits: MagicMock,
        stripe_provider: MagicMock,
    ) -> None:
        hobby, pro = PLANS["hobby"], PLANS["pro"]
        stripe_provider.retrieve_subscription.return_value = create_snapshot(price_id=pro.price_id)
        calls: list[str] = []
        db_session.commit = AsyncMock(side_effect=lambda: calls.append("commit"))

        async def losing_credit_write(*args, **kwargs):
            # A concurrent writer already holds the reference
            calls.append("credit_write")
            await db_session.rollback()
            calls.append("rollback")
            return None

        credits.apply_tier_change = AsyncMock(side_effect=losing_credit_write)
        webhook = make_webhook(
            "customer.subscription.updated",
            subscription_object(pro.price_id),
            previous_attributes={"items": {"data": [{"price": {"id": hobby.price_id}}]}},
        )

        await cache_writing_processor.process(webhook)

        assert calls[:3] == ["commit", "credit_write", "rollback"]
        cached = db_session.add.call_args.args[0]
        assert cached.id == "sub_test123"
        assert cached.price_id == pro.price_id
        assert cached.status == "active"

    async def test_invoice_refresh_is_committed_before_renewal(
        self,
        cache_writing_processor: WebhookProcessor,
        db_session: AsyncMock,
        credits: MagicMock,
    ) -> None:
        calls: list[str] = []
        db_session.commit = AsyncMock(side_effect=lambda: calls.append("commit"))
        credits.apply_renewal = AsyncMock(side_effect=lambda *a: calls.append("renewal"))

        await cache_writing_processor.process(
            make_webhook("invoice.paid", invoice_object(PLANS["hobby"].price_id))
        )

        assert calls.index("commit") < calls.index("renewal")


class TestTrials:
    """Trial credits, for plans that offer a trial."""

    @pytest.fixture
    def trial_pro(self):
        plan = replace(PLANS["pro"], trial_enabled=True, trial_credits=100)
        with patch.dict(PLANS, {"pro": plan}):
            yield plan

    def trialing_object(self, price_id: str) -> dict:
        subscription = subscription_object(price_id, status="trialing")
        subscription["trial_end"] = PERIOD_START + 14 * 24 * 3600
        return subscription

    async def test_trial_start_grants_trial_allowance(
        self,
        processor: WebhookProcessor,
        credits: MagicMock,
        profile_mock: MagicMock,
        trial_pro,
    ) -> None:
        webhook = make_webhook(
            "customer.subscription.created",
            self.trialing_object(trial_pro.price_id),
            is_test_mode=True,
        )

        await processor.process(webhook)

        credits.add_subscription_credits.assert_awaited_once_with(
            profile_mock.id, 100, "trial_sub_test123", "Trial credits - Professional plan"
        )
        assert profile_mock.subscription_status == "trialing"

    async def test_trial_conversion_tops_up_to_full_cycle(
        self,
        processor: WebhookProcessor,
        credits: MagicMock,
        profile_mock: MagicMock,
        trial_pro,
    ) -> None:
        processor._find_subscription.return_value = create_mock_subscription(
            status="trialing", price_id=trial_pro.price_id
        )
        credits.get_balance.return_value = CreditBalance(
            subscription_credits=60, purchased_credits=40
        )
        webhook = make_webhook(
            "customer.subscription.updated",
            subscription_object(trial_pro.price_id),
            previous_attributes={"status": "trialing"},
            is_test_mode=True,
        )

        await processor.process(webhook)

        credits.add_subscription_credits.assert_awaited_once_with(
            profile_mock.id,
            900,
            "trial_conversion_sub_test123",
            "Trial conversion - Professional plan",
        )
        credits.apply_tier_change.assert_not_awaited()

    async def test_plans_without_trial_grant_nothing_on_trialing(
        self, processor: WebhookProcessor, credits: MagicMock
    ) -> None:
        webhook = make_webhook(
            "customer.subscription.created",
            self.trialing_object(PLANS["pro"].price_id),
            is_test_mode=True,
        )

        await processor.process(webhook)

        credits.add_subscription_credits.assert_not_awaited()

    async def test_trial_will_end_is_acknowledged(
        self, processor: WebhookProcessor, credits: MagicMock, idempotency: MagicMock
    ) -> None:
        trial_end = datetime.now(UTC) + timedelta(days=3)
        subscription = subscription_object(PLANS["pro"].price_id, status="trialing")
        subscription["trial_end"] = int(trial_end.timestamp())

        result = await processor.process(
            make_webhook("customer.subscription.trial_will_end", subscription)
        )

        assert result.warning is None
        credits.add_subscription_credits.assert_not_awaited()
        idempotency.mark_event_completed.assert_awaited_once()

    async def test_trial_will_end_for_unknown_customer_fails(
        self, processor: WebhookProcessor, idempotency: MagicMock
    ) -> None:
        processor._find_profile_by_customer.return_value = None
        subscription = subscription_object(PLANS["pro"].price_id, status="trialing")

        with pytest.raises(WebhookProcessingError):
            await processor.process(
                make_webhook("customer.subscription.trial_will_end", subscription)
            )

        idempotency.mark_event_failed.assert_awaited_once()

    async def test_trial_will_end_for_unknown_customer_in_test_mode(
        self, processor: WebhookProcessor, idempotency: MagicMock
    ) -> None:
        processor._find_profile_by_customer.return_value = None
        subscription = subscription_object(PLANS["pro"].price_id, status="trialing")

        await processor.process(
            make_webhook("customer.subscription.trial_will_end", subscription, is_test_mode=True)
        )

        idempotency.mark_event_completed.assert_awaited_once()


class TestScheduleAndInvoiceRefund:
    """Tests for subscription_schedule.completed and invoice.payment_refunded."""

    def schedule_object(self, price_id: str) -> dict:
        return {
            "id": "sub_sched_1",
            "subscription": "sub_test123",
            "phases": [
                {"items": [{"price": PLANS["starter"].price_id}]},
                {"items": [{"price": price_id}]},
            ],
        }

    async def test_completed_schedule_applies_final_plan(
        self,
        processor: WebhookProcessor,
        credits: MagicMock,
        profile_mock: MagicMock,
        stripe_provider: MagicMock,
    ) -> None:
        starter, pro = PLANS["starter"], PLANS["pro"]
        processor._find_subscription.return_value = create_mock_subscription(
            price_id=starter.price_id, user_id=profile_mock.id
        )
        stripe_provider.retrieve_subscription.return_value = create_snapshot(price_id=pro.price_id)

        await processor.process(
            make_webhook("subscription_schedule.completed", self.schedule_object(pro.price_id))
        )

        credits.apply_tier_change.assert_awaited_once_with(
            profile_mock.id,
            starter,
            pro,
            plan_change_reference(
                "sub_test123",
                starter.price_id,
                pro.price_id,
                datetime.fromtimestamp(PERIOD_START, UTC),
            ),
        )
        assert profile_mock.subscription_tier == "pro"

    async def test_completed_schedule_in_test_mode_reads_final_phase(
        self, processor: WebhookProcessor, credits: MagicMock, stripe_provider: MagicMock
    ) -> None:
        processor._find_subscription.return_value = create_mock_subscription(
            price_id=PLANS["starter"].price_id
        )

        await processor.process(
            make_webhook(
                "subscription_schedule.completed",
                self.schedule_object(PLANS["business"].price_id),
                is_test_mode=True,
            )
        )

        stripe_provider.retrieve_subscription.assert_not_awaited()
        assert credits.apply_tier_change.await_args.args[2] is PLANS["business"]

    async def test_schedule_for_unknown_subscription_is_acknowledged(
        self, processor: WebhookProcessor, credits: MagicMock, idempotency: MagicMock
    ) -> None:
        await processor.process(
            make_webhook(
                "subscription_schedule.completed", self.schedule_object(PLANS["pro"].price_id)
            )
        )

        credits.apply_tier_change.assert_not_awaited()
        idempotency.mark_event_completed.assert_awaited_once()

    async def test_invoice_refund_claws_back_invoice_grant(
        self, processor: WebhookProcessor, credits: MagicMock, profile_mock: MagicMock
    ) -> None:
        await processor.process(
            make_webhook("invoice.payment_refunded", {"id": "in_5", "customer": "cus_test123"})
        )

        credits.clawback_reference.assert_awaited_once_with(
            profile_mock.id, "invoice_in_5", "Refund for invoice in_5"
        )


class TestDirectDispatch:
    """dispatch() runs an already-claimed event without claiming it again."""

    async def test_dispatch_skips_claim(
        self, processor: WebhookProcessor, idempotency: MagicMock
    ) -> None:
        webhook = make_webhook("charge.dispute.created", {"id": "dp_1"}, event_id="evt_retry")

        result = await processor.dispatch(webhook)

        assert result.event_id == "evt_retry"
        idempotency.check_and_claim_event.assert_not_awaited()
        idempotency.mark_event_completed.assert_awaited_once_with("evt_retry")


class TestRepeatedDelivery:
    """Replays through the real idempotency and credit services grant exactly once."""

    @pytest.fixture
    def wired_processor(self, db_session: AsyncMock, stripe_provider: MagicMock):
        store: dict[str, WebhookEvent] = {}
        ledger = InMemoryLedger()
        profile = create_mock_profile(stripe_customer_id="cus_test123")

        def add(obj: object) -> None:
            if isinstance(obj, WebhookEvent):
                store[obj.event_id] = obj
            ledger.add(obj)

        db_session.add = MagicMock(side_effect=add)
        db_session.get = AsyncMock(return_value=profile)

        idempotency = IdempotencyService(db_session, retry_attempts=1, retry_backoff_seconds=0)
        credits = CreditService(db_session)
        processor = WebhookProcessor(db_session, stripe_provider, idempotency, credits)
        patchers = [
            patch.object(idempotency, "get_event", side_effect=lambda event_id: store.get(event_id)),
            patch.object(credits, "_find_transaction", side_effect=ledger.find),
            patch.object(credits, "_lock_profile", new_callable=AsyncMock, return_value=profile),
            patch.object(
                processor,
                "_find_profile_by_customer",
                new_callable=AsyncMock,
                return_value=profile,
            ),
        ]
        for patcher in patchers:
            patcher.start()
        yield processor, store, ledger, profile
        for patcher in patchers:
            patcher.stop()

    @pytest.mark.parametrize("deliveries", [2, 5])
    async def test_same_event_redelivered(self, wired_processor, deliveries: int) -> None:
        processor, store, ledger, profile = wired_processor
        webhook = make_webhook(
            "invoice.paid",
            invoice_object(PLANS["hobby"].price_id),
            event_id="evt_invoice",
            is_test_mode=True,
        )

        results = [await processor.process(webhook) for _ in range(deliveries)]

        assert [r.skipped for r in results] == [False] + [True] * (deliveries - 1)
        assert list(store) == ["evt_invoice"]
        assert len(ledger.of_type(TransactionType.SUBSCRIPTION)) == 1
        assert profile.subscription_credits_balance == 200

    async def test_distinct_events_for_same_invoice(self, wired_processor) -> None:
        processor, store, ledger, profile = wired_processor
        for event_id in ("evt_a", "evt_b", "evt_c"):
            await processor.process(
                make_webhook(
                    "invoice.paid",
                    invoice_object(PLANS["hobby"].price_id),
                    event_id=event_id,
                    is_test_mode=True,
                )
            )

        assert sorted(store) == ["evt_a", "evt_b", "evt_c"]
        grants = ledger.of_type(TransactionType.SUBSCRIPTION)
        assert len(grants) == 1
        assert grants[0].reference_id == "invoice_in_1"
        assert profile.subscription_credits_balance == 200
