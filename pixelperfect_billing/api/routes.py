"""
API Routes - Stripe webhooks, subscription changes and credit balance.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pixelperfect_billing.api.dependencies import (
    UserIdentity,
    get_current_user,
    get_optional_user,
    get_stripe_provider,
)
from pixelperfect_billing.db.session import get_read_db, get_write_db
from pixelperfect_billing.exceptions import (
    EventStatusUpdateError,
    ProfileNotFoundError,
    SubscriptionChangeError,
    WebhookConfigurationError,
    WebhookProcessingError,
    WebhookVerificationError,
)
from pixelperfect_billing.models.api import (
    ChangeErrorCode,
    CreditBalanceResponse,
    ErrorDetail,
    ErrorResponse,
    SubscriptionChangeData,
    SubscriptionChangeRequest,
    SubscriptionChangeResponse,
    WebhookAckResponse,
)
from pixelperfect_billing.observability.metrics import metrics
from pixelperfect_billing.services.credits import CreditService
from pixelperfect_billing.services.stripe_provider import StripeProvider
from pixelperfect_billing.services.subscription_change import SubscriptionChangeService
from pixelperfect_billing.services.webhook_processor import WebhookProcessor

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["billing"])


def _error_response(code: ChangeErrorCode, message: str, status_code: int) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# ============================================================================
# Stripe Webhooks
# ============================================================================


@router.post(
    "/webhooks/stripe",
    response_model=WebhookAckResponse,
    response_model_exclude_none=True,
)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    provider: StripeProvider = Depends(get_stripe_provider),
) -> WebhookAckResponse:
    """
    Handle Stripe webhook events.

    200 acknowledges (including duplicates and unhandled types); 401 rejects
    unverifiable deliveries; 500 asks Stripe to retry.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        webhook = await provider.verify_webhook(payload, signature)
    except WebhookConfigurationError as exc:
        metrics.record_error(type(exc).__name__, "stripe_webhook")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook verification is misconfigured",
        ) from exc
    except WebhookVerificationError as exc:
        metrics.record_error(type(exc).__name__, "stripe_webhook")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        ) from exc

    logger.info(
        "stripe_webhook_received",
        event_id=webhook.event_id,
        event_type=webhook.event_type,
        kind=webhook.kind.value,
    )

    processor = WebhookProcessor(db, provider)
    try:
        result = await processor.process(webhook)
    except WebhookProcessingError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc
    except EventStatusUpdateError as exc:
        metrics.record_error(type(exc).__name__, "stripe_webhook")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record webhook completion",
        ) from exc

    return WebhookAckResponse(
        received=True,
        skipped=True if result.skipped else None,
        reason=result.reason,
        warning=result.warning,
    )


# ============================================================================
# Subscription Change
# ============================================================================


@router.post(
    "/subscription/change",
    responses={
        200: {"model": SubscriptionChangeResponse},
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def change_subscription(
    request: Request,
    user: UserIdentity | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_write_db),
    provider: StripeProvider = Depends(get_stripe_provider),
) -> JSONResponse:
    """
    Change the caller's subscription plan immediately, with proration.

    Body: {"targetPriceId": "price_..."}
    """
    if user is None:
        return _error_response(ChangeErrorCode.UNAUTHORIZED, "Authentication required", 401)

    try:
        body = await request.json()
    except ValueError:
        return _error_response(ChangeErrorCode.INVALID_JSON, "Invalid JSON in request body", 400)

    try:
        change_request = SubscriptionChangeRequest.model_validate(body)
    except ValidationError:
        return _error_response(ChangeErrorCode.MISSING_PRICE_ID, "targetPriceId is required", 400)

    service = SubscriptionChangeService(db, provider)
    try:
        result = await service.change_plan(user.user_id, change_request.target_price_id)
    except SubscriptionChangeError as exc:
        logger.info(
            "subscription_change_rejected",
            user_id=str(user.user_id),
            code=exc.code.value,
            status_code=exc.status_code,
        )
        return _error_response(exc.code, exc.message, exc.status_code)
    except Exception as exc:
        logger.error(
            "subscription_change_unexpected_error",
            user_id=str(user.user_id),
            error=str(exc),
            exc_info=True,
        )
        metrics.record_error(type(exc).__name__, "subscription_change")
        return _error_response(ChangeErrorCode.INTERNAL_ERROR, "Internal server error", 500)

    response = SubscriptionChangeResponse(
        data=SubscriptionChangeData(
            subscription_id=result.subscription_id,
            status=result.status,
            new_price_id=result.new_price_id,
            credits_added=result.credits_added,
            effective_immediately=result.effective_immediately,
            current_period_start=result.current_period_start,
            current_period_end=result.current_period_end,
        )
    )
    return JSONResponse(status_code=200, content=response.model_dump(mode="json"))


# ============================================================================
# Credits
# ============================================================================


@router.get("/credits/balance", response_model=CreditBalanceResponse)
async def get_credit_balance(
    user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> CreditBalanceResponse:
    """Current credit pools for the authenticated user."""
    service = CreditService(db)
    try:
        profile = await service.get_profile(user.user_id)
    except ProfileNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found") from exc

    subscription_credits = profile.subscription_credits_balance
    purchased_credits = profile.purchased_credits_balance
    return CreditBalanceResponse(
        user_id=profile.id,
        subscription_credits=subscription_credits,
        purchased_credits=purchased_credits,
        total_credits=subscription_credits + purchased_credits,
        subscription_tier=profile.subscription_tier,
        subscription_status=profile.subscription_status,
    )
