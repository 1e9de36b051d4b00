"""
Admin API routes for support operations.

Protected by admin JWT. Every credit correction goes through CreditService
so it always lands in the transaction log.
"""

from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pixelperfect_billing.api.dependencies import AdminIdentity, get_stripe_provider, require_admin
from pixelperfect_billing.config import settings
from pixelperfect_billing.db.session import get_read_db, get_write_db
from pixelperfect_billing.exceptions import AdjustmentRejectedError, ProfileNotFoundError
from pixelperfect_billing.models.api import (
    CreditAdjustmentRequest,
    CreditAdjustmentResponse,
    CreditTransactionResponse,
    ExpirationCheckResponse,
    StaleEventSweepResponse,
    WebhookEventListResponse,
    WebhookEventResponse,
    WebhookEventStatus,
    WebhookRecoveryResponse,
)
from pixelperfect_billing.services.credits import CreditService
from pixelperfect_billing.services.idempotency import IdempotencyService
from pixelperfect_billing.services.reconciliation import ReconciliationService
from pixelperfect_billing.services.stripe_provider import StripeProvider

logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/credits/adjust", response_model=CreditAdjustmentResponse)
async def adjust_credits(
    request: CreditAdjustmentRequest,
    admin: AdminIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> CreditAdjustmentResponse:
    """
    Apply a signed manual credit correction.

    Positive amounts are added to purchased credits; negative amounts are
    removed (subscription credits first) and floored at zero.
    """
    service = CreditService(db)
    try:
        result = await service.adjust_credits(
            user_id=request.user_id,
            amount=request.amount,
            reason=request.reason,
            admin_id=admin.admin_id,
        )
    except ProfileNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found") from exc
    except AdjustmentRejectedError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.reason) from exc

    logger.info(
        "admin_credit_adjustment",
        admin_id=admin.admin_id,
        user_id=str(request.user_id),
        amount_requested=request.amount,
        amount_applied=result.amount_applied,
    )

    return CreditAdjustmentResponse(
        user_id=result.user_id,
        amount_requested=result.amount_requested,
        amount_applied=result.amount_applied,
        subscription_credits=result.balance.subscription_credits,
        purchased_credits=result.balance.purchased_credits,
        new_balance=result.balance.total,
        transaction_id=result.transaction_id,
    )


@router.get("/users/{user_id}/transactions", response_model=list[CreditTransactionResponse])
async def list_user_transactions(
    user_id: UUID,
    limit: int = Query(50, ge=1, le=500),
    admin: AdminIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[CreditTransactionResponse]:
    """Most recent ledger entries for a user."""
    transactions = await CreditService(db).list_transactions(user_id, limit=limit)
    return [CreditTransactionResponse.model_validate(t) for t in transactions]


@router.get("/webhook-events", response_model=WebhookEventListResponse)
async def list_webhook_events(
    event_status: WebhookEventStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    admin: AdminIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> WebhookEventListResponse:
    """Recent webhook events, optionally filtered by status."""
    events = await IdempotencyService(db).list_events(status=event_status, limit=limit)
    return WebhookEventListResponse(
        events=[WebhookEventResponse.model_validate(e) for e in events],
        count=len(events),
    )


@router.post("/webhook-events/sweep", response_model=StaleEventSweepResponse)
async def sweep_stale_webhook_events(
    older_than_seconds: int = Query(
        settings.webhook_processing_timeout_seconds, ge=60, le=7 * 24 * 3600
    ),
    admin: AdminIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> StaleEventSweepResponse:
    """Move events stuck in processing to failed."""
    swept = await IdempotencyService(db).sweep_stale_processing(
        timedelta(seconds=older_than_seconds)
    )
    logger.info("admin_stale_events_swept", admin_id=admin.admin_id, swept=swept)
    return StaleEventSweepResponse(swept=swept, older_than_seconds=older_than_seconds)


@router.post("/webhook-events/recover", response_model=WebhookRecoveryResponse)
async def recover_failed_webhook_events(
    limit: int = Query(settings.webhook_recovery_batch_size, ge=1, le=500),
    admin: AdminIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
    provider: StripeProvider = Depends(get_stripe_provider),
) -> WebhookRecoveryResponse:
    """Re-fetch failed events from Stripe and run them through the handlers again."""
    result = await ReconciliationService(db, provider).recover_failed_events(limit)
    logger.info(
        "admin_webhook_recovery_run",
        admin_id=admin.admin_id,
        processed=result.processed,
        recovered=result.recovered,
    )
    return WebhookRecoveryResponse(
        processed=result.processed,
        recovered=result.recovered,
        failed=result.failed,
        unrecoverable=result.unrecoverable,
    )


@router.post("/webhook-events/{event_id}/reset", response_model=WebhookEventResponse)
async def reset_webhook_event(
    event_id: str,
    admin: AdminIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> WebhookEventResponse:
    """
    Give a failed or unrecoverable event a fresh set of recovery attempts.

    404 when the event does not exist or is not in a resettable state.
    """
    service = IdempotencyService(db)
    if not await service.reset_event(event_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No failed or unrecoverable event with that id",
        )

    event = await service.get_event(event_id)
    logger.info("admin_webhook_event_reset", admin_id=admin.admin_id, event_id=event_id)
    return WebhookEventResponse.model_validate(event)


@router.post("/subscriptions/check-expirations", response_model=ExpirationCheckResponse)
async def check_expired_subscriptions(
    limit: int = Query(settings.expiration_check_batch_size, ge=1, le=1000),
    admin: AdminIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
    provider: StripeProvider = Depends(get_stripe_provider),
) -> ExpirationCheckResponse:
    """Re-read active subscriptions whose billing period has ended."""
    result = await ReconciliationService(db, provider).check_expired_subscriptions(limit)
    logger.info(
        "admin_expiration_check_run",
        admin_id=admin.admin_id,
        processed=result.processed,
        fixed=result.fixed,
    )
    return ExpirationCheckResponse(processed=result.processed, fixed=result.fixed)
