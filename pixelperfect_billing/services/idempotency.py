"""
Webhook Idempotency Service - at-most-once processing per provider event.

State machine (enforced with conditional updates):
    processing -> completed | failed | unrecoverable
    failed -> processing        (recovery retry, bounded by max_retries)
    failed -> unrecoverable     (retries exhausted)
    failed | unrecoverable -> failed    (operator reset)

The unique event_id on webhook_events is the only concurrency primitive:
whichever request inserts the row owns the event.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pixelperfect_billing.config import settings
from pixelperfect_billing.db.models import WebhookEvent
from pixelperfect_billing.exceptions import EventStatusUpdateError
from pixelperfect_billing.models.api import WebhookEventStatus
from pixelperfect_billing.models.domain import IdempotencyResult
from pixelperfect_billing.observability.metrics import metrics

logger = get_logger(__name__)

UNIQUE_VIOLATION = "23505"
MAX_ERROR_MESSAGE_LENGTH = 2000
STALE_PROCESSING_MESSAGE = "Processing timed out"


def is_unique_violation(exc: IntegrityError) -> bool:
    """True when the wrapped driver error is a PostgreSQL unique violation."""
    orig = exc.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if candidate is None:
            continue
        code = getattr(candidate, "pgcode", None) or getattr(candidate, "sqlstate", None)
        if code == UNIQUE_VIOLATION:
            return True
    return False


class IdempotencyService:
    """Claims webhook events and records their terminal status."""

    def __init__(
        self,
        session: AsyncSession,
        retry_attempts: int | None = None,
        retry_backoff_seconds: float | None = None,
        max_retries: int | None = None,
    ) -> None:
        self.session = session
        self.max_retries = (
            max_retries if max_retries is not None else settings.webhook_recovery_max_retries
        )
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None else settings.store_retry_attempts
        )
        self.retry_backoff_seconds = (
            retry_backoff_seconds
            if retry_backoff_seconds is not None
            else settings.store_retry_backoff_seconds
        )

    async def check_and_claim_event(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
    ) -> IdempotencyResult:
        """
        Claim an event for processing.

        Returns is_new=True only for the request whose insert wins. A unique
        violation means a concurrent delivery already owns the event; that is
        reported as is_new=False with status processing. Any other store error
        propagates.
        """
        existing = await self.get_event(event_id)
        if existing is not None:
            logger.info(
                "webhook_event_already_seen",
                event_id=event_id,
                event_type=event_type,
                status=existing.status,
            )
            return IdempotencyResult(
                is_new=False, existing_status=WebhookEventStatus(existing.status)
            )

        event = WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            status=WebhookEventStatus.PROCESSING.value,
            payload=payload,
        )
        self.session.add(event)

        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            if not is_unique_violation(exc):
                raise
            logger.info(
                "webhook_event_claim_lost_race",
                event_id=event_id,
                event_type=event_type,
            )
            return IdempotencyResult(
                is_new=False, existing_status=WebhookEventStatus.PROCESSING
            )

        logger.info("webhook_event_claimed", event_id=event_id, event_type=event_type)
        return IdempotencyResult(is_new=True)

    async def mark_event_completed(self, event_id: str) -> None:
        """
        Move an event to completed, retrying transient store errors.

        Raises:
            EventStatusUpdateError: When every attempt fails. Callers must turn
                this into a retriable response so the provider redelivers.
        """
        last_error: SQLAlchemyError | None = None

        for attempt in range(self.retry_attempts):
            try:
                await self._transition(event_id, WebhookEventStatus.COMPLETED)
                return
            except SQLAlchemyError as exc:
                last_error = exc
                metrics.record_status_update_failure(WebhookEventStatus.COMPLETED.value)
                logger.warning(
                    "webhook_event_mark_completed_retry",
                    event_id=event_id,
                    attempt=attempt + 1,
                    max_attempts=self.retry_attempts,
                    error=str(exc),
                )
                await self._safe_rollback()
                if attempt + 1 < self.retry_attempts:
                    await self._sleep_backoff(attempt)

        logger.error(
            "webhook_event_mark_completed_failed",
            event_id=event_id,
            attempts=self.retry_attempts,
            error=str(last_error),
        )
        raise EventStatusUpdateError(
            event_id, WebhookEventStatus.COMPLETED.value, self.retry_attempts
        ) from last_error

    async def mark_event_failed(self, event_id: str, error_message: str) -> None:
        """Best-effort: record a handler failure. Store errors are logged only."""
        try:
            await self._transition(
                event_id,
                WebhookEventStatus.FAILED,
                error_message=error_message[:MAX_ERROR_MESSAGE_LENGTH],
            )
        except SQLAlchemyError as exc:
            metrics.record_status_update_failure(WebhookEventStatus.FAILED.value)
            logger.error(
                "webhook_event_mark_failed_error",
                event_id=event_id,
                original_error=error_message[:200],
                error=str(exc),
            )
            await self._safe_rollback()

    async def mark_event_unrecoverable(
        self, event_id: str, event_type: str, reason: str | None = None
    ) -> None:
        """Best-effort: record that the event can never be processed (no handler by default)."""
        try:
            await self._transition(
                event_id,
                WebhookEventStatus.UNRECOVERABLE,
                error_message=reason or f"Unhandled event type: {event_type}",
            )
        except SQLAlchemyError as exc:
            metrics.record_status_update_failure(WebhookEventStatus.UNRECOVERABLE.value)
            logger.error(
                "webhook_event_mark_unrecoverable_error",
                event_id=event_id,
                event_type=event_type,
                error=str(exc),
            )
            await self._safe_rollback()

    async def sweep_stale_processing(self, older_than: timedelta | None = None) -> int:
        """
        Fail events stuck in processing (e.g. the worker crashed mid-handler).

        Returns the number of events moved to failed, where the recovery job
        picks them up. The sweep itself never re-runs handlers.
        """
        age = older_than or timedelta(seconds=settings.webhook_processing_timeout_seconds)
        now = datetime.now(UTC)
        cutoff = now - age

        result = await self.session.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.PROCESSING.value,
                WebhookEvent.created_at < cutoff,
            )
            .values(
                status=WebhookEventStatus.FAILED.value,
                error_message=STALE_PROCESSING_MESSAGE,
                completed_at=now,
                updated_at=now,
            )
        )
        await self.session.commit()

        swept = result.rowcount or 0
        if swept:
            metrics.stale_events_swept_total.inc(swept)
            logger.warning("stale_webhook_events_swept", count=swept, cutoff=cutoff.isoformat())
        else:
            logger.info("stale_webhook_events_none", cutoff=cutoff.isoformat())
        return swept

    async def get_event(self, event_id: str) -> WebhookEvent | None:
        stmt = select(WebhookEvent).where(WebhookEvent.event_id == event_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_events(
        self, status: WebhookEventStatus | None = None, limit: int = 50
    ) -> list[WebhookEvent]:
        stmt = select(WebhookEvent).order_by(WebhookEvent.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(WebhookEvent.status == status.value)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ========================================================================
    # Recovery of failed events
    # ========================================================================

    async def list_recoverable_events(self, limit: int | None = None) -> list[WebhookEvent]:
        """Failed events still eligible for a retry, oldest first."""
        stmt = (
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.FAILED.value,
                WebhookEvent.recoverable.is_(True),
                WebhookEvent.retry_count < self.max_retries,
            )
            .order_by(WebhookEvent.created_at.asc())
            .limit(limit or settings.webhook_recovery_batch_size)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def claim_for_retry(self, event_id: str) -> bool:
        """
        Move a failed event back to processing and count the attempt.

        Conditional on the event still being failed and under the retry
        limit, so two recovery runs never reprocess the same event.
        """
        now = datetime.now(UTC)
        result = await self.session.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.event_id == event_id,
                WebhookEvent.status == WebhookEventStatus.FAILED.value,
                WebhookEvent.recoverable.is_(True),
                WebhookEvent.retry_count < self.max_retries,
            )
            .values(
                status=WebhookEventStatus.PROCESSING.value,
                retry_count=WebhookEvent.retry_count + 1,
                last_retry_at=now,
                completed_at=None,
                updated_at=now,
            )
        )
        await self.session.commit()

        if not result.rowcount:
            logger.info("webhook_event_retry_claim_lost", event_id=event_id)
            return False

        logger.info("webhook_event_retry_claimed", event_id=event_id)
        return True

    async def retire_if_exhausted(self, event_id: str) -> bool:
        """Give up on a failed event whose retries are spent. Returns True if retired."""
        now = datetime.now(UTC)
        result = await self.session.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.event_id == event_id,
                WebhookEvent.status == WebhookEventStatus.FAILED.value,
                WebhookEvent.retry_count >= self.max_retries,
            )
            .values(
                status=WebhookEventStatus.UNRECOVERABLE.value,
                recoverable=False,
                updated_at=now,
            )
        )
        await self.session.commit()

        if not result.rowcount:
            return False

        logger.error(
            "webhook_event_retries_exhausted", event_id=event_id, max_retries=self.max_retries
        )
        return True

    async def reset_event(self, event_id: str) -> bool:
        """
        Operator reset: make a failed or unrecoverable event eligible again.

        Clears the retry count so the recovery job gets a fresh set of
        attempts. Completed and processing events are never touched.
        """
        now = datetime.now(UTC)
        result = await self.session.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.event_id == event_id,
                WebhookEvent.status.in_(
                    [WebhookEventStatus.FAILED.value, WebhookEventStatus.UNRECOVERABLE.value]
                ),
            )
            .values(
                status=WebhookEventStatus.FAILED.value,
                retry_count=0,
                recoverable=True,
                updated_at=now,
            )
        )
        await self.session.commit()

        reset = bool(result.rowcount)
        logger.info("webhook_event_reset", event_id=event_id, reset=reset)
        return reset

    # ========================================================================
    # Internals
    # ========================================================================

    async def _transition(
        self,
        event_id: str,
        status: WebhookEventStatus,
        error_message: str | None = None,
    ) -> bool:
        """Conditionally move a processing event to a terminal status."""
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "status": status.value,
            "error_message": error_message,
            "completed_at": now,
            "updated_at": now,
        }
        if status is WebhookEventStatus.UNRECOVERABLE:
            values["recoverable"] = False

        result = await self.session.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.event_id == event_id,
                WebhookEvent.status == WebhookEventStatus.PROCESSING.value,
            )
            .values(**values)
        )
        await self.session.commit()

        if not result.rowcount:
            logger.warning(
                "webhook_event_transition_ignored",
                event_id=event_id,
                target_status=status.value,
            )
            return False

        logger.info("webhook_event_status_updated", event_id=event_id, status=status.value)
        return True

    async def _safe_rollback(self) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError as exc:
            logger.error("session_rollback_failed", error=str(exc))

    async def _sleep_backoff(self, attempt: int) -> None:
        """Exponential backoff before the next store attempt."""
        delay = self.retry_backoff_seconds * (2**attempt)
        if delay > 0:
            await asyncio.sleep(delay)
