"""
Database Session Management - Async SQLAlchemy session factory.

Write sessions go to the primary; read-only listings may go to a replica.

Services own their transactions: every state transition, credit write and
subscription upsert commits explicitly, so a session never carries an open
unit of work across service calls. The helpers here only guarantee that an
error leaves nothing half-written behind: whatever was not yet committed is
rolled back before the session is returned to the pool.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from structlog import get_logger

from pixelperfect_billing.config import settings
from pixelperfect_billing.observability.logging import log_context
from pixelperfect_billing.observability.tracing import instrument_sqlalchemy

logger = get_logger(__name__)

_engines: dict[str, AsyncEngine] = {}
_session_factories: dict[str, async_sessionmaker[AsyncSession]] = {}


def _engine_for(role: str) -> AsyncEngine:
    """Lazily create the engine for "write" (primary) or "read" (replica)."""
    engine = _engines.get(role)
    if engine is None:
        url = settings.database_url if role == "write" else settings.read_database_url
        engine = create_async_engine(
            url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            echo=settings.log_level == "DEBUG",
        )
        instrument_sqlalchemy(engine)
        _engines[role] = engine
    return engine


def _factory_for(role: str) -> async_sessionmaker[AsyncSession]:
    factory = _session_factories.get(role)
    if factory is None:
        # Rows stay readable after the per-step commits services make
        factory = async_sessionmaker(
            _engine_for(role), class_=AsyncSession, expire_on_commit=False
        )
        _session_factories[role] = factory
    return factory


async def _rollback_quietly(session: AsyncSession) -> None:
    try:
        await session.rollback()
    except Exception as exc:
        logger.error("session_rollback_failed", error=str(exc))


@asynccontextmanager
async def billing_job_session(job: str) -> AsyncIterator[AsyncSession]:
    """
    Write session for a reconciliation job run outside a request.

    Every log line inside the block carries the job name, and an exception
    rolls back the uncommitted remainder before it propagates.

    Usage:
        async with billing_job_session("webhook_recovery") as session:
            result = await ReconciliationService(session, provider).recover_failed_events()
    """
    with log_context(job=job):
        async with _factory_for("write")() as session:
            try:
                yield session
            except Exception:
                logger.error("billing_job_aborted", exc_info=True)
                await _rollback_quietly(session)
                raise


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for write database session.

    Usage:
        @router.post("/webhooks/stripe")
        async def stripe_webhook(db: AsyncSession = Depends(get_write_db)):
            ...
    """
    async with _factory_for("write")() as session:
        try:
            yield session
        except Exception:
            await _rollback_quietly(session)
            raise


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for read-only listings (replica when configured)."""
    async with _factory_for("read")() as session:
        yield session


async def close_engines() -> None:
    """Dispose every engine (graceful shutdown, end of a script run)."""
    for role, engine in list(_engines.items()):
        await engine.dispose()
        del _engines[role]
        _session_factories.pop(role, None)
