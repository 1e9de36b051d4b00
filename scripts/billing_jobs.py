#!/usr/bin/env python3
"""
Billing Reconciliation Jobs

Periodic jobs that bring the store back in line with Stripe:

    sweep               Move webhook events stuck in 'processing' to 'failed'
    recover             Re-fetch failed webhook events from Stripe and re-run them
    check-expirations   Re-read active subscriptions whose period has ended

Usage:
    python scripts/billing_jobs.py sweep --older-than 3600
    python scripts/billing_jobs.py recover --limit 50
    python scripts/billing_jobs.py check-expirations
    python scripts/billing_jobs.py recover --loop --interval 900
"""

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable
from datetime import timedelta

import structlog

from pixelperfect_billing.api.dependencies import get_stripe_provider
from pixelperfect_billing.config import settings
from pixelperfect_billing.db.session import billing_job_session, close_engines
from pixelperfect_billing.observability import setup_logging
from pixelperfect_billing.services.idempotency import IdempotencyService
from pixelperfect_billing.services.reconciliation import ReconciliationService

logger = structlog.get_logger()


async def sweep_once(args: argparse.Namespace) -> None:
    async with billing_job_session("stale_webhook_sweep") as session:
        swept = await IdempotencyService(session).sweep_stale_processing(
            timedelta(seconds=args.older_than)
        )
    logger.info("stale_webhook_sweep_complete", swept=swept, older_than_seconds=args.older_than)


async def recover_once(args: argparse.Namespace) -> None:
    async with billing_job_session("webhook_recovery") as session:
        result = await ReconciliationService(
            session, get_stripe_provider()
        ).recover_failed_events(args.limit)
    logger.info(
        "webhook_recovery_job_complete",
        processed=result.processed,
        recovered=result.recovered,
        failed=result.failed,
        unrecoverable=result.unrecoverable,
    )


async def check_expirations_once(args: argparse.Namespace) -> None:
    async with billing_job_session("expiration_check") as session:
        result = await ReconciliationService(
            session, get_stripe_provider()
        ).check_expired_subscriptions(args.limit)
    logger.info("expiration_check_job_complete", processed=result.processed, fixed=result.fixed)


JOBS: dict[str, Callable[[argparse.Namespace], Awaitable[None]]] = {
    "sweep": sweep_once,
    "recover": recover_once,
    "check-expirations": check_expirations_once,
}


async def run_loop(args: argparse.Namespace) -> None:
    """Run the job on a fixed interval until interrupted."""
    job = JOBS[args.job]
    logger.info("billing_job_loop_started", job=args.job, interval_seconds=args.interval)

    while True:
        try:
            await job(args)
        except Exception as e:
            logger.error("billing_job_error", job=args.job, error=str(e), exc_info=True)

        await asyncio.sleep(args.interval)


async def run(args: argparse.Namespace) -> None:
    try:
        if args.loop:
            await run_loop(args)
        else:
            await JOBS[args.job](args)
    finally:
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run a billing reconciliation job",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("job", choices=sorted(JOBS))
    parser.add_argument(
        "--older-than",
        type=int,
        default=settings.webhook_processing_timeout_seconds,
        help="sweep: age in seconds after which a processing event is considered stale",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="recover/check-expirations: maximum rows per run (defaults from settings)",
    )
    parser.add_argument("--loop", action="store_true", help="Keep running on an interval")
    parser.add_argument("--interval", type=int, default=300, help="Seconds between runs")
    args = parser.parse_args()

    setup_logging()

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("billing_job_stopped", job=args.job)
        sys.exit(0)
    except Exception as e:
        logger.error("billing_job_failed", job=args.job, error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
