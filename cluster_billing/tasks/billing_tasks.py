"""
Monthly billing job.

Used by the API process (at startup and on the configured cron) and runnable
on its own, e.g. from a Kubernetes CronJob:

  python -m cluster_billing.tasks.billing_tasks --months 2
"""

from __future__ import annotations

import argparse
import asyncio
import functools
import sys
from typing import Any, Awaitable, Callable, Optional

import structlog

from cluster_billing.modules.billing.domain.aggregator import CostTreeBuilder
from cluster_billing.modules.billing.domain.service import BillingService
from cluster_billing.shared.core.config import Settings, get_settings
from cluster_billing.shared.core.exceptions import BillingException
from cluster_billing.shared.core.http import close_http_client, init_http_client
from cluster_billing.shared.core.logging import setup_logging
from cluster_billing.shared.db.session import async_session_maker, close_db, init_db

logger = structlog.get_logger()


async def run_billing_job(
    n_months: Optional[int] = None,
    session_maker: Any = async_session_maker,
    builder: Optional[CostTreeBuilder] = None,
) -> dict[str, int]:
    """Run `run_monthly_billing` in a fresh session."""
    months = n_months if n_months is not None else get_settings().JOB_MONTHS
    async with session_maker() as session:
        service = BillingService(session, builder=builder)
        return await service.run_monthly_billing(months)


def build_billing_job(
    settings: Optional[Settings] = None,
    session_maker: Any = async_session_maker,
    builder: Optional[CostTreeBuilder] = None,
) -> Callable[..., Awaitable[dict[str, int]]]:
    """
    Bind `run_billing_job` to one builder for the life of the process, so
    OpenCost allocation responses stay cached between scheduled runs.
    """
    builder = builder or CostTreeBuilder(settings=settings)
    return functools.partial(run_billing_job, session_maker=session_maker, builder=builder)


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Compute and store billing snapshots for the trailing months."
    )
    parser.add_argument(
        "--months",
        dest="months",
        type=int,
        default=None,
        help="Number of full calendar months to compute (default: JOB_MONTHS)",
    )
    return parser.parse_args(argv)


async def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    setup_logging()
    await init_http_client()
    try:
        await init_db()
        result = await run_billing_job(args.months)
    except BillingException as exc:
        logger.error(
            "billing_job_failed", error=exc.message, code=exc.code, details=exc.details
        )
        return 1
    finally:
        await close_http_client()
        await close_db()
    logger.info("billing_job_completed", **result)
    return 0


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
