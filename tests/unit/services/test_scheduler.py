from unittest.mock import AsyncMock

import pytest

from cluster_billing.services.scheduler import JOB_ID, SchedulerService
from cluster_billing.shared.core.exceptions import ExternalAPIError


@pytest.mark.asyncio
async def test_billing_job_records_success(settings) -> None:
    job = AsyncMock(return_value={"windows": 2, "snapshots": 4})
    scheduler = SchedulerService(job=job, settings=settings)

    await scheduler.billing_job()

    job.assert_awaited_once()
    status = scheduler.get_status()
    assert status["last_run_success"] is True
    assert status["last_run_time"] is not None


@pytest.mark.asyncio
async def test_billing_job_failure_is_recorded_not_raised(settings) -> None:
    scheduler = SchedulerService(
        job=AsyncMock(side_effect=ExternalAPIError("opencost down")), settings=settings
    )

    await scheduler.billing_job()

    assert scheduler.get_status()["last_run_success"] is False


def test_start_without_cron_is_noop(settings) -> None:
    scheduler = SchedulerService(job=AsyncMock(), settings=settings)
    assert scheduler.start() is False
    assert scheduler.get_status()["running"] is False
    scheduler.stop()


@pytest.mark.asyncio
async def test_start_registers_cron_job(settings) -> None:
    scheduler = SchedulerService(
        job=AsyncMock(), settings=settings.model_copy(update={"JOB_CRON": "0 3 1 * *"})
    )
    try:
        assert scheduler.start() is True
        assert scheduler.get_status()["jobs"] == [JOB_ID]
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_unexpected_job_error_marks_run_failed(settings) -> None:
    scheduler = SchedulerService(job=AsyncMock(return_value={}), settings=settings)
    await scheduler.billing_job()
    scheduler.job = AsyncMock(side_effect=RuntimeError("db down"))

    await scheduler.billing_job()

    status = scheduler.get_status()
    assert status["last_run_success"] is False
    assert status["last_run_time"] is not None
