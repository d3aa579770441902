from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from cluster_billing.shared.core.config import Settings, get_settings
from cluster_billing.shared.core.exceptions import BillingException

logger = structlog.get_logger()

JOB_ID = "monthly_billing"


class SchedulerService:
    """Runs the monthly billing job on the configured crontab (UTC)."""

    def __init__(
        self,
        job: Callable[[], Awaitable[Any]],
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.job = job
        self._last_run_success: bool | None = None
        self._last_run_time: str | None = None

    async def billing_job(self) -> None:
        logger.info("scheduler_billing_job_started")
        try:
            await self.job()
        except BillingException as exc:
            self._last_run_success = False
            logger.error(
                "scheduler_billing_job_failed",
                error=exc.message,
                code=exc.code,
                details=exc.details,
            )
        except Exception as exc:  # noqa: BLE001
            self._last_run_success = False
            logger.exception("scheduler_billing_job_crashed", error=str(exc))
        else:
            self._last_run_success = True
            logger.info("scheduler_billing_job_completed")
        finally:
            self._last_run_time = datetime.now(timezone.utc).isoformat()

    def start(self) -> bool:
        """Register the cron job and start APScheduler. False when no cron is set."""
        if not self.settings.JOB_CRON:
            logger.info("scheduler_skipped_no_cron")
            return False
        self.scheduler.add_job(
            self.billing_job,
            trigger=CronTrigger.from_crontab(self.settings.JOB_CRON, timezone="UTC"),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("scheduler_started", cron=self.settings.JOB_CRON)
        return True

    def stop(self) -> None:
        if not self.scheduler.running:
            logger.debug("scheduler_stop_skipped_not_running")
            return
        self.scheduler.shutdown(wait=False)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.scheduler.running,
            "last_run_success": self._last_run_success,
            "last_run_time": self._last_run_time,
            "jobs": [str(job.id) for job in self.scheduler.get_jobs()],
        }
