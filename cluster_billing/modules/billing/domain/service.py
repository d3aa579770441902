"""
Billing Service

Runs the monthly billing job (build cost trees per calendar month, store one
snapshot per user) and serves stored snapshots to the API.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from cluster_billing.modules.billing.domain.aggregator import CostTreeBuilder
from cluster_billing.modules.billing.domain.persistence import (
    BillingSnapshotStore,
    SnapshotRecord,
)
from cluster_billing.shared.core.exceptions import (
    InvalidPeriodError,
    ResourceNotFoundError,
    SnapshotPersistenceError,
)

logger = structlog.get_logger()


def month_start(year: int, month: int) -> datetime:
    """First instant of a calendar month in UTC."""
    if not 1 <= month <= 12:
        raise InvalidPeriodError(
            f"invalid month {month}", details={"year": year, "month": month}
        )
    if not 1 <= year <= 9999:
        raise InvalidPeriodError(
            f"invalid year {year}", details={"year": year, "month": month}
        )
    return datetime(year, month, 1, tzinfo=timezone.utc)


def shift_months(value: datetime, months: int) -> datetime:
    index = value.year * 12 + (value.month - 1) + months
    return datetime(index // 12, index % 12 + 1, 1, tzinfo=timezone.utc)


def trailing_month_windows(now: datetime, n_months: int) -> list[tuple[datetime, datetime]]:
    """
    The `n_months` full calendar months before `now`, most recent first,
    as `[from, to)` pairs.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    current = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    return [
        (shift_months(current, -i), shift_months(current, -(i - 1)))
        for i in range(1, n_months + 1)
    ]


class BillingService:
    def __init__(
        self,
        db: AsyncSession,
        builder: Optional[CostTreeBuilder] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.db = db
        self.store = BillingSnapshotStore(db)
        self._builder = builder
        self.clock = clock

    @property
    def builder(self) -> CostTreeBuilder:
        if self._builder is None:
            self._builder = CostTreeBuilder()
        return self._builder

    async def run_monthly_billing(self, n_months: int) -> dict[str, int]:
        """
        Compute and store snapshots for the trailing `n_months` months.

        A failed build aborts the run with nothing written for that window.
        A failed write only loses that user's snapshot; the run continues
        and raises SnapshotPersistenceError listing the failed users at the
        end.
        """
        if n_months < 1:
            raise ValueError("n_months must be >= 1")
        created_at = self.clock()
        windows = trailing_month_windows(created_at, n_months)
        written = 0
        failed: list[dict[str, str]] = []

        logger.info(
            "billing_run_started", months=n_months, created_at=created_at.isoformat()
        )
        for period_from, period_to in windows:
            log = logger.bind(period_from=period_from.isoformat())
            log.info("billing_window_started", period_to=period_to.isoformat())
            trees = await self.builder.build_cost_trees(period_from, period_to)

            for user_id in sorted(trees):
                record = SnapshotRecord(
                    user_id=user_id,
                    period_from=period_from,
                    period_to=period_to,
                    created_at=created_at,
                    tree=trees[user_id],
                )
                try:
                    await self.store.upsert(record)
                except SnapshotPersistenceError:
                    failed.append(
                        {"user_id": user_id, "period_from": period_from.isoformat()}
                    )
                    continue
                written += 1
            log.info("billing_window_completed", users=len(trees))

        logger.info("billing_run_completed", snapshots=written, failures=len(failed))
        if failed:
            raise SnapshotPersistenceError(
                f"{len(failed)} billing snapshot(s) could not be stored",
                details={"failed": failed},
            )
        return {"windows": len(windows), "snapshots": written}

    async def list_available_periods(self, user_id: str) -> list[datetime]:
        return await self.store.list_available_periods(user_id)

    async def get_billing_snapshot(
        self, user_id: str, year: int, month: int
    ) -> SnapshotRecord:
        period_from = month_start(year, month)
        snapshot = await self.store.get_latest_snapshot(user_id, period_from)
        if snapshot is None:
            raise ResourceNotFoundError(
                f"no billing snapshot for {year:04d}-{month:02d}",
                details={"year": year, "month": month},
            )
        return snapshot

    async def get_billing_history(
        self, user_id: str, year: int, month: int
    ) -> list[SnapshotRecord]:
        return await self.store.get_snapshots(user_id, month_start(year, month))
