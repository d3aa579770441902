"""
Billing Snapshot Store

Idempotent storage of per-user cost trees. A snapshot is identified by
(user, period start, creation time): writing the same identity twice
leaves one row holding the latest tree, while a new run for the same
period adds history.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import structlog
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cluster_billing.models.billing_snapshot import (
    FIELD_CREATED_AT,
    FIELD_PERIOD_FROM,
    FIELD_PERIOD_TO,
    FIELD_TREE,
    FIELD_USER_ID,
    UNIQUE_CONSTRAINT_NAME,
    BillingSnapshot,
)
from cluster_billing.modules.billing.domain.cost_tree import CostTree
from cluster_billing.shared.core.config import get_settings
from cluster_billing.shared.core.exceptions import SnapshotPersistenceError
from cluster_billing.shared.core.ops_metrics import SNAPSHOTS_WRITTEN

logger = structlog.get_logger()

WRITE_MAX_ATTEMPTS = 3


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class SnapshotRecord:
    user_id: str
    period_from: datetime
    period_to: datetime
    created_at: datetime
    tree: CostTree

    @classmethod
    def from_row(cls, row: BillingSnapshot) -> "SnapshotRecord":
        return cls(
            user_id=row.user_id,
            period_from=as_utc(row.period_from),
            period_to=as_utc(row.period_to),
            created_at=as_utc(row.created_at),
            tree=CostTree.from_dict(row.tree or {}),
        )

    def to_values(self) -> dict[str, Any]:
        return {
            FIELD_USER_ID: self.user_id,
            FIELD_PERIOD_FROM: as_utc(self.period_from),
            FIELD_PERIOD_TO: as_utc(self.period_to),
            FIELD_CREATED_AT: as_utc(self.created_at),
            FIELD_TREE: self.tree.to_dict(),
        }


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "snapshot_write_retry",
        attempt=retry_state.attempt_number,
        max_attempts=WRITE_MAX_ATTEMPTS,
        error=str(exc),
    )


class BillingSnapshotStore:
    def __init__(self, db: AsyncSession, write_timeout: Optional[float] = None):
        self.db = db
        self.write_timeout = (
            write_timeout
            if write_timeout is not None
            else get_settings().SNAPSHOT_WRITE_TIMEOUT_SECONDS
        )

    def _uses_postgresql(self) -> bool:
        bind = self.db.get_bind()
        return getattr(getattr(bind, "dialect", None), "name", "") == "postgresql"

    async def upsert(self, snapshot: SnapshotRecord) -> None:
        """
        Insert or replace the snapshot keyed on (user_id, period_from, created_at)
        and commit. Raises SnapshotPersistenceError when the write fails.
        """
        values = snapshot.to_values()
        try:
            async with asyncio.timeout(self.write_timeout):
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(WRITE_MAX_ATTEMPTS),
                    wait=wait_exponential(multiplier=0.1, max=2.0),
                    retry=retry_if_exception_type(OperationalError),
                    before_sleep=_log_retry,
                    reraise=True,
                ):
                    with attempt:
                        try:
                            await self._write(values)
                            await self.db.commit()
                        except SQLAlchemyError:
                            await self.db.rollback()
                            raise
        except (SQLAlchemyError, TimeoutError) as exc:
            SNAPSHOTS_WRITTEN.labels(status="failure").inc()
            logger.error(
                "snapshot_write_failed",
                user_id=snapshot.user_id,
                period_from=values[FIELD_PERIOD_FROM].isoformat(),
                error=str(exc) or type(exc).__name__,
            )
            if isinstance(exc, TimeoutError):
                await self.db.rollback()
            raise SnapshotPersistenceError(
                f"could not store billing snapshot for user {snapshot.user_id}",
                details={
                    "user_id": snapshot.user_id,
                    "period_from": values[FIELD_PERIOD_FROM].isoformat(),
                },
            ) from exc

        SNAPSHOTS_WRITTEN.labels(status="success").inc()
        logger.info(
            "snapshot_written",
            user_id=snapshot.user_id,
            period_from=values[FIELD_PERIOD_FROM].isoformat(),
            created_at=values[FIELD_CREATED_AT].isoformat(),
        )

    async def _write(self, values: dict[str, Any]) -> None:
        if self._uses_postgresql():
            stmt = pg_insert(BillingSnapshot).values(id=uuid4(), **values)
            stmt = stmt.on_conflict_do_update(
                constraint=UNIQUE_CONSTRAINT_NAME,
                set_={
                    FIELD_PERIOD_TO: stmt.excluded[FIELD_PERIOD_TO],
                    FIELD_TREE: stmt.excluded[FIELD_TREE],
                },
            )
            await self.db.execute(stmt)
            return

        # Other dialects: select, then update in place or add
        result = await self.db.execute(
            select(BillingSnapshot).where(
                BillingSnapshot.user_id == values[FIELD_USER_ID],
                BillingSnapshot.period_from == values[FIELD_PERIOD_FROM],
                BillingSnapshot.created_at == values[FIELD_CREATED_AT],
            )
        )
        existing = result.scalars().first()
        if existing is not None:
            existing.period_to = values[FIELD_PERIOD_TO]
            existing.tree = values[FIELD_TREE]
        else:
            self.db.add(BillingSnapshot(**values))
        await self.db.flush()

    async def list_available_periods(self, user_id: str) -> list[datetime]:
        """Distinct period starts for the user, most recent first."""
        result = await self.db.execute(
            select(BillingSnapshot.period_from)
            .where(BillingSnapshot.user_id == user_id)
            .distinct()
            .order_by(BillingSnapshot.period_from.desc())
        )
        return [as_utc(value) for value in result.scalars().all()]

    async def get_snapshots(
        self, user_id: str, period_from: datetime
    ) -> list[SnapshotRecord]:
        """Snapshots of one period, most recent computation first."""
        result = await self.db.execute(
            select(BillingSnapshot)
            .where(
                BillingSnapshot.user_id == user_id,
                BillingSnapshot.period_from == as_utc(period_from),
            )
            .order_by(BillingSnapshot.created_at.desc())
        )
        return [SnapshotRecord.from_row(row) for row in result.scalars().all()]

    async def get_latest_snapshot(
        self, user_id: str, period_from: datetime
    ) -> Optional[SnapshotRecord]:
        snapshots = await self.get_snapshots(user_id, period_from)
        return snapshots[0] if snapshots else None
