from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from cluster_billing.modules.billing.api.v1.billing_models import (
    BillingPeriod,
    BillingPeriodsResponse,
    BillingSnapshotResponse,
)
from cluster_billing.modules.billing.domain.service import BillingService
from cluster_billing.shared.core.auth import get_billing_subject
from cluster_billing.shared.db.session import get_db

router = APIRouter(tags=["Billing Components"])
logger = structlog.get_logger()

# Range checks happen in the service so they surface as invalid_period errors
YEAR = Path(..., description="Four digit year of the billing period")
MONTH = Path(..., description="Month of the billing period, 1-12")


def get_billing_service(db: AsyncSession = Depends(get_db)) -> BillingService:
    return BillingService(db)


@router.get("", response_model=BillingPeriodsResponse)
async def list_billing_components(
    user_id: str = Depends(get_billing_subject),
    service: BillingService = Depends(get_billing_service),
) -> BillingPeriodsResponse:
    """Lists the billing periods with stored snapshots, most recent first."""
    periods = await service.list_available_periods(user_id)
    return BillingPeriodsResponse(
        user_id=user_id,
        periods=[BillingPeriod.from_start(period) for period in periods],
    )


@router.get("/{year}/{month}", response_model=BillingSnapshotResponse)
async def get_billing_components(
    year: int = YEAR,
    month: int = MONTH,
    user_id: str = Depends(get_billing_subject),
    service: BillingService = Depends(get_billing_service),
) -> BillingSnapshotResponse:
    """Returns the most recent snapshot of one month."""
    snapshot = await service.get_billing_snapshot(user_id, year, month)
    return BillingSnapshotResponse.from_record(snapshot)


@router.get("/{year}/{month}/history", response_model=list[BillingSnapshotResponse])
async def get_billing_components_history(
    year: int = YEAR,
    month: int = MONTH,
    user_id: str = Depends(get_billing_subject),
    service: BillingService = Depends(get_billing_service),
) -> list[BillingSnapshotResponse]:
    """Returns every snapshot of one month, newest computation first."""
    snapshots = await service.get_billing_history(user_id, year, month)
    logger.debug(
        "billing_history_served", user_id=user_id, year=year, month=month,
        snapshots=len(snapshots),
    )
    return [BillingSnapshotResponse.from_record(snapshot) for snapshot in snapshots]
