from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Index, String, UniqueConstraint, Uuid as PG_UUID
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from cluster_billing.shared.db.base import Base

# Persisted field names. Index and query definitions refer to these.
FIELD_USER_ID = "user_id"
FIELD_PERIOD_FROM = "period_from"
FIELD_PERIOD_TO = "period_to"
FIELD_CREATED_AT = "created_at"
FIELD_TREE = "tree"

LOOKUP_INDEX_NAME = "ix_billing_snapshots_user_period"
UNIQUE_CONSTRAINT_NAME = "uix_billing_snapshots_user_period_created"


class BillingSnapshot(Base):
    """
    One user's cost tree for one billing period, as computed by one run.

    Snapshots are immutable history: a later run for the same period adds a
    row with a newer `created_at`, it never replaces the earlier one.
    """

    __tablename__ = "billing_snapshots"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(FIELD_USER_ID, String(255), nullable=False)
    period_from: Mapped[datetime] = mapped_column(
        FIELD_PERIOD_FROM, DateTime(timezone=True), nullable=False
    )
    period_to: Mapped[datetime] = mapped_column(
        FIELD_PERIOD_TO, DateTime(timezone=True), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        FIELD_CREATED_AT,
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    # Serialized CostTree: {"namespaces": {...}, "synthetic": {...}}
    tree: Mapped[dict[str, Any]] = mapped_column(
        FIELD_TREE, JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict
    )

    __table_args__ = (
        Index(LOOKUP_INDEX_NAME, FIELD_USER_ID, FIELD_PERIOD_FROM),
        UniqueConstraint(
            FIELD_USER_ID,
            FIELD_PERIOD_FROM,
            FIELD_CREATED_AT,
            name=UNIQUE_CONSTRAINT_NAME,
        ),
    )
