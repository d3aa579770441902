"""
Attribution factors.

Factors are dimensionless fractions read from the metrics backend. They
decide which share of a shared cost (process runtime, marshalling,
process I/O) belongs to one user, and how a user's process cost splits
across process definitions.
"""

from __future__ import annotations

from datetime import datetime
from typing import Mapping, Optional

import structlog

from cluster_billing.modules.billing.domain.cost_tree import finite_or_zero
from cluster_billing.shared.adapters.prometheus import PrometheusClient
from cluster_billing.shared.core.config import Settings, get_settings

logger = structlog.get_logger()

PLACEHOLDER_USER_ID = "$user_id"
PLACEHOLDER_RANGE = "$__range"
PLACEHOLDER_INSTANCE_ID = "$instance_id"


def format_range(start: datetime, end: datetime) -> str:
    """Window duration as a Prometheus duration, rounded to whole seconds."""
    seconds = max(0, round((end - start).total_seconds()))
    return f"{seconds}s"


def normalize(raw: Mapping[str, float]) -> dict[str, float]:
    """
    Divide every value by the sum of the set.

    Non-finite values count as zero. When the set sums to zero every label
    keeps a factor of 0.0, so nothing is attributed through it.
    """
    values = {label: finite_or_zero(value) for label, value in raw.items()}
    if not values:
        return {}
    total = sum(values.values())
    if total == 0:
        logger.warning(
            "attribution_factors_zero_sum",
            labels=sorted(values),
        )
        return {label: 0.0 for label in values}
    return {label: finite_or_zero(value / total) for label, value in values.items()}


class AttributionFactorResolver:
    def __init__(
        self,
        prometheus: Optional[PrometheusClient] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.prometheus = prometheus or PrometheusClient(settings=self.settings)

    @staticmethod
    def render_query(
        template: str,
        user_id: str,
        start: datetime,
        end: datetime,
        instance_id: Optional[str] = None,
    ) -> str:
        query = template
        if instance_id is not None:
            query = query.replace(PLACEHOLDER_INSTANCE_ID, instance_id)
        query = query.replace(PLACEHOLDER_USER_ID, user_id)
        return query.replace(PLACEHOLDER_RANGE, format_range(start, end))

    async def resolve_scalar(
        self, template: str, user_id: str, start: datetime, end: datetime
    ) -> float:
        query = self.render_query(template, user_id, start, end)
        value = await self.prometheus.query_scalar(query, end)
        return finite_or_zero(value)

    async def resolve_vector(
        self,
        template: str,
        user_id: str,
        start: datetime,
        end: datetime,
        instance_id: Optional[str] = None,
    ) -> dict[str, float]:
        query = self.render_query(template, user_id, start, end, instance_id)
        values = await self.prometheus.query_vector(
            query, end, label_name=self.settings.PROMETHEUS_LABEL_NAME
        )
        return {label: finite_or_zero(value) for label, value in values.items()}

    normalize = staticmethod(normalize)

    async def user_process_factor(
        self, user_id: str, start: datetime, end: datetime
    ) -> float:
        return await self.resolve_scalar(
            self.settings.USER_PROCESS_COST_FRACTION_QUERY, user_id, start, end
        )

    async def process_marshaller_factor(self, start: datetime, end: datetime) -> float:
        # Share of marshalling work caused by processes at all; not per user.
        return await self.resolve_scalar(
            self.settings.PROCESS_MARSHALLER_COST_FRACTION_QUERY, "", start, end
        )

    async def user_marshaller_factor(
        self, user_id: str, start: datetime, end: datetime
    ) -> float:
        return await self.resolve_scalar(
            self.settings.USER_MARSHALLER_COST_FRACTION_QUERY, user_id, start, end
        )

    async def user_process_io_factor(
        self, user_id: str, start: datetime, end: datetime
    ) -> float:
        return await self.resolve_scalar(
            self.settings.USER_PROCESS_IO_COST_FRACTION_QUERY, user_id, start, end
        )

    async def process_definition_factors(
        self, process_cost_source: str, user_id: str, start: datetime, end: datetime
    ) -> dict[str, float]:
        """
        Normalized `{process definition -> factor}` for one process cost
        source. Sources without a configured instance id yield an empty map.
        """
        instance_id = self.settings.PROCESS_COST_SOURCE_INSTANCE_IDS.get(
            process_cost_source
        )
        if instance_id is None:
            return {}
        raw = await self.resolve_vector(
            self.settings.USER_PROCESS_DEFINITION_COST_FRACTION_QUERY,
            user_id,
            start,
            end,
            instance_id=instance_id,
        )
        return normalize(raw)
