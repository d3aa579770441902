from __future__ import annotations

from datetime import datetime
from typing import Optional

import structlog

from cluster_billing.modules.billing.domain.attribution import AttributionFactorResolver
from cluster_billing.modules.billing.domain.cost_tree import (
    KEY_DELIMITER,
    MARSHALLING,
    PROCESS_IO,
    AllocationSet,
    CostEntry,
    CostNode,
    SyntheticBranch,
)
from cluster_billing.shared.core.config import Settings, get_settings

logger = structlog.get_logger()

# OpenCost prefixes controller names with their kind, e.g. "deployment:engine"
_CONTROLLER_KIND_DELIMITER = ":"


def process_name(key: str) -> str:
    """Trailing name segment of a controller key."""
    controller = key.rsplit(KEY_DELIMITER, 1)[-1]
    return controller.rsplit(_CONTROLLER_KIND_DELIMITER, 1)[-1]


class ProcessCostDecomposer:
    """
    Splits the cost of the shared process platform into one user's share.

    The result is a single synthetic `process` branch whose children are
    the per-user cost of every process cost source (with process
    definitions as grandchildren), plus `marshalling` and `process-io`.
    """

    def __init__(
        self,
        resolver: Optional[AttributionFactorResolver] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.resolver = resolver or AttributionFactorResolver(settings=self.settings)

    async def build_process_tree(
        self,
        controllers: AllocationSet,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> dict[SyntheticBranch, CostNode]:
        process_sources = set(self.settings.PROCESS_COST_SOURCES)
        marshalling_sources = set(self.settings.MARSHALLING_COST_SOURCES)
        process_io_sources = set(self.settings.PROCESS_IO_COST_SOURCES)

        root = CostNode()
        marshalling_total = CostEntry()
        process_io_total = CostEntry()

        user_process_factor = await self.resolver.user_process_factor(user_id, start, end)

        for key in sorted(controllers):
            raw = CostEntry.from_allocation(controllers[key])

            if key in process_sources:
                child = CostNode(month=raw.scaled(user_process_factor))
                factors = await self.resolver.process_definition_factors(
                    key, user_id, start, end
                )
                for definition, factor in factors.items():
                    child.children[definition] = CostNode(month=child.month.scaled(factor))
                root.children[process_name(key)] = child
                root.month.add(child.month)

            if key in marshalling_sources:
                marshalling_total.add(raw)
            if key in process_io_sources:
                process_io_total.add(raw)

        process_marshaller_factor = await self.resolver.process_marshaller_factor(
            start, end
        )
        user_marshaller_factor = await self.resolver.user_marshaller_factor(
            user_id, start, end
        )
        root.children[MARSHALLING] = CostNode(
            month=marshalling_total.scaled(process_marshaller_factor).scaled(
                user_marshaller_factor
            )
        )

        user_process_io_factor = await self.resolver.user_process_io_factor(
            user_id, start, end
        )
        root.children[PROCESS_IO] = CostNode(
            month=process_io_total.scaled(user_process_io_factor)
        )

        logger.debug(
            "process_tree_built",
            user_id=user_id,
            processes=len(root.children) - 2,
            process_total=root.month.total,
        )
        return {SyntheticBranch.PROCESS: root}
