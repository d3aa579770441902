"""
Cost Tree Builder

Fetches one window of allocation data at the overview, controller and
container granularities concurrently and nests it into one cost tree per
user. Every level keeps the cost its own granularity reported; nothing is
re-derived from children.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Optional

import structlog

from cluster_billing.modules.billing.domain.cost_tree import (
    AllocationSet,
    CostEntry,
    CostNode,
    CostTree,
    Granularity,
    UserCostTree,
    split_key,
)
from cluster_billing.modules.billing.domain.process_costs import ProcessCostDecomposer
from cluster_billing.shared.adapters.opencost import OpenCostClient
from cluster_billing.shared.core.config import Settings, get_settings
from cluster_billing.shared.core.ops_metrics import (
    BILLING_WINDOW_DURATION,
    BILLING_WINDOWS_TOTAL,
)

logger = structlog.get_logger()

_GRANULARITIES = (Granularity.OVERVIEW, Granularity.CONTROLLER, Granularity.CONTAINER)


def _split_all(
    allocations: AllocationSet, granularity: Granularity
) -> list[tuple[tuple[str, ...], CostEntry]]:
    return [
        (split_key(key, granularity), CostEntry.from_allocation(entry))
        for key, entry in allocations.items()
    ]


def join_allocations(
    overview: AllocationSet,
    controllers: AllocationSet,
    containers: AllocationSet,
) -> UserCostTree:
    """
    Nest the three granularities into per-user trees.

    All keys are validated before any tree is assembled, so a malformed key
    never leaves a partial result behind. Controllers or containers whose
    parent is missing from the coarser granularity are dropped.
    """
    overview_rows = _split_all(overview, Granularity.OVERVIEW)
    controller_rows = _split_all(controllers, Granularity.CONTROLLER)
    container_rows = _split_all(containers, Granularity.CONTAINER)

    trees: UserCostTree = {}
    for (user_id, namespace), cost in overview_rows:
        tree = trees.setdefault(user_id, CostTree())
        tree.namespaces[namespace] = CostNode(month=cost)

    orphans = 0
    for (user_id, namespace, controller), cost in controller_rows:
        tree = trees.get(user_id)
        namespace_node = tree.namespaces.get(namespace) if tree else None
        if namespace_node is None:
            orphans += 1
            continue
        namespace_node.children[controller] = CostNode(month=cost)

    for (user_id, namespace, controller, container), cost in container_rows:
        tree = trees.get(user_id)
        namespace_node = tree.namespaces.get(namespace) if tree else None
        controller_node = (
            namespace_node.children.get(controller) if namespace_node else None
        )
        if controller_node is None:
            orphans += 1
            continue
        controller_node.children[container] = CostNode(month=cost)

    if orphans:
        logger.warning("allocation_entries_without_parent", count=orphans)
    return trees


class CostTreeBuilder:
    def __init__(
        self,
        opencost: Optional[OpenCostClient] = None,
        decomposer: Optional[ProcessCostDecomposer] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.opencost = opencost or OpenCostClient(settings=self.settings)
        self.decomposer = decomposer or ProcessCostDecomposer(settings=self.settings)

    async def fetch_all(
        self, start: datetime, end: datetime
    ) -> tuple[AllocationSet, AllocationSet, AllocationSet]:
        """
        Fetch all three granularities and wait for every one of them.
        The first failure in granularity order is raised afterwards.
        """
        results = await asyncio.gather(
            *(self.opencost.allocation(start, end, g) for g in _GRANULARITIES),
            return_exceptions=True,
        )
        for granularity, result in zip(_GRANULARITIES, results):
            if isinstance(result, BaseException):
                logger.error(
                    "allocation_fetch_failed",
                    aggregate=granularity.aggregate,
                    error=str(result),
                )
                raise result
        overview, controllers, containers = results
        return overview, controllers, containers

    async def build_cost_trees(self, start: datetime, end: datetime) -> UserCostTree:
        started = time.perf_counter()
        log = logger.bind(period_from=start.isoformat(), period_to=end.isoformat())
        try:
            overview, controllers, containers = await self.fetch_all(start, end)
            trees = join_allocations(overview, controllers, containers)

            for user_id, tree in trees.items():
                branches = await self.decomposer.build_process_tree(
                    controllers, user_id, start, end
                )
                tree.merge_synthetic(branches)
        except Exception:
            BILLING_WINDOWS_TOTAL.labels(status="failure").inc()
            raise
        finally:
            BILLING_WINDOW_DURATION.observe(time.perf_counter() - started)

        BILLING_WINDOWS_TOTAL.labels(status="success").inc()
        log.info("cost_trees_built", users=len(trees))
        return trees
