from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from cluster_billing.modules.billing.domain.aggregator import (
    CostTreeBuilder,
    join_allocations,
)
from cluster_billing.modules.billing.domain.cost_tree import (
    AllocationEntry,
    CostEntry,
    CostNode,
    Granularity,
    SyntheticBranch,
)
from cluster_billing.shared.adapters.opencost import OpenCostClient
from cluster_billing.shared.core.exceptions import AllocationKeyError, ExternalAPIError

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = datetime(2024, 2, 1, tzinfo=timezone.utc)


def _entry(cpu: float, ram: float, storage: float) -> AllocationEntry:
    return AllocationEntry(cpu_cost=cpu, ram_cost=ram, pv_cost=storage)


OVERVIEW = {"u1/ns1": _entry(10, 5, 1)}
CONTROLLERS = {"u1/ns1/ctrlA": _entry(4, 2, 0)}
CONTAINERS = {"u1/ns1/ctrlA/c1": _entry(4, 2, 0)}


def _opencost(by_granularity: dict) -> MagicMock:
    async def allocation(start, end, granularity):
        result = by_granularity[granularity]
        if isinstance(result, BaseException):
            raise result
        return result

    opencost = MagicMock()
    opencost.allocation = AsyncMock(side_effect=allocation)
    return opencost


def _decomposer() -> MagicMock:
    decomposer = MagicMock()
    decomposer.build_process_tree = AsyncMock(
        return_value={SyntheticBranch.PROCESS: CostNode(month=CostEntry(cpu=0.5))}
    )
    return decomposer


def test_join_nests_granularities() -> None:
    trees = join_allocations(OVERVIEW, CONTROLLERS, CONTAINERS)

    ns1 = trees["u1"].namespaces["ns1"]
    assert ns1.month == CostEntry(cpu=10, ram=5, storage=1)
    assert ns1.children["ctrlA"].month == CostEntry(cpu=4, ram=2, storage=0)
    assert ns1.children["ctrlA"].children["c1"].month == CostEntry(cpu=4, ram=2, storage=0)


def test_join_keeps_each_granularity_authoritative() -> None:
    trees = join_allocations(
        {"u1/ns1": _entry(1, 1, 1)},
        {"u1/ns1/a": _entry(5, 0, 0), "u1/ns1/b": _entry(7, 0, 0)},
        {},
    )
    # Parent cost is not the sum of its children
    assert trees["u1"].namespaces["ns1"].month.cpu == 1


def test_join_matches_on_user_and_namespace() -> None:
    trees = join_allocations(
        {"u1/ns1": _entry(1, 0, 0), "u2/ns1": _entry(2, 0, 0)},
        {"u1/ns1/a": _entry(1, 0, 0), "u2/ns1/b": _entry(2, 0, 0)},
        {"u2/ns1/b/c": _entry(2, 0, 0), "u2/ns1/a/c": _entry(9, 0, 0)},
    )
    assert set(trees["u1"].namespaces["ns1"].children) == {"a"}
    assert set(trees["u2"].namespaces["ns1"].children) == {"b"}
    assert trees["u1"].namespaces["ns1"].children["a"].children == {}
    assert set(trees["u2"].namespaces["ns1"].children["b"].children) == {"c"}


def test_join_attaches_container_only_to_its_controller() -> None:
    trees = join_allocations(
        {"u1/ns1": _entry(10, 5, 1)},
        {"u1/ns1/ctrlA": _entry(4, 2, 0), "u1/ns1/ctrlB": _entry(3, 1, 0)},
        {"u1/ns1/ctrlA/podX": _entry(4, 2, 0)},
    )

    ns1 = trees["u1"].namespaces["ns1"]
    assert set(ns1.children) == {"ctrlA", "ctrlB"}
    assert set(ns1.children["ctrlA"].children) == {"podX"}
    assert ns1.children["ctrlB"].children == {}


@pytest.mark.parametrize(
    "controllers",
    [{"u1/ns1": _entry(1, 0, 0)}, {"u1/ns1/ctrlA/c1": _entry(1, 0, 0)}],
)
def test_join_rejects_malformed_controller_key(controllers) -> None:
    with pytest.raises(AllocationKeyError):
        join_allocations(OVERVIEW, controllers, CONTAINERS)


@pytest.mark.asyncio
async def test_build_cost_trees_end_to_end(settings) -> None:
    opencost = _opencost(
        {
            Granularity.OVERVIEW: OVERVIEW,
            Granularity.CONTROLLER: CONTROLLERS,
            Granularity.CONTAINER: CONTAINERS,
        }
    )
    decomposer = _decomposer()
    builder = CostTreeBuilder(opencost=opencost, decomposer=decomposer, settings=settings)

    trees = await builder.build_cost_trees(START, END)

    tree = trees["u1"]
    ns1 = tree.namespaces["ns1"]
    assert ns1.month.to_dict() == {"cpu": 10, "ram": 5, "storage": 1}
    assert ns1.children["ctrlA"].month.to_dict() == {"cpu": 4, "ram": 2, "storage": 0}
    assert ns1.children["ctrlA"].children["c1"].month.to_dict() == {
        "cpu": 4,
        "ram": 2,
        "storage": 0,
    }
    assert tree.synthetic[SyntheticBranch.PROCESS].month.cpu == 0.5
    decomposer.build_process_tree.assert_awaited_once_with(CONTROLLERS, "u1", START, END)
    assert opencost.allocation.await_count == 3


@pytest.mark.asyncio
async def test_decomposer_runs_once_per_user(settings) -> None:
    opencost = _opencost(
        {
            Granularity.OVERVIEW: {"u1/ns1": _entry(1, 0, 0), "u1/ns2": _entry(1, 0, 0)},
            Granularity.CONTROLLER: {},
            Granularity.CONTAINER: {},
        }
    )
    decomposer = _decomposer()
    builder = CostTreeBuilder(opencost=opencost, decomposer=decomposer, settings=settings)

    trees = await builder.build_cost_trees(START, END)

    assert set(trees["u1"].namespaces) == {"ns1", "ns2"}
    assert decomposer.build_process_tree.await_count == 1


@pytest.mark.asyncio
async def test_namespace_named_process_does_not_collide(settings) -> None:
    opencost = _opencost(
        {
            Granularity.OVERVIEW: {"u1/process": _entry(3, 0, 0)},
            Granularity.CONTROLLER: {},
            Granularity.CONTAINER: {},
        }
    )
    builder = CostTreeBuilder(opencost=opencost, decomposer=_decomposer(), settings=settings)

    tree = (await builder.build_cost_trees(START, END))["u1"]

    assert tree.namespaces["process"].month.cpu == 3
    assert tree.synthetic[SyntheticBranch.PROCESS].month.cpu == 0.5


@pytest.mark.asyncio
async def test_malformed_key_aborts_build_without_decomposition(settings) -> None:
    opencost = _opencost(
        {
            Granularity.OVERVIEW: OVERVIEW,
            Granularity.CONTROLLER: {"u1/ns1/ctrlA/extra": _entry(1, 0, 0)},
            Granularity.CONTAINER: CONTAINERS,
        }
    )
    decomposer = _decomposer()
    builder = CostTreeBuilder(opencost=opencost, decomposer=decomposer, settings=settings)

    with pytest.raises(AllocationKeyError, match="unexpected key u1/ns1/ctrlA/extra"):
        await builder.build_cost_trees(START, END)
    decomposer.build_process_tree.assert_not_awaited()


@pytest.mark.asyncio
async def test_fetch_failure_waits_for_all_fetches(settings) -> None:
    finished: list[Granularity] = []

    async def allocation(start, end, granularity):
        if granularity is Granularity.OVERVIEW:
            raise ExternalAPIError("opencost down")
        await asyncio.sleep(0.01)
        finished.append(granularity)
        return {}

    opencost = MagicMock()
    opencost.allocation = AsyncMock(side_effect=allocation)
    builder = CostTreeBuilder(opencost=opencost, decomposer=_decomposer(), settings=settings)

    with pytest.raises(ExternalAPIError, match="opencost down"):
        await builder.build_cost_trees(START, END)
    assert set(finished) == {Granularity.CONTROLLER, Granularity.CONTAINER}


@pytest.mark.asyncio
async def test_first_failure_in_granularity_order_is_raised(settings) -> None:
    opencost = _opencost(
        {
            Granularity.OVERVIEW: {},
            Granularity.CONTROLLER: ExternalAPIError("controller failed"),
            Granularity.CONTAINER: ExternalAPIError("container failed"),
        }
    )
    builder = CostTreeBuilder(opencost=opencost, decomposer=_decomposer(), settings=settings)

    with pytest.raises(ExternalAPIError, match="controller failed"):
        await builder.build_cost_trees(START, END)


@pytest.mark.asyncio
async def test_builder_with_http_backends(
    settings, mock_http_client, allocation_payload
) -> None:
    responses = {
        Granularity.OVERVIEW.aggregate: allocation_payload({"u1/ns1": {"cpu": 10, "ram": 5, "storage": 1}}),
        Granularity.CONTROLLER.aggregate: allocation_payload({"u1/ns1/ctrlA": {"cpu": 4, "ram": 2}}),
        Granularity.CONTAINER.aggregate: allocation_payload({"u1/ns1/ctrlA/c1": {"cpu": 4, "ram": 2}}),
    }

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=responses[request.url.params["aggregate"]])

    opencost = OpenCostClient(settings=settings, client=mock_http_client(handler))
    builder = CostTreeBuilder(opencost=opencost, decomposer=_decomposer(), settings=settings)

    trees = await builder.build_cost_trees(START, END)

    assert trees["u1"].namespaces["ns1"].children["ctrlA"].children["c1"].month.cpu == 4
