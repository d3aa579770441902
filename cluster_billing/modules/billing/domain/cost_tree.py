"""
Cost tree data model.

Allocation entries come from OpenCost at one of three aggregation
granularities; the builder nests them into per-user cost trees whose top
level separates real namespaces from synthetic, account-wide branches.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from cluster_billing.shared.core.exceptions import AllocationKeyError

KEY_DELIMITER = "/"


def finite_or_zero(value: Any) -> float:
    """Coerce a producer value to a float; NaN, infinities and junk become 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return number


class Granularity(Enum):
    """OpenCost aggregation keysets and the segment count of their keys."""

    OVERVIEW = ("label:user,namespace", 2)
    CONTROLLER = ("label:user,namespace,controller", 3)
    CONTAINER = ("label:user,namespace,controller,container", 4)

    def __init__(self, aggregate: str, segments: int):
        self.aggregate = aggregate
        self.segments = segments


def split_key(key: str, granularity: Granularity) -> tuple[str, ...]:
    """Split a composite key, raising AllocationKeyError on a segment count mismatch."""
    parts = tuple(key.split(KEY_DELIMITER))
    if len(parts) != granularity.segments:
        raise AllocationKeyError(
            f"unexpected key {key}",
            details={
                "key": key,
                "aggregate": granularity.aggregate,
                "expected_segments": granularity.segments,
                "actual_segments": len(parts),
            },
        )
    return parts


@dataclass(frozen=True)
class AllocationEntry:
    """One granularity's cost observation for one composite key."""

    cpu_cost: float = 0.0
    ram_cost: float = 0.0
    pv_cost: float = 0.0
    name: str = ""
    minutes: float = 0.0
    total_cost: float = 0.0

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AllocationEntry":
        return cls(
            cpu_cost=finite_or_zero(payload.get("cpuCost")),
            ram_cost=finite_or_zero(payload.get("ramCost")),
            pv_cost=finite_or_zero(payload.get("pvCost")),
            name=str(payload.get("name") or ""),
            minutes=finite_or_zero(payload.get("minutes")),
            total_cost=finite_or_zero(payload.get("totalCost")),
        )


AllocationSet = Dict[str, AllocationEntry]


@dataclass
class CostEntry:
    """Attributed cost. `allocation` is informational and never serialized."""

    cpu: float = 0.0
    ram: float = 0.0
    storage: float = 0.0
    allocation: Optional[AllocationEntry] = field(
        default=None, compare=False, repr=False
    )

    @classmethod
    def from_allocation(cls, allocation: AllocationEntry) -> "CostEntry":
        return cls(
            cpu=allocation.cpu_cost,
            ram=allocation.ram_cost,
            storage=allocation.pv_cost,
            allocation=allocation,
        )

    def scaled(self, factor: float) -> "CostEntry":
        return CostEntry(
            cpu=self.cpu * factor,
            ram=self.ram * factor,
            storage=self.storage * factor,
        )

    def add(self, other: "CostEntry") -> None:
        self.cpu += other.cpu
        self.ram += other.ram
        self.storage += other.storage

    @property
    def total(self) -> float:
        return self.cpu + self.ram + self.storage

    def to_dict(self) -> dict[str, float]:
        return {"cpu": self.cpu, "ram": self.ram, "storage": self.storage}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CostEntry":
        return cls(
            cpu=finite_or_zero(data.get("cpu")),
            ram=finite_or_zero(data.get("ram")),
            storage=finite_or_zero(data.get("storage")),
        )


@dataclass
class CostNode:
    month: CostEntry = field(default_factory=CostEntry)
    children: Dict[str, "CostNode"] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "month": self.month.to_dict(),
            "children": {name: child.to_dict() for name, child in self.children.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CostNode":
        return cls(
            month=CostEntry.from_dict(data.get("month") or {}),
            children={
                name: cls.from_dict(child)
                for name, child in (data.get("children") or {}).items()
            },
        )


class SyntheticBranch(str, Enum):
    """Account-wide branches that are not Kubernetes namespaces."""

    PROCESS = "process"


# Children of the process branch
MARSHALLING = "marshalling"
PROCESS_IO = "process-io"


@dataclass
class CostTree:
    """
    One user's cost tree.

    Namespaces and synthetic branches live in separate mappings, so a
    namespace named like a synthetic branch cannot overwrite it.
    """

    namespaces: Dict[str, CostNode] = field(default_factory=dict)
    synthetic: Dict[SyntheticBranch, CostNode] = field(default_factory=dict)

    def merge_synthetic(self, branches: Mapping[SyntheticBranch, CostNode]) -> None:
        for branch, node in branches.items():
            self.synthetic[branch] = node

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespaces": {name: node.to_dict() for name, node in self.namespaces.items()},
            "synthetic": {
                branch.value: node.to_dict() for branch, node in self.synthetic.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CostTree":
        return cls(
            namespaces={
                name: CostNode.from_dict(node)
                for name, node in (data.get("namespaces") or {}).items()
            },
            synthetic={
                SyntheticBranch(name): CostNode.from_dict(node)
                for name, node in (data.get("synthetic") or {}).items()
            },
        )


UserCostTree = Dict[str, CostTree]
