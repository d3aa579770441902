from __future__ import annotations

from datetime import datetime
from typing import Dict

from pydantic import BaseModel, Field

from cluster_billing.modules.billing.domain.cost_tree import CostEntry, CostNode
from cluster_billing.modules.billing.domain.persistence import SnapshotRecord


class CostEntryModel(BaseModel):
    cpu: float
    ram: float
    storage: float

    @classmethod
    def from_entry(cls, entry: CostEntry) -> "CostEntryModel":
        return cls(cpu=entry.cpu, ram=entry.ram, storage=entry.storage)


class CostNodeModel(BaseModel):
    month: CostEntryModel
    children: Dict[str, "CostNodeModel"] = Field(default_factory=dict)

    @classmethod
    def from_node(cls, node: CostNode) -> "CostNodeModel":
        return cls(
            month=CostEntryModel.from_entry(node.month),
            children={name: cls.from_node(child) for name, child in node.children.items()},
        )


class CostTreeModel(BaseModel):
    namespaces: Dict[str, CostNodeModel] = Field(default_factory=dict)
    synthetic: Dict[str, CostNodeModel] = Field(default_factory=dict)


class BillingSnapshotResponse(BaseModel):
    user_id: str
    period_from: datetime
    period_to: datetime
    created_at: datetime
    tree: CostTreeModel

    @classmethod
    def from_record(cls, record: SnapshotRecord) -> "BillingSnapshotResponse":
        return cls(
            user_id=record.user_id,
            period_from=record.period_from,
            period_to=record.period_to,
            created_at=record.created_at,
            tree=CostTreeModel(
                namespaces={
                    name: CostNodeModel.from_node(node)
                    for name, node in record.tree.namespaces.items()
                },
                synthetic={
                    branch.value: CostNodeModel.from_node(node)
                    for branch, node in record.tree.synthetic.items()
                },
            ),
        )


class BillingPeriod(BaseModel):
    year: int
    month: int
    period_from: datetime

    @classmethod
    def from_start(cls, period_from: datetime) -> "BillingPeriod":
        return cls(year=period_from.year, month=period_from.month, period_from=period_from)


class BillingPeriodsResponse(BaseModel):
    user_id: str
    periods: list[BillingPeriod]
