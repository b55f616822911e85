# stockrecon/adapters/base.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from stockrecon.services.line_types import ItemIdentity, ReconciliationLine


@dataclass(frozen=True)
class QuantityChange:
    """一次数量调整：item 在 location 上 +delta（可负）。"""

    item_id: str
    location_id: str
    delta: int


@dataclass(frozen=True)
class QuantitySet:
    """绝对量设置（备路径）：quantity 为目标量，compare_quantity 为乐观并发校验值。"""

    item_id: str
    location_id: str
    quantity: int
    compare_quantity: int


class ReceiveReason(str, enum.Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class ReceiveItem:
    remote_line_id: str
    quantity: int
    reason: ReceiveReason = ReceiveReason.ACCEPTED


@dataclass
class ActivationResult:
    activated: List[str] = field(default_factory=list)
    already_active: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class ItemLookup(Protocol):
    """条码 / SKU → 商品身份；找不到返回 None，调用失败抛 RemoteError。"""

    async def lookup_by_code(self, code: str) -> Optional[ItemIdentity]: ...


class PlannedLineSource(Protocol):
    """
    拉取计划行：
    - 收货：operation_ref = transfer，group = shipment
    - 棚卸：operation_ref = count，group = product group
    返回: {group_id: [ReconciliationLine, ...]}
    """

    async def fetch_planned_lines(self, operation_ref: str) -> Dict[str, List[ReconciliationLine]]: ...


class RemoteInventory(Protocol):
    """远端库存平台（主/备两种调整路径 + 激活 + 收货 + 备注）。"""

    async def fetch_current_quantity(self, item_id: str, location_id: str) -> Optional[int]: ...

    async def adjust_quantities(
        self,
        changes: Sequence[QuantityChange],
        *,
        reason: str,
        reference: str,
    ) -> Dict[str, Any]:
        """主路径：增量调整。能力不支持时抛 RemoteError(kind=CAPABILITY_UNSUPPORTED)。"""
        ...

    async def set_quantities(
        self,
        sets: Sequence[QuantitySet],
        *,
        reason: str,
        reference: str,
    ) -> Dict[str, Any]:
        """备路径：绝对量设置，带 compareQuantity 校验。"""
        ...

    async def activate_at_location(self, location_id: str, item_ids: Sequence[str]) -> ActivationResult: ...

    async def receive_items(self, shipment_id: str, items: Sequence[ReceiveItem]) -> Dict[str, Any]:
        """收货；计划外超收时抛 RemoteError(kind=QUANTITY_BOUNDS)。"""
        ...

    async def append_note(self, operation_ref: str, text: str) -> bool: ...


class ChangeLogSink(Protocol):
    async def record(self, entries: Sequence[Any]) -> int:
        """写入变动日志，返回写入条数；失败抛异常（由调用方转成警告）。"""
        ...
