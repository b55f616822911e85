# stockrecon/services/change_log.py
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from stockrecon.utils.qty import to_int
from stockrecon.utils.time import iso_now

logger = logging.getLogger("stockrecon.change_log")


class Activity(str, enum.Enum):
    INBOUND_TRANSFER = "inbound_transfer"
    OUTBOUND_TRANSFER = "outbound_transfer"
    INVENTORY_COUNT = "inventory_count"
    LOSS_ENTRY = "loss_entry"
    PURCHASE_ENTRY = "purchase_entry"
    ADMIN_WEBHOOK = "admin_webhook"


@dataclass(frozen=True)
class ChangeLogEntry:
    """
    一条去规范化的库存变动（item × location 粒度）：

    - delta          : 本次变动量
    - quantity_after : 变动后的数量（未知为 None）
    - source_id      : 来源单据（transfer / count id）
    """

    item_id: str
    location_id: str
    activity: Activity
    delta: int
    variant_id: Optional[str] = None
    sku: str = ""
    location_name: str = ""
    quantity_after: Optional[int] = None
    source_id: Optional[str] = None
    adjustment_group_id: Optional[str] = None
    timestamp: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "inventoryItemId": self.item_id,
            "variantId": self.variant_id,
            "sku": self.sku,
            "locationId": self.location_id,
            "locationName": self.location_name or self.location_id,
            "activity": self.activity.value,
            "delta": self.delta,
            "quantityAfter": self.quantity_after,
            "sourceId": self.source_id,
            "timestamp": self.timestamp or iso_now(),
        }
        if self.adjustment_group_id is not None:
            data["adjustmentGroupId"] = self.adjustment_group_id
        return data

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "ChangeLogEntry":
        qa = data.get("quantityAfter")
        return cls(
            item_id=str(data.get("inventoryItemId") or ""),
            location_id=str(data.get("locationId") or ""),
            activity=Activity(str(data.get("activity") or Activity.ADMIN_WEBHOOK.value)),
            delta=to_int(data.get("delta")),
            variant_id=data.get("variantId"),
            sku=str(data.get("sku") or ""),
            location_name=str(data.get("locationName") or ""),
            quantity_after=None if qa is None else to_int(qa),
            source_id=data.get("sourceId"),
            adjustment_group_id=data.get("adjustmentGroupId"),
            timestamp=data.get("timestamp"),
        )


def build_entries(
    *,
    activity: Activity,
    location_id: str,
    deltas: Sequence[Mapping[str, Any]],
    location_name: str = "",
    source_id: Optional[str] = None,
    adjustment_group_id: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> List[ChangeLogEntry]:
    """deltas: [{inventoryItemId, delta, variantId?, sku?, quantityAfter?}]；delta 为 0 的跳过，同批共用时间戳。"""
    ts = timestamp or iso_now()
    out: List[ChangeLogEntry] = []
    for d in deltas:
        item_id = str(d.get("inventoryItemId") or "").strip()
        delta = to_int(d.get("delta"))
        if not item_id or delta == 0:
            continue
        qa = d.get("quantityAfter")
        out.append(
            ChangeLogEntry(
                item_id=item_id,
                location_id=location_id,
                activity=activity,
                delta=delta,
                variant_id=d.get("variantId"),
                sku=str(d.get("sku") or ""),
                location_name=location_name or location_id,
                quantity_after=None if qa is None else to_int(qa),
                source_id=source_id,
                adjustment_group_id=adjustment_group_id,
                timestamp=ts,
            )
        )
    return out


class MemoryChangeLogSink:
    """进程内变动日志（未配置 CHANGE_LOG_URL 时使用，也用于测试）。"""

    def __init__(self) -> None:
        self.entries: List[ChangeLogEntry] = []

    async def record(self, entries: Sequence[ChangeLogEntry]) -> int:
        self.entries.extend(entries)
        for e in entries:
            logger.info(
                "change_log: activity=%s item=%s location=%s delta=%s source=%s",
                e.activity.value,
                e.item_id,
                e.location_id,
                e.delta,
                e.source_id,
            )
        return len(entries)
