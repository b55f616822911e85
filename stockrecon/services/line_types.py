# stockrecon/services/line_types.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from stockrecon.core.errors import RejectReason, ValidationRejected
from stockrecon.utils.qty import to_int, to_qty


def _s(v: Any) -> str:
    return str(v if v is not None else "").strip()


def _opt(v: Any) -> Optional[str]:
    s = _s(v)
    return s or None


def compose_title(product_title: str, variant_title: str, fallback: str = "") -> str:
    """商品名 / 规格名 → "商品 / 规格"；缺一则用另一个；都缺用 fallback。"""
    p = _s(product_title)
    v = _s(variant_title)
    if p and v:
        return f"{p} / {v}"
    return v or p or fallback or "(unknown)"


@dataclass
class ItemIdentity:
    """扫码 / 搜索解析得到的商品身份。"""

    item_id: str
    variant_id: Optional[str] = None
    sku: str = ""
    barcode: str = ""
    product_title: str = ""
    variant_title: str = ""
    image_url: str = ""

    @property
    def title(self) -> str:
        return compose_title(self.product_title, self.variant_title, self.sku or self.item_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inventoryItemId": self.item_id,
            "variantId": self.variant_id,
            "sku": self.sku,
            "barcode": self.barcode,
            "productTitle": self.product_title,
            "variantTitle": self.variant_title,
            "imageUrl": self.image_url,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["ItemIdentity"]:
        item_id = _s(data.get("inventoryItemId") or data.get("itemId"))
        if not item_id:
            return None
        return cls(
            item_id=item_id,
            variant_id=_opt(data.get("variantId")),
            sku=_s(data.get("sku")),
            barcode=_s(data.get("barcode")),
            product_title=_s(data.get("productTitle")),
            variant_title=_s(data.get("variantTitle")),
            image_url=_s(data.get("imageUrl")),
        )


@dataclass
class ReconciliationLine:
    """
    对账行：

    - planned_qty   : 计划量（予定外行为 0）
    - actual_qty    : 操作员确认的实际量
    - committed_qty : 之前部分提交中已不可撤销地入账的量 = floor
    - rejected_qty  : 收货场景下已拒收的量（计算剩余可收量）
    - remote_line_id: 远端单据行 ID（如 shipment line item），予定外行为空
    """

    line_id: str
    item_id: str
    variant_id: Optional[str] = None
    sku: str = ""
    barcode: str = ""
    image_url: str = ""
    title: str = ""
    planned_qty: int = 0
    actual_qty: int = 0
    committed_qty: int = 0
    rejected_qty: int = 0
    group_id: Optional[str] = None
    is_unplanned: bool = False
    read_only: bool = False
    remote_line_id: Optional[str] = None

    @property
    def floor(self) -> int:
        return self.committed_qty

    @property
    def remaining_qty(self) -> int:
        """剩余可收量 = planned - rejected - actual（不小于 0）。"""
        return max(0, self.planned_qty - self.rejected_qty - self.actual_qty)

    def identity(self) -> ItemIdentity:
        return ItemIdentity(
            item_id=self.item_id,
            variant_id=self.variant_id,
            sku=self.sku,
            barcode=self.barcode,
            product_title=self.title,
            image_url=self.image_url,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lineId": self.line_id,
            "inventoryItemId": self.item_id,
            "variantId": self.variant_id,
            "sku": self.sku,
            "barcode": self.barcode,
            "imageUrl": self.image_url,
            "title": self.title,
            "plannedQty": self.planned_qty,
            "actualQty": self.actual_qty,
            "committedQty": self.committed_qty,
            "rejectedQty": self.rejected_qty,
            "groupId": self.group_id,
            "isUnplanned": self.is_unplanned,
            "readOnly": self.read_only,
            "remoteLineId": self.remote_line_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["ReconciliationLine"]:
        """宽松解析：未知字段忽略，缺失字段给默认值；无 lineId / itemId → None。"""
        if not isinstance(data, Mapping):
            return None
        item_id = _s(data.get("inventoryItemId") or data.get("itemId"))
        line_id = _s(data.get("lineId")) or (f"extra:{item_id}" if item_id else "")
        is_unplanned = bool(data.get("isUnplanned", False))
        # 旧草稿的计划行只有行 ID（按 line_id 合并），予定外行必须有 item_id
        if not line_id or (is_unplanned and not item_id):
            return None
        return cls(
            line_id=line_id,
            item_id=item_id,
            variant_id=_opt(data.get("variantId")),
            sku=_s(data.get("sku")),
            barcode=_s(data.get("barcode")),
            image_url=_s(data.get("imageUrl")),
            title=_s(data.get("title")),
            planned_qty=to_qty(data.get("plannedQty")),
            actual_qty=to_qty(data.get("actualQty")),
            committed_qty=to_qty(data.get("committedQty")),
            rejected_qty=to_qty(data.get("rejectedQty")),
            group_id=_opt(data.get("groupId")),
            is_unplanned=is_unplanned,
            read_only=bool(data.get("readOnly", False)),
            remote_line_id=_opt(data.get("remoteLineId")),
        )


@dataclass(frozen=True)
class CommittedLine:
    """提交瞬间冻结的行快照（只读回显 / 跨会话历史用，与后续商品主档变化解耦）。"""

    line_id: str
    item_id: str
    title: str
    sku: str
    barcode: str
    image_url: str
    planned_qty: int
    actual_qty: int
    delta: int
    is_unplanned: bool = False

    @classmethod
    def freeze(cls, line: ReconciliationLine, delta: int) -> "CommittedLine":
        return cls(
            line_id=line.line_id,
            item_id=line.item_id,
            title=line.title,
            sku=line.sku,
            barcode=line.barcode,
            image_url=line.image_url,
            planned_qty=line.planned_qty,
            actual_qty=line.actual_qty,
            delta=delta,
            is_unplanned=line.is_unplanned,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lineId": self.line_id,
            "inventoryItemId": self.item_id,
            "title": self.title,
            "sku": self.sku,
            "barcode": self.barcode,
            "imageUrl": self.image_url,
            "plannedQty": self.planned_qty,
            "actualQty": self.actual_qty,
            "delta": self.delta,
            "isUnplanned": self.is_unplanned,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["CommittedLine"]:
        if not isinstance(data, Mapping):
            return None
        item_id = _s(data.get("inventoryItemId") or data.get("itemId"))
        if not item_id:
            return None
        actual = to_qty(data.get("actualQty", data.get("actualQuantity", data.get("qty"))))
        return cls(
            line_id=_s(data.get("lineId")) or item_id,
            item_id=item_id,
            title=_s(data.get("title")) or item_id,
            sku=_s(data.get("sku")),
            barcode=_s(data.get("barcode")),
            image_url=_s(data.get("imageUrl")),
            planned_qty=to_qty(data.get("plannedQty", data.get("currentQuantity"))),
            actual_qty=actual,
            delta=to_int(data.get("delta")),
            is_unplanned=bool(data.get("isUnplanned", False)),
        )


@dataclass
class MutationResult:
    """
    行表变更结果（拒绝不抛异常，由调用方决定是否提示）：

    - ok      : 是否生效
    - line    : 变更后的行（删除时为删除前的行）
    - removed : 行被移除
    - reason  : 拒绝原因
    - notify  : 该拒绝是否需要提示（只读会话内只提示一次）
    """

    ok: bool
    line: Optional[ReconciliationLine] = None
    removed: bool = False
    reason: Optional[RejectReason] = None
    notify: bool = False

    def raise_for_reject(self) -> "MutationResult":
        """严格调用方：拒绝时抛 ValidationRejected，生效时原样返回。"""
        if not self.ok:
            reason = self.reason or RejectReason.INVALID_QTY
            line_id = self.line.line_id if self.line is not None else ""
            raise ValidationRejected(reason, f"{reason.value}: {line_id}" if line_id else "")
        return self


class LineFilter(str, enum.Enum):
    ALL = "all"
    REMAINING = "remaining"
    PLANNED = "planned"
    UNPLANNED = "unplanned"
    EDITABLE = "editable"


@dataclass
class LineChange:
    """行表变更通知载荷。"""

    kind: str  # upsert / set / remove / merge / freeze / commit
    line_ids: List[str] = field(default_factory=list)
    group_ids: List[Optional[str]] = field(default_factory=list)
