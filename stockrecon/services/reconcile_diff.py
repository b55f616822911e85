# stockrecon/services/reconcile_diff.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List

from stockrecon.services.line_types import ReconciliationLine


@dataclass(frozen=True)
class DiffLine:
    """
    差异行：

    - qty : 超出量（OVER）/ 不足量（SHORT）/ 予定外量（UNPLANNED）
    """

    line_id: str
    item_id: str
    title: str
    sku: str
    planned_qty: int
    actual_qty: int
    qty: int
    group_id: str | None = None

    def to_log(self) -> dict:
        return {"inventoryItemId": self.item_id, "qty": self.qty, "title": self.title, "sku": self.sku}


@dataclass(frozen=True)
class ReconcileDiff:
    over_lines: List[DiffLine] = field(default_factory=list)
    short_lines: List[DiffLine] = field(default_factory=list)
    unplanned_lines: List[DiffLine] = field(default_factory=list)
    over_qty_total: int = 0
    short_qty_total: int = 0
    unplanned_qty_total: int = 0
    planned_total: int = 0
    actual_total: int = 0

    @property
    def has_warning(self) -> bool:
        return bool(self.over_lines) or bool(self.unplanned_lines) or self.short_qty_total > 0


def over_qty(line: ReconciliationLine) -> int:
    return 0 if line.is_unplanned else max(0, line.actual_qty - line.planned_qty)


def short_qty(line: ReconciliationLine) -> int:
    return 0 if line.is_unplanned else max(0, line.planned_qty - line.actual_qty)


def _diff_line(line: ReconciliationLine, qty: int) -> DiffLine:
    return DiffLine(
        line_id=line.line_id,
        item_id=line.item_id,
        title=line.title,
        sku=line.sku,
        planned_qty=line.planned_qty,
        actual_qty=line.actual_qty,
        qty=qty,
        group_id=line.group_id,
    )


def compute_diff(lines: Iterable[ReconciliationLine]) -> ReconcileDiff:
    """
    纯函数：行集合 → 差异汇总。

    - 计划行：over = max(0, actual - planned)，short = max(0, planned - actual)，两者互斥；
    - 予定外行：actual 全部计入 unplanned，不计入 over / short。
    """
    over: List[DiffLine] = []
    short: List[DiffLine] = []
    extra: List[DiffLine] = []
    planned_total = actual_total = 0

    for ln in lines:
        actual_total += ln.actual_qty
        if ln.is_unplanned:
            if ln.actual_qty > 0:
                extra.append(_diff_line(ln, ln.actual_qty))
            continue
        planned_total += ln.planned_qty
        o = over_qty(ln)
        s = short_qty(ln)
        if o > 0:
            over.append(_diff_line(ln, o))
        elif s > 0:
            short.append(_diff_line(ln, s))

    return ReconcileDiff(
        over_lines=over,
        short_lines=short,
        unplanned_lines=extra,
        over_qty_total=sum(d.qty for d in over),
        short_qty_total=sum(d.qty for d in short),
        unplanned_qty_total=sum(d.qty for d in extra),
        planned_total=planned_total,
        actual_total=actual_total,
    )


@dataclass(frozen=True)
class ConfirmGate:
    """
    确认门槛（两步）：
      1) can_confirm   = 已加载 且 不在提交中 且 扫码未暂停 且 非只读
      2) warning_ready = 无警告 或 已显式确认警告
    两者都满足才允许提交。
    """

    operation_loaded: bool
    submitting: bool
    scan_paused: bool
    read_only: bool
    has_warning: bool
    acknowledged: bool

    @property
    def can_confirm(self) -> bool:
        return self.operation_loaded and not self.submitting and not self.scan_paused and not self.read_only

    @property
    def warning_ready(self) -> bool:
        return (not self.has_warning) or self.acknowledged

    @property
    def can_commit(self) -> bool:
        return self.can_confirm and self.warning_ready

    def blocked_reason(self) -> str:
        if not self.operation_loaded:
            return "operation not loaded"
        if self.submitting:
            return "commit in progress"
        if self.scan_paused:
            return "scan paused"
        if self.read_only:
            return "read only"
        if not self.warning_ready:
            return "warnings not acknowledged"
        return ""
