# stockrecon/services/line_registry.py
from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Union

from stockrecon.core.config import get_settings
from stockrecon.core.errors import RejectReason
from stockrecon.services.line_types import (
    ItemIdentity,
    LineChange,
    LineFilter,
    MutationResult,
    ReconciliationLine,
    compose_title,
)
from stockrecon.utils.qty import to_qty

logger = logging.getLogger("stockrecon.lines")

Listener = Callable[[LineChange], None]


def extra_line_id(item_id: str, group_id: Optional[str]) -> str:
    return f"extra:{group_id}:{item_id}" if group_id else f"extra:{item_id}"


class LineRegistry:
    """
    对账行表（唯一的行变更入口）：

    - 以 line_id 为主键，按 (group_id, item_id) 建索引；
    - set_qty / increment 夹在 [floor, max]；floor > 0 时低于 floor 直接拒绝（不静默夹取）；
    - add_unplanned 三段式解析：计划行 → 已有予定外行 → 新建予定外行；
    - 只读组的所有变更被拒绝，拒绝提示在一次只读会话内最多一次；
    - 每次生效的变更递增 version 并通知订阅者（草稿自动保存 / 差异重算）。
    """

    def __init__(
        self,
        *,
        qty_max: Optional[int] = None,
        on_reject: Optional[Callable[[MutationResult], None]] = None,
    ) -> None:
        self.qty_max = int(qty_max if qty_max is not None else get_settings().QTY_MAX)
        self._lines: Dict[str, ReconciliationLine] = {}
        self._read_only_groups: Set[Optional[str]] = set()
        self._read_only_notified = False
        # 整个操作已完成：任何变更都拒绝（包括未分组的予定外追加）
        self.sealed = False
        self._listeners: List[Listener] = []
        self._on_reject = on_reject
        self.version = 0

    # ------------------------------------------------------------------
    # 订阅
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, kind: str, lines: Iterable[ReconciliationLine]) -> None:
        lines = list(lines)
        self.version += 1
        change = LineChange(
            kind=kind,
            line_ids=[ln.line_id for ln in lines],
            group_ids=sorted({ln.group_id for ln in lines}, key=lambda g: g or ""),
        )
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("line listener failed: kind=%s", kind)

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._lines)

    def __contains__(self, line_id: object) -> bool:
        return line_id in self._lines

    def get(self, line_id: str) -> Optional[ReconciliationLine]:
        return self._lines.get(line_id)

    def lines(self) -> List[ReconciliationLine]:
        return list(self._lines.values())

    def lines_for_group(self, group_id: Optional[str]) -> List[ReconciliationLine]:
        return [ln for ln in self._lines.values() if ln.group_id == group_id]

    def editable_lines(self, group_id: Optional[str] = None) -> List[ReconciliationLine]:
        out = [ln for ln in self._lines.values() if not self._is_read_only(ln)]
        if group_id is not None:
            out = [ln for ln in out if ln.group_id == group_id]
        return out

    def find_planned(self, item_id: str, group_id: Optional[str] = None) -> Optional[ReconciliationLine]:
        for ln in self._lines.values():
            if ln.is_unplanned or ln.item_id != item_id or self._is_read_only(ln):
                continue
            if group_id is not None and ln.group_id != group_id:
                continue
            return ln
        return None

    def find_unplanned(self, item_id: str, group_id: Optional[str] = None) -> Optional[ReconciliationLine]:
        for ln in self._lines.values():
            if not ln.is_unplanned or ln.item_id != item_id or self._is_read_only(ln):
                continue
            if ln.group_id != group_id:
                continue
            return ln
        return None

    def list_visible(
        self,
        filter: Union[LineFilter, str] = LineFilter.ALL,
        *,
        group_id: Optional[str] = None,
    ) -> List[ReconciliationLine]:
        """
        可见行：
          - ALL       : 全部（含只读）
          - REMAINING : 计划行中 planned - rejected - actual > 0 的行
          - PLANNED / UNPLANNED : 按计划属性
          - EDITABLE  : 非只读
        group_id 给定时只看该组。
        """
        f = LineFilter(filter)
        base = self.lines() if group_id is None else self.lines_for_group(group_id)
        if f is LineFilter.REMAINING:
            return [ln for ln in base if not ln.is_unplanned and ln.remaining_qty > 0]
        if f is LineFilter.PLANNED:
            return [ln for ln in base if not ln.is_unplanned]
        if f is LineFilter.UNPLANNED:
            return [ln for ln in base if ln.is_unplanned]
        if f is LineFilter.EDITABLE:
            return [ln for ln in base if not self._is_read_only(ln)]
        return base

    # ------------------------------------------------------------------
    # 只读
    # ------------------------------------------------------------------

    def _is_read_only(self, line: ReconciliationLine) -> bool:
        return self.sealed or line.read_only or line.group_id in self._read_only_groups

    def seal(self) -> None:
        self.sealed = True

    def is_group_read_only(self, group_id: Optional[str]) -> bool:
        return group_id in self._read_only_groups

    def freeze_group(self, group_id: Optional[str]) -> List[ReconciliationLine]:
        """组已提交：该组行全部置只读。"""
        self._read_only_groups.add(group_id)
        frozen = self.lines_for_group(group_id)
        for ln in frozen:
            ln.read_only = True
        self._emit("freeze", frozen)
        return frozen

    def reset_read_only_notice(self) -> None:
        """开始新的只读会话（例如重新进入画面）时重置“已提示”标记。"""
        self._read_only_notified = False

    def _reject(self, reason: RejectReason, line: Optional[ReconciliationLine] = None) -> MutationResult:
        notify = True
        if reason is RejectReason.READ_ONLY:
            notify = not self._read_only_notified
            self._read_only_notified = True
        res = MutationResult(ok=False, line=line, reason=reason, notify=notify)
        logger.debug(
            "line mutation rejected: reason=%s line=%s notify=%s",
            reason.value,
            line.line_id if line else None,
            notify,
        )
        if notify and self._on_reject is not None:
            self._on_reject(res)
        return res

    # ------------------------------------------------------------------
    # 变更
    # ------------------------------------------------------------------

    def upsert_planned(
        self,
        items: Iterable[Union[ReconciliationLine, Mapping]],
        group_id: Optional[str] = None,
    ) -> List[ReconciliationLine]:
        """
        写入/刷新计划行：

        - 已存在：刷新计划量与展示字段，actual 不低于新的 floor；
        - 新行：actual 至少为 floor（已提交量）；
        - 同组已有同一 item 的予定外行：并入计划行后删除予定外行（保证组内身份唯一）。
        """
        touched: List[ReconciliationLine] = []
        for raw in items:
            src = raw if isinstance(raw, ReconciliationLine) else ReconciliationLine.from_dict(raw)
            if src is None:
                continue
            gid = group_id if group_id is not None else src.group_id
            cur = self._lines.get(src.line_id)
            if cur is not None:
                cur.planned_qty = src.planned_qty
                cur.committed_qty = max(cur.committed_qty, src.committed_qty)
                cur.rejected_qty = src.rejected_qty
                cur.title = src.title or cur.title
                cur.sku = src.sku or cur.sku
                cur.barcode = src.barcode or cur.barcode
                cur.image_url = src.image_url or cur.image_url
                cur.remote_line_id = src.remote_line_id or cur.remote_line_id
                cur.actual_qty = max(cur.actual_qty, cur.committed_qty)
                touched.append(cur)
                continue

            line = ReconciliationLine(
                line_id=src.line_id,
                item_id=src.item_id,
                variant_id=src.variant_id,
                sku=src.sku,
                barcode=src.barcode,
                image_url=src.image_url,
                title=src.title or compose_title("", "", src.sku or src.item_id),
                planned_qty=src.planned_qty,
                actual_qty=max(src.actual_qty, src.committed_qty),
                committed_qty=src.committed_qty,
                rejected_qty=src.rejected_qty,
                group_id=gid,
                is_unplanned=False,
                read_only=src.read_only or gid in self._read_only_groups,
                remote_line_id=src.remote_line_id,
            )
            extra = self.find_unplanned(line.item_id, gid)
            if extra is not None and not line.read_only:
                line.actual_qty = min(self.qty_max, line.actual_qty + extra.actual_qty)
                del self._lines[extra.line_id]
            self._lines[line.line_id] = line
            touched.append(line)

        if touched:
            self._emit("upsert", touched)
        return touched

    def _apply_target(self, line: ReconciliationLine, target: int) -> MutationResult:
        if self._is_read_only(line):
            return self._reject(RejectReason.READ_ONLY, line)
        floor = line.floor
        if target < floor:
            if floor > 0:
                return self._reject(RejectReason.BELOW_FLOOR, line)
            target = 0
        target = min(self.qty_max, target)

        if target == 0 and line.is_unplanned and floor == 0:
            del self._lines[line.line_id]
            self._emit("remove", [line])
            return MutationResult(ok=True, line=line, removed=True)

        if target == line.actual_qty:
            return MutationResult(ok=True, line=line)
        line.actual_qty = target
        self._emit("set", [line])
        return MutationResult(ok=True, line=line)

    def set_qty(self, line_id: str, qty: object) -> MutationResult:
        line = self._lines.get(line_id)
        if line is None:
            return self._reject(RejectReason.NOT_FOUND)
        try:
            target = int(qty)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return self._reject(RejectReason.INVALID_QTY, line)
        return self._apply_target(line, target)

    def increment(self, line_id: str, delta: int = 1) -> MutationResult:
        line = self._lines.get(line_id)
        if line is None:
            return self._reject(RejectReason.NOT_FOUND)
        return self._apply_target(line, line.actual_qty + int(delta))

    def add_unplanned(
        self,
        identity: ItemIdentity,
        qty: int = 1,
        *,
        group_id: Optional[str] = None,
    ) -> MutationResult:
        """
        扫码 / 搜索追加（顺序不可调换）：
          1) 已在计划行中 → 计划行 +qty
          2) 已在予定外行中 → 该予定外行 +qty
          3) 否则新建予定外行
        group_id 为空时在所有可编辑计划行中查找（多组合并显示）。
        """
        qty = int(qty)
        planned = self.find_planned(identity.item_id, group_id)
        if planned is not None:
            return self.increment(planned.line_id, qty)

        if self.sealed or (group_id is not None and self.is_group_read_only(group_id)):
            return self._reject(RejectReason.READ_ONLY)

        extra = self.find_unplanned(identity.item_id, group_id)
        if extra is not None:
            return self.increment(extra.line_id, qty)

        if qty <= 0:
            return self._reject(RejectReason.INVALID_QTY)

        line = ReconciliationLine(
            line_id=extra_line_id(identity.item_id, group_id),
            item_id=identity.item_id,
            variant_id=identity.variant_id,
            sku=identity.sku,
            barcode=identity.barcode,
            image_url=identity.image_url,
            title=identity.title,
            planned_qty=0,
            actual_qty=min(self.qty_max, qty),
            group_id=group_id,
            is_unplanned=True,
        )
        self._lines[line.line_id] = line
        self._emit("upsert", [line])
        return MutationResult(ok=True, line=line)

    def remove(self, line_id: str) -> MutationResult:
        """
        删除行：只允许 floor == 0 的行。
        予定外行直接移除；计划行保留计划，仅把 actual 归零。
        """
        line = self._lines.get(line_id)
        if line is None:
            return self._reject(RejectReason.NOT_FOUND)
        if self._is_read_only(line):
            return self._reject(RejectReason.READ_ONLY, line)
        if line.floor > 0:
            return self._reject(RejectReason.HAS_COMMITTED, line)
        return self._apply_target(line, 0) if not line.is_unplanned else self._drop(line)

    def _drop(self, line: ReconciliationLine) -> MutationResult:
        del self._lines[line.line_id]
        self._emit("remove", [line])
        return MutationResult(ok=True, line=line, removed=True)

    def assign_group(self, line_id: str, group_id: Optional[str]) -> MutationResult:
        """把尚未分组的予定外行归入某组（提交前分配）。"""
        line = self._lines.get(line_id)
        if line is None:
            return self._reject(RejectReason.NOT_FOUND)
        if self._is_read_only(line) or group_id in self._read_only_groups:
            return self._reject(RejectReason.READ_ONLY, line)
        if line.group_id == group_id:
            return MutationResult(ok=True, line=line)

        existing = (
            self.find_unplanned(line.item_id, group_id)
            if line.is_unplanned
            else None
        )
        if existing is not None:
            existing.actual_qty = min(self.qty_max, existing.actual_qty + line.actual_qty)
            del self._lines[line.line_id]
            self._emit("merge", [line, existing])
            return MutationResult(ok=True, line=existing)

        if line.is_unplanned:
            del self._lines[line.line_id]
            line.line_id = extra_line_id(line.item_id, group_id)
            self._lines[line.line_id] = line
        line.group_id = group_id
        self._emit("set", [line])
        return MutationResult(ok=True, line=line)

    # ------------------------------------------------------------------
    # 草稿合并 / 提交回写
    # ------------------------------------------------------------------

    def merge_saved(self, saved: Iterable[ReconciliationLine]) -> List[ReconciliationLine]:
        """
        把草稿行合并到刚拉取的计划行上（只在进入画面时调用一次）：

        - 同 line_id 的计划行：actual = max(floor, 草稿 actual)；
        - 草稿中的予定外行：按三段式并入（计划行优先，其次已有予定外行）；
        - 只读组的草稿行忽略。
        """
        merged: List[ReconciliationLine] = []
        for d in saved:
            if d.group_id in self._read_only_groups:
                continue
            cur = self._lines.get(d.line_id)
            if cur is not None and not cur.is_unplanned:
                if self._is_read_only(cur):
                    continue
                cur.actual_qty = min(self.qty_max, max(cur.floor, d.actual_qty))
                merged.append(cur)
                continue
            if not d.item_id:
                continue
            if not d.is_unplanned and cur is None:
                # 计划里已经不存在的计划行：按予定外处理，数量不丢
                d = ReconciliationLine(**{**d.__dict__, "is_unplanned": True, "planned_qty": 0})
            planned = self.find_planned(d.item_id, d.group_id)
            if planned is not None:
                planned.actual_qty = min(self.qty_max, max(planned.floor, planned.actual_qty + d.actual_qty))
                merged.append(planned)
                continue
            extra = self.find_unplanned(d.item_id, d.group_id)
            if extra is not None:
                extra.actual_qty = min(self.qty_max, max(extra.floor, d.actual_qty))
                extra.committed_qty = max(extra.committed_qty, d.committed_qty)
                merged.append(extra)
                continue
            if d.actual_qty <= 0 and d.committed_qty <= 0:
                continue
            line = ReconciliationLine(**{**d.__dict__, "read_only": False})
            line.line_id = extra_line_id(line.item_id, line.group_id)
            line.actual_qty = min(self.qty_max, max(line.floor, line.actual_qty))
            self._lines[line.line_id] = line
            merged.append(line)
        if merged:
            self._emit("merge", merged)
        return merged

    def apply_committed(self, committed: Mapping[str, int]) -> List[ReconciliationLine]:
        """
        提交成功后回写 floor：committed[line_id] = 本次新增入账量。
        floor 只升不降，actual 不低于新 floor。
        """
        touched: List[ReconciliationLine] = []
        for line_id, added in committed.items():
            line = self._lines.get(line_id)
            add = to_qty(added)
            if line is None or add <= 0:
                continue
            line.committed_qty += add
            line.actual_qty = max(line.actual_qty, line.committed_qty)
            touched.append(line)
        if touched:
            self._emit("commit", touched)
        return touched

    def snapshot(self, *, editable_only: bool = True) -> List[dict]:
        src = self.editable_lines() if editable_only else self.lines()
        return [ln.to_dict() for ln in src]

    def clear(self) -> None:
        self._lines.clear()
        self._read_only_groups.clear()
        self._read_only_notified = False
        self.sealed = False
        self.version += 1
