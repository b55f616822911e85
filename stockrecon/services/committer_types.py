# stockrecon/services/committer_types.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from stockrecon.services.line_types import ReconciliationLine


class Workflow(str, enum.Enum):
    RECEIVE = "receive"
    COUNT = "count"


@dataclass
class CommitRequest:
    """
    一次确认动作的输入：

    - lines      : 本次提交的可编辑行（按组）
    - group_ids  : 按顺序逐组提交，组之间没有原子性
    - finalize   : True = 最终确认（收货时推送拒收）；False = 部分保存
    """

    workflow: Workflow
    operation_ref: str
    location_id: str
    lines: List[ReconciliationLine]
    group_ids: List[str]
    finalize: bool = True
    note: str = ""
    reason: str = ""
    origin_location_id: Optional[str] = None
    location_name: str = ""
    origin_location_name: str = ""

    def lines_for_group(self, group_id: str) -> List[ReconciliationLine]:
        return [ln for ln in self.lines if ln.group_id == group_id]


@dataclass
class AdjustOutcome:
    """激活 + 调整的结果：applied 为实际调整成功的 item → delta。"""

    applied: Dict[str, int] = field(default_factory=dict)
    skipped: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    fallback_used: bool = False


@dataclass
class CommitResult:
    """
    - committed : line_id → 本次新增入账量（回写 floor 用）
    - deltas    : line_id → 冻结快照里记录的 delta
    - covered   : group_id → 本次确实处理到的 line_id
    - group_ids : 数值调整已完成的组（按提交顺序）
    - folded    : 超量重试时转入予定外的 item → 数量
    - warnings  : 非致命副作用失败（备注 / 变动日志 / 部分激活失败）
    """

    workflow: Workflow
    finalize: bool = True
    committed: Dict[str, int] = field(default_factory=dict)
    deltas: Dict[str, int] = field(default_factory=dict)
    covered: Dict[str, List[str]] = field(default_factory=dict)
    group_ids: List[str] = field(default_factory=list)
    adjustments: List[Dict[str, Any]] = field(default_factory=list)
    over: List[Dict[str, Any]] = field(default_factory=list)
    extras: List[Dict[str, Any]] = field(default_factory=list)
    folded: Dict[str, int] = field(default_factory=dict)
    capped: bool = False
    fallback_used: bool = False
    warnings: List[str] = field(default_factory=list)

    def credit(self, line_id: str, qty: int) -> None:
        if qty > 0:
            self.committed[line_id] = self.committed.get(line_id, 0) + qty

    def cover(self, group_id: str, line_id: str) -> None:
        ids = self.covered.setdefault(group_id, [])
        if line_id not in ids:
            ids.append(line_id)


@dataclass
class SideEffect:
    """提交后的副作用（各自可失败，失败只变成警告）。"""

    kind: str  # note / change_log / activation / audit
    label: str
    run: Callable[[], Awaitable[Any]]
