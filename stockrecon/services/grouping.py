# stockrecon/services/grouping.py
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from stockrecon.services.line_registry import LineRegistry
from stockrecon.services.line_types import CommittedLine, LineChange, ReconciliationLine

logger = logging.getLogger("stockrecon.groups")


class GroupState(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class OperationStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class GroupTransitionError(Exception):
    """非法的组状态迁移（completed 是终态）"""


@dataclass
class Group:
    group_id: str
    label: str = ""
    state: GroupState = GroupState.PENDING
    committed_lines: List[CommittedLine] = field(default_factory=list)

    @property
    def is_completed(self) -> bool:
        return self.state is GroupState.COMPLETED


def is_qualifying(line: ReconciliationLine) -> bool:
    """参与提交的行：有计划量或有实际量。"""
    return line.planned_qty > 0 or line.actual_qty > 0


class GroupingCoordinator:
    """
    分组协调器（组状态迁移 + committed_lines 的唯一写入方）：

        pending ──首次编辑/进入──▶ in_progress ──提交成功且覆盖全部可编辑行──▶ completed（终态）

    - completed ⇔ committed_lines 非空；
    - 没有可提交行的组不会被标记为完成，而是作为“无计数商品”报告并排除在提交门槛外；
    - 整个操作完成 = 每个组各自 completed。
    """

    def __init__(self, registry: LineRegistry) -> None:
        self.registry = registry
        self._groups: Dict[str, Group] = {}
        self._unsubscribe = registry.subscribe(self._on_lines_changed)

    # ------------------------------------------------------------------

    def add_group(
        self,
        group_id: str,
        label: str = "",
        *,
        committed_lines: Optional[Iterable[CommittedLine]] = None,
    ) -> Group:
        frozen = list(committed_lines or [])
        grp = self._groups.get(group_id)
        if grp is None:
            grp = Group(group_id=group_id, label=label or group_id)
            self._groups[group_id] = grp
        elif label:
            grp.label = label
        if frozen and not grp.is_completed:
            grp.committed_lines = frozen
            grp.state = GroupState.COMPLETED
            self.registry.freeze_group(group_id)
        return grp

    def get(self, group_id: str) -> Optional[Group]:
        return self._groups.get(group_id)

    def groups(self) -> List[Group]:
        return list(self._groups.values())

    def group_ids(self) -> List[str]:
        return list(self._groups.keys())

    # ------------------------------------------------------------------

    def _on_lines_changed(self, change: LineChange) -> None:
        if change.kind not in ("set", "upsert", "remove", "merge"):
            return
        # upsert 来自计划拉取时不算编辑；只有予定外新建（extra:）或数量变更算
        if change.kind == "upsert" and not any(lid.startswith("extra:") for lid in change.line_ids):
            return
        for gid in change.group_ids:
            if gid is None:
                continue
            grp = self._groups.get(gid)
            if grp is not None and grp.state is GroupState.PENDING:
                grp.state = GroupState.IN_PROGRESS
                logger.debug("group %s → in_progress (edit)", gid)

    def enter(self, group_id: str) -> Group:
        """操作员导航进入某组：pending → in_progress。"""
        grp = self._groups.get(group_id)
        if grp is None:
            raise KeyError(group_id)
        if grp.state is GroupState.PENDING:
            grp.state = GroupState.IN_PROGRESS
        return grp

    # ------------------------------------------------------------------

    def partition(self) -> Dict[Optional[str], List[ReconciliationLine]]:
        out: Dict[Optional[str], List[ReconciliationLine]] = {gid: [] for gid in self._groups}
        for ln in self.registry.lines():
            out.setdefault(ln.group_id, []).append(ln)
        return out

    def qualifying_lines(self, group_id: str) -> List[ReconciliationLine]:
        return [ln for ln in self.registry.editable_lines(group_id) if is_qualifying(ln)]

    def commit_candidates(self, group_ids: Optional[Iterable[str]] = None) -> Tuple[List[str], List[str]]:
        """
        → (可提交组, 无计数商品组)；已完成组两边都不出现。
        """
        wanted = list(group_ids) if group_ids is not None else self.group_ids()
        ready: List[str] = []
        empty: List[str] = []
        for gid in wanted:
            grp = self._groups.get(gid)
            if grp is None or grp.is_completed:
                continue
            (ready if self.qualifying_lines(gid) else empty).append(gid)
        return ready, empty

    def complete(
        self,
        group_id: str,
        *,
        covered_line_ids: Iterable[str],
        deltas: Optional[Mapping[str, int]] = None,
        submitted_qty: Optional[Mapping[str, int]] = None,
    ) -> bool:
        """
        提交成功后推进到 completed：

        - covered_line_ids 必须覆盖该组当前所有可编辑行，否则保持 in_progress；
        - submitted_qty（提交时的 actual 快照）给出时，提交期间数量又变过的行不算覆盖；
        - 冻结快照为空（没有可提交行）时不完成；
        - 完成后该组行全部只读。
        """
        grp = self._groups.get(group_id)
        if grp is None:
            raise KeyError(group_id)
        if grp.is_completed:
            raise GroupTransitionError(f"group {group_id} already completed")

        covered = set(covered_line_ids)
        if submitted_qty is not None:
            covered = {lid for lid in covered if lid in submitted_qty}
        editable = self.registry.editable_lines(group_id)
        missing = [
            ln.line_id
            for ln in editable
            if ln.line_id not in covered
            or (submitted_qty is not None and submitted_qty[ln.line_id] != ln.actual_qty)
        ]
        if missing:
            logger.info("group %s not completed: uncovered lines %s", group_id, missing)
            if grp.state is GroupState.PENDING:
                grp.state = GroupState.IN_PROGRESS
            return False

        d = deltas or {}
        snapshot = [CommittedLine.freeze(ln, int(d.get(ln.line_id, 0))) for ln in editable if is_qualifying(ln)]
        if not snapshot:
            logger.info("group %s not completed: no counted items", group_id)
            return False

        grp.committed_lines = snapshot
        grp.state = GroupState.COMPLETED
        self.registry.freeze_group(group_id)
        return True

    @property
    def status(self) -> OperationStatus:
        groups = self.groups()
        if groups and all(g.is_completed for g in groups):
            return OperationStatus.COMPLETED
        if all(g.state is GroupState.PENDING for g in groups):
            return OperationStatus.PENDING
        return OperationStatus.IN_PROGRESS

    def close(self) -> None:
        self._unsubscribe()
