# stockrecon/services/reconcile_session.py
from __future__ import annotations

"""
一次对账操作（收货 / 盘点）的会话门面：

  load()    拉计划行（逐组）→ 恢复已完成组（只读）→ 读草稿并迁移 → 合并（不低于 floor）
  scan()    扫码入队（串行解析 + 三段式追加）
  diff()    差异（纯函数）
  commit()  锁 → 两步门槛 → committer（shield，离开画面也不取消）
            → 回写 floor → 推进组状态 → 审计 → 组记录 → 草稿（全部完成才删除）
  close()   取消扫码处理与轮询；挂起的自动保存默认落地
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from stockrecon.adapters.base import PlannedLineSource
from stockrecon.core.errors import CommitAborted, CommitInProgress, ConfirmGateClosed, ResolutionError
from stockrecon.gateway.scan_inbox import ScanInbox
from stockrecon.gateway.scan_item_resolver import CodeResolver
from stockrecon.gateway.scan_keystroke import KeystrokeBuffer
from stockrecon.gateway.scan_queue import ScanQueue
from stockrecon.metrics import COMMIT_LAT, COMMITS, SIDE_EFFECT_FAILURES
from stockrecon.services.audit_logger import AuditEntry, AuditLogger
from stockrecon.services.committer_types import CommitRequest, CommitResult, Workflow
from stockrecon.services.draft_store import DraftStore, OperationDraft
from stockrecon.services.group_records import GroupRecordStore
from stockrecon.services.grouping import GroupingCoordinator, OperationStatus
from stockrecon.services.inventory_committer import InventoryCommitter
from stockrecon.services.line_registry import LineRegistry
from stockrecon.services.line_types import LineChange, MutationResult
from stockrecon.services.reconcile_diff import ConfirmGate, ReconcileDiff, compute_diff
from stockrecon.utils.codes import raw_id

logger = logging.getLogger("stockrecon.session")

_EDIT_KINDS = ("set", "upsert", "remove", "merge")


@dataclass
class OperationContext:
    workflow: Workflow
    operation_ref: str
    location_id: str
    location_name: str = ""
    origin_location_id: Optional[str] = None
    origin_location_name: str = ""
    group_labels: Dict[str, str] = field(default_factory=dict)


class ReconciliationSession:
    def __init__(
        self,
        ctx: OperationContext,
        *,
        planned_source: PlannedLineSource,
        committer: InventoryCommitter,
        resolver: CodeResolver,
        drafts: DraftStore,
        group_records: GroupRecordStore,
        audit: AuditLogger,
        on_blocking_error: Optional[Callable[[ResolutionError], Awaitable[object]]] = None,
        on_reject: Optional[Callable[[MutationResult], None]] = None,
        qty_max: Optional[int] = None,
    ) -> None:
        self.ctx = ctx
        self.planned_source = planned_source
        self.committer = committer
        self.drafts = drafts
        self.group_records = group_records
        self.audit = audit

        self.registry = LineRegistry(qty_max=qty_max, on_reject=on_reject)
        self.coordinator = GroupingCoordinator(self.registry)
        self.queue = ScanQueue(resolver, self.registry, on_blocking_error=on_blocking_error)
        self.keystrokes = KeystrokeBuffer(
            lambda code: self.queue.submit(code, source="keystroke"),
            disabled=lambda: self.queue.paused,
        )

        self.note = ""
        self.reason_code = ""
        self.loaded = False
        self.submitting = False
        self.last_result: Optional[CommitResult] = None
        self.empty_groups: List[str] = []
        self._acknowledged = False
        self._inbox_task: Optional[asyncio.Task] = None
        self._commit_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

        op_id = raw_id(ctx.operation_ref) or ctx.operation_ref
        self.draft_key = drafts.key_for(ctx.workflow.value, ctx.location_id, op_id)
        self.groups_key = group_records.key_for(ctx.workflow.value, ctx.location_id, op_id)

    # ------------------------------------------------------------------
    # 加载
    # ------------------------------------------------------------------

    async def load(self) -> None:
        self.drafts.suppress_fetching = True
        try:
            planned = await self.planned_source.fetch_planned_lines(self.ctx.operation_ref)
            planned_by_group = {gid: [ln.item_id for ln in lines] for gid, lines in planned.items()}
            restored = await self.group_records.load(self.groups_key, planned_by_group=planned_by_group)

            for gid in planned:
                self.coordinator.add_group(gid, self.ctx.group_labels.get(gid, ""), committed_lines=restored.get(gid))
            for gid, lines in planned.items():
                self.registry.upsert_planned(lines, gid)

            legacy = [self.drafts.legacy_key_for(self.ctx.workflow.value, self.ctx.location_id, raw_id(g) or g) for g in planned]
            draft = await self.drafts.load(self.draft_key, legacy_keys=legacy)
            if draft is not None:
                merged = self.registry.merge_saved(draft.lines)
                self.note = draft.note
                self.reason_code = draft.reason_code
                logger.info("draft restored: key=%s lines=%d", self.draft_key, len(merged))
        finally:
            self.drafts.suppress_fetching = False

        self._sync_read_only()
        self.queue.group_id = self.target_group
        self._unsubscribe = self.registry.subscribe(self._on_lines_changed)
        self.loaded = True
        logger.info(
            "operation loaded: workflow=%s ref=%s groups=%d restored=%d status=%s",
            self.ctx.workflow.value,
            self.ctx.operation_ref,
            len(planned),
            len(restored),
            self.status.value,
        )

    def _on_lines_changed(self, change: LineChange) -> None:
        if change.kind not in _EDIT_KINDS:
            return
        # 行变了，之前对警告的确认作废
        self._acknowledged = False
        self.schedule_autosave()

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    @property
    def status(self) -> OperationStatus:
        return self.coordinator.status

    @property
    def read_only(self) -> bool:
        return self.status is OperationStatus.COMPLETED

    @property
    def target_group(self) -> Optional[str]:
        """只剩一个未完成组时扫码直接归入该组；多组并列时由计划行决定（予定外行需提交前分组）。"""
        open_groups = [g.group_id for g in self.coordinator.groups() if not g.is_completed]
        return open_groups[0] if len(open_groups) == 1 else None

    def diff(self) -> ReconcileDiff:
        return compute_diff(self.registry.editable_lines())

    def gate(self) -> ConfirmGate:
        return ConfirmGate(
            operation_loaded=self.loaded,
            submitting=self.submitting,
            scan_paused=self.queue.paused,
            read_only=self.read_only,
            has_warning=self.diff().has_warning,
            acknowledged=self._acknowledged,
        )

    @property
    def can_confirm(self) -> bool:
        return self.gate().can_confirm

    @property
    def warning_ready(self) -> bool:
        return self.gate().warning_ready

    def acknowledge_warnings(self) -> None:
        self._acknowledged = True

    def _sync_read_only(self) -> None:
        self.drafts.suppress_read_only = self.read_only
        if self.read_only:
            self.registry.seal()

    # ------------------------------------------------------------------
    # 扫码
    # ------------------------------------------------------------------

    def scan(self, code: str, *, source: str = "keystroke") -> bool:
        return self.queue.submit(code, source=source)

    def start_inbox(self, inbox: ScanInbox) -> asyncio.Task:
        if self._inbox_task is None or self._inbox_task.done():
            self._inbox_task = asyncio.get_running_loop().create_task(
                inbox.run(lambda code: self.queue.submit(code, source="inbox")), name="scan-inbox"
            )
        return self._inbox_task

    # ------------------------------------------------------------------
    # 草稿
    # ------------------------------------------------------------------

    def snapshot(self) -> OperationDraft:
        return OperationDraft(
            operation_id=self.ctx.operation_ref,
            lines=[dataclasses.replace(ln) for ln in self.registry.editable_lines()],
            note=self.note,
            reason_code=self.reason_code,
        )

    def schedule_autosave(self) -> Optional[asyncio.Task]:
        if not self.loaded:
            return None
        return self.drafts.schedule_save(self.draft_key, self.snapshot)

    def set_note(self, note: str, reason_code: Optional[str] = None) -> None:
        self.note = str(note or "")
        if reason_code is not None:
            self.reason_code = str(reason_code)
        self.schedule_autosave()

    # ------------------------------------------------------------------
    # 提交
    # ------------------------------------------------------------------

    async def commit(self, *, finalize: bool = True, group_ids: Optional[List[str]] = None) -> CommitResult:
        if self.submitting:
            raise CommitInProgress()
        gate = self.gate()
        if not gate.can_commit:
            raise ConfirmGateClosed(gate.blocked_reason())

        self._assign_ungrouped()
        ready, empty = self.coordinator.commit_candidates(group_ids)
        self.empty_groups = empty
        if empty:
            logger.info("groups without counted items excluded: %s", empty)
        if not ready:
            raise ConfirmGateClosed("no counted items")

        req = CommitRequest(
            workflow=self.ctx.workflow,
            operation_ref=self.ctx.operation_ref,
            location_id=self.ctx.location_id,
            lines=[dataclasses.replace(ln) for ln in self.registry.editable_lines() if ln.group_id in ready],
            group_ids=ready,
            finalize=finalize,
            note=self.note,
            reason=self.reason_code,
            origin_location_id=self.ctx.origin_location_id,
            location_name=self.ctx.location_name,
            origin_location_name=self.ctx.origin_location_name,
        )

        self.submitting = True
        try:
            await self.drafts.flush()
        except asyncio.CancelledError:
            self.submitting = False
            raise
        self._commit_task = asyncio.get_running_loop().create_task(self._run_commit(req), name="recon-commit")
        return await asyncio.shield(self._commit_task)

    def _assign_ungrouped(self) -> None:
        stray = [ln for ln in self.registry.editable_lines() if ln.group_id is None]
        if not stray:
            return
        target = self.target_group
        if target is None:
            raise ConfirmGateClosed("unplanned lines must be assigned to a group")
        for ln in stray:
            self.registry.assign_group(ln.line_id, target)

    async def _run_commit(self, req: CommitRequest) -> CommitResult:
        wf = req.workflow.value
        started = time.perf_counter()
        try:
            try:
                result = await self.committer.commit(req)
            except CommitAborted as exc:
                COMMITS.labels(workflow=wf, outcome="aborted").inc()
                if isinstance(exc.partial, CommitResult):
                    await self._apply_result(req, exc.partial, aborted=True)
                else:
                    await self._save_draft()
                raise
            COMMIT_LAT.labels(workflow=wf).observe(time.perf_counter() - started)
            await self._apply_result(req, result, aborted=False)
            COMMITS.labels(workflow=wf, outcome="partial" if result.warnings else "ok").inc()
            self.last_result = result
            return result
        finally:
            self.submitting = False
            self._acknowledged = False

    async def _apply_result(self, req: CommitRequest, result: CommitResult, *, aborted: bool) -> None:
        self.registry.apply_committed(result.committed)

        # 收货的部分保存只抬高 floor；最终确认 / 盘点才推进组状态
        advance = result.finalize or result.workflow is Workflow.COUNT
        completed: List[str] = []
        if advance:
            for gid in result.group_ids:
                grp = self.coordinator.get(gid)
                if grp is None or grp.is_completed:
                    continue
                # 提交期间扫进来的数量没发到远端：这些行保持可编辑，组留在 in_progress
                submitted = {ln.line_id: ln.actual_qty for ln in req.lines_for_group(gid)}
                if self.coordinator.complete(
                    gid,
                    covered_line_ids=result.covered.get(gid, []),
                    deltas=result.deltas,
                    submitted_qty=submitted,
                ):
                    completed.append(gid)

        for gid in result.group_ids:
            await self._append_audit(req, result, gid)
        try:
            await self.group_records.save(self.groups_key, self.ctx.operation_ref, self.coordinator)
        except Exception as exc:
            SIDE_EFFECT_FAILURES.labels(kind="group_record").inc()
            logger.warning("group record save failed: key=%s err=%s", self.groups_key, exc)
            result.warnings.append(f"group record: {exc}")

        self._sync_read_only()
        self.queue.group_id = self.target_group

        # 草稿删除放在最后：只有全部组完成且没有中断才删
        if not aborted and self.status is OperationStatus.COMPLETED:
            await self.drafts.clear(self.draft_key)
        else:
            await self._save_draft()

        logger.info(
            "commit applied: ref=%s groups=%s completed=%s status=%s aborted=%s warnings=%d",
            req.operation_ref,
            result.group_ids,
            completed,
            self.status.value,
            aborted,
            len(result.warnings),
        )

    async def _append_audit(self, req: CommitRequest, result: CommitResult, gid: str) -> None:
        diff = compute_diff(req.lines_for_group(gid))
        extras = [d.to_log() for d in diff.unplanned_lines]
        if req.workflow is Workflow.RECEIVE:
            applied = {e["inventoryItemId"] for e in result.extras}
            extras = [e for e in extras if e["inventoryItemId"] in applied]
            group_items = {ln.item_id for ln in req.lines_for_group(gid)}
            extras.extend(
                {"inventoryItemId": k, "qty": v, "folded": True}
                for k, v in result.folded.items()
                if k in applied and k in group_items
            )
        entry = AuditEntry(
            operation_ref=gid,
            location_ref=req.location_id,
            reason=req.reason,
            note=req.note,
            over=[d.to_log() for d in diff.over_lines],
            extras=extras,
        )
        try:
            await self.audit.append(entry)
        except Exception as exc:
            SIDE_EFFECT_FAILURES.labels(kind="audit").inc()
            logger.warning("audit append failed: group=%s err=%s", gid, exc)
            result.warnings.append(f"audit: {exc}")

    async def _save_draft(self) -> None:
        try:
            await self.drafts.save_now(self.draft_key, self.snapshot())
        except Exception:
            logger.exception("draft save after commit failed: key=%s", self.draft_key)

    # ------------------------------------------------------------------

    async def close(self, *, save_pending: bool = True) -> None:
        """离开画面：停止扫码处理与轮询；进行中的提交不取消。"""
        self.keystrokes.cancel()
        await self.queue.close()
        if self._inbox_task is not None and not self._inbox_task.done():
            self._inbox_task.cancel()
            try:
                await self._inbox_task
            except asyncio.CancelledError:
                pass
        self._inbox_task = None
        if save_pending:
            await self.drafts.flush()
        else:
            self.drafts.cancel(self.draft_key)
        if self._commit_task is not None and not self._commit_task.done():
            logger.info("session closed while commit in flight: ref=%s", self.ctx.operation_ref)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.coordinator.close()
