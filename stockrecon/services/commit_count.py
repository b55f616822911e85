# stockrecon/services/commit_count.py
from __future__ import annotations

import logging
from typing import Dict, List

from stockrecon.core.errors import RemoteError
from stockrecon.services.change_log import Activity, ChangeLogEntry
from stockrecon.services.committer_types import CommitRequest, CommitResult, SideEffect, Workflow
from stockrecon.services.grouping import is_qualifying
from stockrecon.services.inventory_committer import InventoryCommitter, line_meta, reference_uri
from stockrecon.services.reconcile_diff import compute_diff
from stockrecon.utils.codes import raw_id

logger = logging.getLogger("stockrecon.commit")


class CountCommitter(InventoryCommitter):
    """
    盘点确认（逐组 = 逐商品组）：

    - delta = 实盘量 - 提交时重新读取的当前库存（没有 level 视为 0），
      同一组重复提交时 delta 为 0，天然幂等；
    - 先激活再调整；激活失败的块跳过并记警告，对应行不算覆盖；
    - 每个 item 记一条 inventory_count 变动日志（quantity_after = 实盘量）。
    """

    workflow = Workflow.COUNT

    async def commit(self, req: CommitRequest) -> CommitResult:
        result = CommitResult(workflow=self.workflow, finalize=req.finalize)
        ref = reference_uri(self.workflow, req.operation_ref)
        source_id = raw_id(req.operation_ref)
        change_log: List[ChangeLogEntry] = []

        diff = compute_diff(req.lines)
        result.over = [d.to_log() for d in diff.over_lines]
        result.extras = [d.to_log() for d in diff.unplanned_lines]

        for gid in req.group_ids:
            lines = [ln for ln in req.lines_for_group(gid) if is_qualifying(ln)]
            meta = {ln.item_id: line_meta(ln) for ln in lines}
            deltas: Dict[str, int] = {}
            after: Dict[str, int] = {}
            try:
                for ln in lines:
                    cur = await self.remote.fetch_current_quantity(ln.item_id, req.location_id)
                    delta = ln.actual_qty - int(cur or 0)
                    result.deltas[ln.line_id] = delta
                    after[ln.item_id] = ln.actual_qty
                    if delta != 0:
                        deltas[ln.item_id] = delta
                outcome = await self.adjuster.activate_and_adjust(req.location_id, deltas, reference=ref)
            except RemoteError as exc:
                raise self.abort(f"count adjustment failed for {gid}: {exc.message}", result, exc) from exc

            result.fallback_used |= outcome.fallback_used
            result.warnings.extend(outcome.errors)
            for ln in req.lines_for_group(gid):
                if ln.item_id not in outcome.skipped:
                    result.cover(gid, ln.line_id)
            for item_id, d in outcome.applied.items():
                m = meta.get(item_id) or {}
                result.adjustments.append(
                    {
                        "locationName": req.location_name or req.location_id,
                        "locationId": req.location_id,
                        "inventoryItemId": item_id,
                        "title": m.get("title") or item_id,
                        "sku": m.get("sku") or "",
                        "delta": d,
                    }
                )
            change_log.extend(
                self.log_entries(
                    activity=Activity.INVENTORY_COUNT,
                    location_id=req.location_id,
                    location_name=req.location_name,
                    deltas=outcome.applied,
                    meta=meta,
                    source_id=source_id,
                    quantity_after=after,
                )
            )
            result.group_ids.append(gid)
            logger.info(
                "count group committed: group=%s adjusted=%d skipped=%d fallback=%s",
                gid,
                len(outcome.applied),
                len(outcome.skipped),
                outcome.fallback_used,
            )

        effects: List[SideEffect] = []
        eff = self.change_log_effect(change_log)
        if eff is not None:
            effects.append(eff)
        await self.run_side_effects(effects, result)
        return result
