# stockrecon/services/commit_receive.py
from __future__ import annotations

import logging
from typing import Dict, List, Tuple

from stockrecon.adapters.base import ReceiveItem, ReceiveReason
from stockrecon.core.errors import RemoteError, RemoteErrorKind
from stockrecon.services.change_log import Activity, ChangeLogEntry
from stockrecon.services.committer_types import CommitRequest, CommitResult, SideEffect, Workflow
from stockrecon.services.inventory_committer import InventoryCommitter, line_meta, reference_uri
from stockrecon.services.line_types import ReconciliationLine
from stockrecon.services.note_builder import build_note_line
from stockrecon.services.reconcile_diff import compute_diff
from stockrecon.utils.codes import raw_id

logger = logging.getLogger("stockrecon.commit")


def capped_split(line: ReconciliationLine, want: int) -> Tuple[int, int]:
    """超量时：可收 = planned - rejected - 已接收（floor）；→ (capped, overflow)，两者之和 == want。"""
    receivable = max(0, line.planned_qty - line.rejected_qty - line.committed_qty)
    capped = min(receivable, want)
    return capped, want - capped


class ReceiveCommitter(InventoryCommitter):
    """
    入库确认（逐组 = 逐 shipment）：

      1) 有超出 / 予定外 / 备注 → 先追加单据备注（尽力而为）
      2) 计划行按 (actual - 已接收) 收货；报 QUANTITY_BOUNDS 时按可收量封顶重试，
         超出部分并入予定外，不丢数量
      3) finalize：不足部分按 REJECTED 推送，并在出库元 +short（货物退回）
      4) 予定外（含并入部分）：入库先激活再 +delta，出库元 -delta
      5) 变动日志 / 调整记录备注：失败只记警告
    """

    workflow = Workflow.RECEIVE
    annotates = True

    async def commit(self, req: CommitRequest) -> CommitResult:
        result = CommitResult(workflow=self.workflow, finalize=req.finalize)
        ref = reference_uri(self.workflow, req.operation_ref)
        source_id = raw_id(req.operation_ref)
        meta: Dict[str, Dict[str, str]] = {}
        for ln in req.lines:
            meta.setdefault(ln.item_id, line_meta(ln))

        diff = compute_diff(req.lines)
        over_log = [d.to_log() for d in diff.over_lines]

        # 予定外：item → 本次新增量；item → [(line, qty)]
        extras_delta: Dict[str, int] = {}
        extras_owners: Dict[str, List[Tuple[str, str, int]]] = {}
        for ln in req.lines:
            if not ln.is_unplanned:
                continue
            d = max(0, ln.actual_qty - ln.committed_qty)
            if d <= 0:
                continue
            extras_delta[ln.item_id] = extras_delta.get(ln.item_id, 0) + d
            extras_owners.setdefault(ln.item_id, []).append((ln.group_id or "", ln.line_id, d))

        extras_preview = [
            {"inventoryItemId": k, "qty": v, "title": meta[k]["title"], "sku": meta[k]["sku"]} for k, v in extras_delta.items()
        ]

        # 1) 备注（在数值调整之前）
        if self.annotates and req.operation_ref and (over_log or extras_preview or req.note.strip()):
            text = build_note_line(
                workflow=self.workflow.value,
                finalize=req.finalize,
                note=req.note.strip(),
                over=over_log,
                extras=extras_preview,
                tz_name=self.tz_name,
            )
            await self.run_side_effects([self.note_effect(req, text)], result)

        change_log: List[ChangeLogEntry] = []
        rejected_delta: Dict[str, int] = {}
        folded_owners: Dict[str, List[Tuple[str, str, int]]] = {}

        # 2) + 3) 逐组收货
        for gid in req.group_ids:
            group_lines = [ln for ln in req.lines_for_group(gid) if not ln.is_unplanned]
            want = [(ln, max(0, ln.actual_qty - ln.committed_qty)) for ln in group_lines]
            want = [(ln, q) for ln, q in want if q > 0 and ln.remote_line_id]
            received: Dict[str, int] = {}

            if want:
                try:
                    await self.remote.receive_items(
                        gid, [ReceiveItem(remote_line_id=ln.remote_line_id or ln.line_id, quantity=q) for ln, q in want]
                    )
                    for ln, q in want:
                        result.credit(ln.line_id, q)
                        received[ln.item_id] = received.get(ln.item_id, 0) + q
                except RemoteError as exc:
                    if exc.kind is not RemoteErrorKind.QUANTITY_BOUNDS:
                        raise self.abort(f"receive failed for {gid}: {exc.message}", result, exc) from exc
                    logger.info("receive over bounds, capped retry: shipment=%s (%s)", gid, exc.message)
                    result.capped = True
                    capped_items: List[ReceiveItem] = []
                    splits = []
                    for ln, q in want:
                        capped, overflow = capped_split(ln, q)
                        splits.append((ln, capped, overflow))
                        if capped > 0:
                            capped_items.append(ReceiveItem(remote_line_id=ln.remote_line_id or ln.line_id, quantity=capped))
                    if capped_items:
                        try:
                            await self.remote.receive_items(gid, capped_items)
                        except RemoteError as exc2:
                            raise self.abort(f"capped receive failed for {gid}: {exc2.message}", result, exc2) from exc2
                    for ln, capped, overflow in splits:
                        result.credit(ln.line_id, capped)
                        if capped > 0:
                            received[ln.item_id] = received.get(ln.item_id, 0) + capped
                        if overflow > 0:
                            extras_delta[ln.item_id] = extras_delta.get(ln.item_id, 0) + overflow
                            result.folded[ln.item_id] = result.folded.get(ln.item_id, 0) + overflow
                            folded_owners.setdefault(ln.item_id, []).append((gid, ln.line_id, overflow))

            change_log.extend(self.log_entries(
                activity=Activity.INBOUND_TRANSFER,
                location_id=req.location_id,
                location_name=req.location_name,
                deltas=received,
                meta=meta,
                source_id=source_id,
            ))

            if req.finalize:
                shorts = [(ln, ln.remaining_qty) for ln in group_lines if ln.remaining_qty > 0 and ln.remote_line_id]
                if shorts:
                    try:
                        await self.remote.receive_items(
                            gid,
                            [
                                ReceiveItem(remote_line_id=ln.remote_line_id or ln.line_id, quantity=q, reason=ReceiveReason.REJECTED)
                                for ln, q in shorts
                            ],
                        )
                    except RemoteError as exc:
                        raise self.abort(f"reject failed for {gid}: {exc.message}", result, exc) from exc
                    for ln, q in shorts:
                        rejected_delta[ln.item_id] = rejected_delta.get(ln.item_id, 0) + q

            for ln in group_lines:
                result.cover(gid, ln.line_id)
                result.deltas[ln.line_id] = result.committed.get(ln.line_id, 0)
            result.group_ids.append(gid)

        try:
            # 拒收：出库元 +short
            if rejected_delta:
                await self._apply_rejected(req, result, rejected_delta, meta, ref, source_id, change_log)

            # 予定外（含并入）：入库 +delta，出库元 -delta
            applied_extras: Dict[str, int] = {}
            if extras_delta:
                applied_extras = await self._apply_extras(req, result, extras_delta, meta, ref, source_id, change_log)
        except RemoteError as exc:
            raise self.abort(f"inventory adjustment failed: {exc.message}", result, exc) from exc

        for item_id in applied_extras:
            for _gid, line_id, q in extras_owners.get(item_id, []) + folded_owners.get(item_id, []):
                result.credit(line_id, q)
                result.deltas[line_id] = result.deltas.get(line_id, 0) + q

        # 予定外行：没有新增量或已调整成功才算覆盖；激活失败被跳过的行不覆盖（组保持 in_progress）
        for ln in req.lines:
            if not ln.is_unplanned or ln.group_id not in result.group_ids:
                continue
            if ln.actual_qty <= ln.committed_qty or ln.item_id in applied_extras:
                result.cover(ln.group_id, ln.line_id)

        result.over = over_log
        result.extras = [
            {"inventoryItemId": k, "qty": v, "title": meta.get(k, {}).get("title", k), "sku": meta.get(k, {}).get("sku", "")}
            for k, v in applied_extras.items()
        ]

        effects: List[SideEffect] = []
        for activity in (Activity.INBOUND_TRANSFER, Activity.OUTBOUND_TRANSFER):
            batch = [e for e in change_log if e.activity is activity]
            by_loc: Dict[str, List[ChangeLogEntry]] = {}
            for e in batch:
                by_loc.setdefault(e.location_id, []).append(e)
            for entries in by_loc.values():
                eff = self.change_log_effect(entries)
                if eff is not None:
                    effects.append(eff)
        if self.annotates and req.operation_ref and (rejected_delta or applied_extras):
            effects.append(self.note_effect(req, self.adjustment_note(req, result.adjustments), label="adjustment note"))
        await self.run_side_effects(effects, result)
        return result

    async def _apply_rejected(self, req, result, rejected_delta, meta, ref, source_id, change_log) -> None:
        origin = req.origin_location_id
        if not origin:
            result.warnings.append("origin location unknown: rejected quantity not returned to origin")
            return
        outcome = await self.adjuster.activate_and_adjust(origin, rejected_delta, reference=ref)
        result.fallback_used |= outcome.fallback_used
        result.warnings.extend(outcome.errors)
        for item_id, d in outcome.applied.items():
            result.adjustments.append(self._adj(req.origin_location_name or origin, origin, item_id, meta, d))
        change_log.extend(self.log_entries(
            activity=Activity.INBOUND_TRANSFER,
            location_id=origin,
            location_name=req.origin_location_name,
            deltas=outcome.applied,
            meta=meta,
            source_id=source_id,
        ))

    async def _apply_extras(self, req, result, extras_delta, meta, ref, source_id, change_log) -> Dict[str, int]:
        outcome = await self.adjuster.activate_and_adjust(req.location_id, extras_delta, reference=ref)
        result.fallback_used |= outcome.fallback_used
        result.warnings.extend(outcome.errors)
        applied = dict(outcome.applied)
        for item_id, d in applied.items():
            result.adjustments.append(self._adj(req.location_name or req.location_id, req.location_id, item_id, meta, d))
        change_log.extend(self.log_entries(
            activity=Activity.INBOUND_TRANSFER,
            location_id=req.location_id,
            location_name=req.location_name,
            deltas=applied,
            meta=meta,
            source_id=source_id,
        ))

        origin = req.origin_location_id
        if not origin:
            result.warnings.append("origin location unknown: origin adjustment for extras skipped")
            return applied
        neg = {k: -v for k, v in applied.items()}
        out2 = await self.adjuster.activate_and_adjust(origin, neg, reference=ref)
        result.fallback_used |= out2.fallback_used
        result.warnings.extend(out2.errors)
        for item_id, d in out2.applied.items():
            result.adjustments.append(self._adj(req.origin_location_name or origin, origin, item_id, meta, d))
        change_log.extend(self.log_entries(
            activity=Activity.OUTBOUND_TRANSFER,
            location_id=origin,
            location_name=req.origin_location_name,
            deltas=out2.applied,
            meta=meta,
            source_id=source_id,
        ))
        return applied

    @staticmethod
    def _adj(location_name: str, location_id: str, item_id: str, meta: Dict[str, Dict[str, str]], delta: int) -> Dict:
        m = meta.get(item_id) or {}
        return {
            "locationName": location_name,
            "locationId": location_id,
            "inventoryItemId": item_id,
            "title": m.get("title") or item_id,
            "sku": m.get("sku") or "",
            "delta": delta,
        }
