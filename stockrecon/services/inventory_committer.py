# stockrecon/services/inventory_committer.py
from __future__ import annotations

import abc
import logging
from typing import Dict, List, Mapping, Optional, Sequence

from stockrecon.adapters.base import ChangeLogSink, RemoteInventory
from stockrecon.core.config import get_settings
from stockrecon.core.errors import CommitAborted
from stockrecon.metrics import SIDE_EFFECT_FAILURES
from stockrecon.services.change_log import Activity, ChangeLogEntry, build_entries
from stockrecon.services.committer_types import CommitRequest, CommitResult, SideEffect, Workflow
from stockrecon.services.inventory_adjuster import InventoryAdjuster
from stockrecon.services.line_types import ReconciliationLine
from stockrecon.services.note_builder import build_note_line
from stockrecon.utils.codes import raw_id
from stockrecon.utils.time import iso_now

logger = logging.getLogger("stockrecon.commit")

_REF_KIND = {
    Workflow.RECEIVE: "InboundTransfer",
    Workflow.COUNT: "InventoryCount",
}


def line_meta(ln: ReconciliationLine) -> Dict[str, str]:
    return {
        "title": ln.title or ln.item_id,
        "sku": ln.sku,
        "variantId": ln.variant_id or "",
        "barcode": ln.barcode,
        "imageUrl": ln.image_url,
    }


def reference_uri(workflow: Workflow, operation_ref: str) -> str:
    """调整的 referenceDocumentUri：gid://stockrecon/<Kind>/<末尾 id>。"""
    rid = raw_id(operation_ref)
    return f"gid://stockrecon/{_REF_KIND[workflow]}/{rid}" if rid else ""


class InventoryCommitter(abc.ABC):
    """
    提交策略基类（收货 / 盘点各一个子类）：

    - 数值调整失败 → CommitAborted（partial 里带已成功的部分）；
    - 备注 / 变动日志等副作用统一收集为 SideEffect，逐个执行，失败只进 warnings。
    """

    workflow: Workflow
    annotates = False

    def __init__(
        self,
        remote: RemoteInventory,
        *,
        change_log: Optional[ChangeLogSink] = None,
        chunk_size: Optional[int] = None,
        tz_name: Optional[str] = None,
    ) -> None:
        self.remote = remote
        self.change_log = change_log
        self.adjuster = InventoryAdjuster(remote, chunk_size=chunk_size)
        self.tz_name = tz_name or get_settings().SHOP_TIMEZONE

    @abc.abstractmethod
    async def commit(self, req: CommitRequest) -> CommitResult:
        """执行一次提交；数值调整失败抛 CommitAborted。"""

    # ------------------------------------------------------------------
    # 副作用
    # ------------------------------------------------------------------

    async def run_side_effects(self, effects: Sequence[SideEffect], result: CommitResult) -> None:
        for eff in effects:
            try:
                ok = await eff.run()
            except Exception as exc:
                SIDE_EFFECT_FAILURES.labels(kind=eff.kind).inc()
                logger.warning("side effect failed: kind=%s label=%s err=%s", eff.kind, eff.label, exc)
                result.warnings.append(f"{eff.label}: {exc}")
                continue
            if ok is False:
                SIDE_EFFECT_FAILURES.labels(kind=eff.kind).inc()
                logger.warning("side effect returned false: kind=%s label=%s", eff.kind, eff.label)
                result.warnings.append(f"{eff.label}: not recorded")

    def note_effect(self, req: CommitRequest, text: str, label: str = "note append") -> SideEffect:
        async def _run() -> bool:
            return await self.remote.append_note(req.operation_ref, text)

        return SideEffect(kind="note", label=label, run=_run)

    def change_log_effect(self, entries: List[ChangeLogEntry]) -> Optional[SideEffect]:
        if self.change_log is None or not entries:
            return None
        sink = self.change_log

        async def _run() -> int:
            return await sink.record(entries)

        return SideEffect(kind="change_log", label=f"change log ({entries[0].activity.value})", run=_run)

    def log_entries(
        self,
        *,
        activity: Activity,
        location_id: str,
        location_name: str,
        deltas: Mapping[str, int],
        meta: Mapping[str, Mapping],
        source_id: str,
        quantity_after: Optional[Mapping[str, int]] = None,
        timestamp: Optional[str] = None,
    ) -> List[ChangeLogEntry]:
        rows = []
        for item_id, delta in deltas.items():
            m = meta.get(item_id) or {}
            rows.append(
                {
                    "inventoryItemId": item_id,
                    "delta": delta,
                    "variantId": m.get("variantId"),
                    "sku": m.get("sku"),
                    "quantityAfter": (quantity_after or {}).get(item_id),
                }
            )
        return build_entries(
            activity=activity,
            location_id=location_id,
            location_name=location_name,
            deltas=rows,
            source_id=source_id,
            timestamp=timestamp or iso_now(),
        )

    def adjustment_note(self, req: CommitRequest, adjustments: List[Dict]) -> str:
        return build_note_line(
            workflow=req.workflow.value,
            finalize=req.finalize,
            adjustments=adjustments,
            tz_name=self.tz_name,
        )

    # ------------------------------------------------------------------

    @staticmethod
    def abort(message: str, result: CommitResult, cause: BaseException) -> CommitAborted:
        logger.error("commit aborted: %s (groups done=%s)", message, result.group_ids)
        return CommitAborted(message, partial=result, cause=cause)
