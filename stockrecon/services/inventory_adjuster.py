# stockrecon/services/inventory_adjuster.py
from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional

from stockrecon.adapters.base import QuantityChange, QuantitySet, RemoteInventory
from stockrecon.core.config import get_settings
from stockrecon.core.errors import RemoteError, RemoteErrorKind
from stockrecon.metrics import FALLBACKS
from stockrecon.services.committer_types import AdjustOutcome

logger = logging.getLogger("stockrecon.commit")


def chunked(ids: List[str], size: int) -> List[List[str]]:
    size = max(1, int(size))
    return [ids[i : i + size] for i in range(0, len(ids), size)]


class InventoryAdjuster:
    """
    数量调整（主/备两条路径）+ 先激活再调整：

    - 主路径 adjust_quantities（增量）；
    - 仅当错误 kind == CAPABILITY_UNSUPPORTED 时改走 set_quantities：
      先取当前量 cur（无 level 视为 0），目标 = cur + delta，compareQuantity = cur；
    - 其他 kind 原样抛出，不重试（compare 不一致同样不重试）。
    """

    def __init__(self, remote: RemoteInventory, *, chunk_size: Optional[int] = None) -> None:
        self.remote = remote
        self.chunk_size = chunk_size or get_settings().ACTIVATION_CHUNK_SIZE

    async def adjust(
        self,
        location_id: str,
        deltas: Mapping[str, int],
        *,
        reference: str = "",
        reason: str = "correction",
    ) -> bool:
        """→ 是否走了备路径。delta 全为 0 时不发请求。"""
        changes = [QuantityChange(item_id=k, location_id=location_id, delta=int(v)) for k, v in deltas.items() if int(v) != 0]
        if not location_id or not changes:
            return False
        try:
            await self.remote.adjust_quantities(changes, reason=reason, reference=reference)
            return False
        except RemoteError as exc:
            if exc.kind is not RemoteErrorKind.CAPABILITY_UNSUPPORTED:
                raise
            logger.info("adjust fallback → set_quantities: location=%s n=%d (%s)", location_id, len(changes), exc.message)

        FALLBACKS.labels(mutation="inventorySetQuantities").inc()
        sets: List[QuantitySet] = []
        for c in changes:
            cur = await self.remote.fetch_current_quantity(c.item_id, location_id)
            cur = int(cur or 0)
            sets.append(QuantitySet(item_id=c.item_id, location_id=location_id, quantity=cur + c.delta, compare_quantity=cur))
        await self.remote.set_quantities(sets, reason=reason, reference=reference)
        return True

    async def activate(self, location_id: str, item_ids: List[str]) -> Dict[str, List[str]]:
        """
        按块激活 → {"ok": [...], "failed": [...], "errors": [...]}。
        一块中任一 item 激活失败，整块视为失败（该块不做调整）。
        """
        ok: List[str] = []
        failed: List[str] = []
        errors: List[str] = []
        ids = list(dict.fromkeys(i for i in item_ids if i))
        for chunk in chunked(ids, self.chunk_size):
            try:
                res = await self.remote.activate_at_location(location_id, chunk)
            except RemoteError as exc:
                failed.extend(chunk)
                errors.append(f"activation failed at {location_id}: {exc.message}")
                continue
            if res.errors:
                failed.extend(chunk)
                errors.extend(res.errors)
                continue
            ok.extend(chunk)
        return {"ok": ok, "failed": failed, "errors": errors}

    async def activate_and_adjust(
        self,
        location_id: str,
        deltas: Mapping[str, int],
        *,
        reference: str = "",
    ) -> AdjustOutcome:
        """
        逐块：激活 → 激活成功的块做调整。
        激活失败收集到 errors / skipped；调整本身失败直接抛出（致命）。
        """
        out = AdjustOutcome()
        nonzero = {k: int(v) for k, v in deltas.items() if k and int(v) != 0}
        for chunk in chunked(list(nonzero.keys()), self.chunk_size):
            act = await self.activate(location_id, chunk)
            if act["failed"]:
                for k in act["failed"]:
                    out.skipped[k] = nonzero[k]
                out.errors.extend(act["errors"])
                logger.warning("activation failed, chunk skipped: location=%s items=%s", location_id, act["failed"])
            ready = {k: nonzero[k] for k in act["ok"]}
            if not ready:
                continue
            if await self.adjust(location_id, ready, reference=reference):
                out.fallback_used = True
            out.applied.update(ready)
        return out
