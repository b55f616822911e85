# stockrecon/services/draft_store.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from stockrecon.core.config import get_settings
from stockrecon.services.draft_migrations import DRAFT_VERSION, migrate_draft
from stockrecon.services.line_types import ReconciliationLine
from stockrecon.storage.kv import KeyValueStore
from stockrecon.utils.time import iso_now

logger = logging.getLogger("stockrecon.draft")


@dataclass
class OperationDraft:
    operation_id: str
    lines: List[ReconciliationLine] = field(default_factory=list)
    note: str = ""
    reason_code: str = ""
    saved_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "v": DRAFT_VERSION,
            "operationId": self.operation_id,
            "lines": [ln.to_dict() for ln in self.lines],
            "note": self.note,
            "reasonCode": self.reason_code,
            "savedAt": self.saved_at or iso_now(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperationDraft":
        lines = []
        for raw in data.get("lines") or []:
            ln = ReconciliationLine.from_dict(raw)
            if ln is not None:
                lines.append(ln)
        return cls(
            operation_id=str(data.get("operationId") or ""),
            lines=lines,
            note=str(data.get("note") or ""),
            reason_code=str(data.get("reasonCode") or ""),
            saved_at=data.get("savedAt"),
        )


SnapshotFn = Callable[[], OperationDraft]


class DraftStore:
    """
    草稿持久化（防抖）：

    - schedule_save：最后一次变更后 debounce_ms 再写，期间的新变更取消旧的定时器（latest wins）；
    - suppress_fetching / suppress_read_only：拉取计划中 / 只读时完全不写；
    - load：读 + 迁移（旧格式升级到 v2），坏数据视为没有草稿；
    - clear：只在最终提交成功后调用。
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        debounce_ms: Optional[int] = None,
        key_prefix: Optional[str] = None,
    ) -> None:
        s = get_settings()
        self.store = store
        self.debounce_ms = s.DRAFT_DEBOUNCE_MS if debounce_ms is None else int(debounce_ms)
        self.key_prefix = key_prefix or s.DRAFT_KEY_PREFIX
        self.suppress_fetching = False
        self.suppress_read_only = False
        self._pending: Dict[str, asyncio.Task] = {}

    def key_for(self, workflow: str, location_id: str, operation_id: str) -> str:
        return f"{self.key_prefix}_{workflow}_draft_v{DRAFT_VERSION}:{location_id}:{operation_id}"

    def legacy_key_for(self, workflow: str, location_id: str, legacy_id: str) -> str:
        return f"{self.key_prefix}_{workflow}_draft_v1:{location_id}:{legacy_id}"

    @property
    def suppressed(self) -> bool:
        return self.suppress_fetching or self.suppress_read_only

    # ------------------------------------------------------------------

    async def load(self, key: str, *, legacy_keys: Optional[List[str]] = None) -> Optional[OperationDraft]:
        raw = await self.store.get(key)
        if raw is None:
            for lk in legacy_keys or []:
                raw = await self.store.get(lk)
                if raw is not None:
                    logger.info("draft loaded from legacy key=%s", lk)
                    break
        data = migrate_draft(raw)
        if data is None:
            if raw is not None:
                logger.warning("draft ignored (unrecognized shape): key=%s", key)
            return None
        return OperationDraft.from_dict(data)

    async def save_now(self, key: str, draft: OperationDraft) -> bool:
        if self.suppressed:
            logger.debug("draft save suppressed: key=%s fetching=%s read_only=%s",
                         key, self.suppress_fetching, self.suppress_read_only)
            return False
        draft.saved_at = iso_now()
        await self.store.set(key, draft.to_dict())
        return True

    def schedule_save(self, key: str, snapshot_fn: SnapshotFn) -> Optional[asyncio.Task]:
        """防抖保存；快照在真正写入时才取，保证写的是最新状态。"""
        if self.suppressed:
            return None
        prev = self._pending.pop(key, None)
        if prev is not None and not prev.done():
            prev.cancel()
        task = asyncio.get_running_loop().create_task(self._delayed_save(key, snapshot_fn))
        self._pending[key] = task
        return task

    async def _delayed_save(self, key: str, snapshot_fn: SnapshotFn) -> None:
        await asyncio.sleep(self.debounce_ms / 1000.0)
        try:
            await self.save_now(key, snapshot_fn())
        except Exception:
            logger.exception("draft autosave failed: key=%s", key)
        finally:
            if self._pending.get(key) is asyncio.current_task():
                self._pending.pop(key, None)

    async def flush(self) -> None:
        """等待所有挂起的防抖保存落地。"""
        tasks = [t for t in self._pending.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def cancel(self, key: Optional[str] = None) -> None:
        keys = [key] if key is not None else list(self._pending.keys())
        for k in keys:
            t = self._pending.pop(k, None)
            if t is not None and not t.done():
                t.cancel()

    async def clear(self, key: str) -> None:
        self.cancel(key)
        await self.store.delete(key)
        logger.info("draft cleared: key=%s", key)
