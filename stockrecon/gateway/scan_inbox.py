# stockrecon/gateway/scan_inbox.py
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from stockrecon.core.config import get_settings
from stockrecon.storage.kv import KeyValueStore

logger = logging.getLogger("stockrecon.scan")

INBOX_MAX_ITEMS = 5000


def _now_ms() -> int:
    return int(time.time() * 1000)


def normalize_inbox(raw: Any) -> Dict[str, Any]:
    """兼容旧格式（纯数组 / [{v}]）→ {items, lastV, lastT, updatedAt}。"""
    if isinstance(raw, list):
        items = [str(x if isinstance(x, str) else (x or {}).get("v", "")).strip() for x in raw]
        items = [x for x in items if x]
        return {"items": items, "lastV": items[-1] if items else "", "lastT": _now_ms(), "updatedAt": _now_ms()}
    if isinstance(raw, dict):
        src = raw.get("items")
        items = [str(s or "").strip() for s in src] if isinstance(src, list) else []
        items = [x for x in items if x]
        try:
            last_t = int(raw.get("lastT") or 0)
        except (TypeError, ValueError):
            last_t = 0
        return {
            "items": items,
            "lastV": str(raw.get("lastV") or (items[-1] if items else "")),
            "lastT": last_t,
            "updatedAt": raw.get("updatedAt") or 0,
        }
    return {"items": [], "lastV": "", "lastT": 0, "updatedAt": 0}


class ScanInbox:
    """
    跨进程扫码收件箱（KV 中的一个列表）：

    - push：其他画面收到的扫码追加到队尾（同码 350ms 内不重复追加，最多保留 5000 条）；
    - poll_once：取出队首交给消费者；
    - run：每 poll_ms 轮询一次，直到被取消。
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        key: Optional[str] = None,
        poll_ms: Optional[int] = None,
        duplicate_window_ms: Optional[int] = None,
    ) -> None:
        s = get_settings()
        self.store = store
        self.key = key or s.SCAN_INBOX_KEY
        self.poll_ms = poll_ms if poll_ms is not None else s.SCAN_INBOX_POLL_MS
        self.duplicate_window_ms = duplicate_window_ms if duplicate_window_ms is not None else s.SCAN_DUPLICATE_WINDOW_MS

    async def push(self, code: str) -> bool:
        v = str(code or "").strip()
        if not v:
            return False
        now = _now_ms()
        cur = normalize_inbox(await self.store.get(self.key))
        if cur["lastV"] == v and abs(now - cur["lastT"]) < self.duplicate_window_ms:
            return False
        items = (cur["items"] + [v])[-INBOX_MAX_ITEMS:]
        await self.store.set(self.key, {"items": items, "lastV": v, "lastT": now, "updatedAt": now})
        return True

    async def poll_once(self) -> Optional[str]:
        cur = normalize_inbox(await self.store.get(self.key))
        if not cur["items"]:
            return None
        head, rest = cur["items"][0], cur["items"][1:]
        await self.store.set(self.key, {**cur, "items": rest, "updatedAt": _now_ms()})
        return head

    async def run(self, consume: Callable[[str], object]) -> None:
        interval = self.poll_ms / 1000.0
        while True:
            try:
                head = await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("scan inbox poll failed: key=%s", self.key)
                head = None
            if head:
                consume(head)
            await asyncio.sleep(interval)
