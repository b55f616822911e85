# stockrecon/gateway/scan_item_resolver.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from stockrecon.adapters.base import ItemLookup
from stockrecon.core.config import get_settings
from stockrecon.core.errors import RemoteError, ResolutionError
from stockrecon.services.line_types import ItemIdentity
from stockrecon.storage.kv import KeyValueStore
from stockrecon.utils.codes import hash_code, normalize_scan_code
from stockrecon.utils.time import iso_now

logger = logging.getLogger("stockrecon.scan")

CACHE_NS = "stock_transfer_pos_variant_cache_v1"


class ResolverCache:
    """
    条码 → 商品身份缓存（调用方持有并注入，不是全局状态）：

    - 按 djb2(code) % chunks 分片，每片一个 KV 条目，首次访问时加载；
    - put 只标脏，flush 时批量写回；
    - invalidate 丢弃全部分片并递增 version。
    """

    def __init__(self, store: KeyValueStore, *, chunks: Optional[int] = None, namespace: str = CACHE_NS) -> None:
        self.store = store
        self.chunks = chunks or get_settings().RESOLVER_CACHE_CHUNKS
        self.namespace = namespace
        self.version = 0
        self._loaded: Dict[int, Dict[str, Any]] = {}
        self._dirty: Set[int] = set()
        self._lock = asyncio.Lock()
        self._meta_checked = False
        self._layout_ok = True

    def chunk_index(self, code: str) -> int:
        return hash_code(code) % self.chunks

    def chunk_key(self, idx: int) -> str:
        return f"{self.namespace}:chunk:{idx:02d}"

    @property
    def meta_key(self) -> str:
        return f"{self.namespace}:meta"

    async def _check_meta(self) -> None:
        if self._meta_checked:
            return
        self._meta_checked = True
        meta = await self.store.get(self.meta_key)
        if isinstance(meta, dict) and meta.get("chunks") not in (None, self.chunks):
            # 分片数变了：旧分片不可用
            logger.info("resolver cache layout changed: stored=%s now=%s", meta.get("chunks"), self.chunks)
            self._layout_ok = False
        if not isinstance(meta, dict) or not self._layout_ok:
            await self.store.set(self.meta_key, {"v": 1, "chunks": self.chunks, "savedAt": iso_now()})

    async def _chunk(self, idx: int) -> Dict[str, Any]:
        if idx in self._loaded:
            return self._loaded[idx]
        async with self._lock:
            if idx in self._loaded:
                return self._loaded[idx]
            await self._check_meta()
            data: Dict[str, Any] = {}
            if self._layout_ok:
                raw = await self.store.get(self.chunk_key(idx))
                if isinstance(raw, dict):
                    data = raw
            self._loaded[idx] = data
            return data

    async def get(self, code: str) -> Optional[ItemIdentity]:
        norm = normalize_scan_code(code)
        if not norm:
            return None
        entry = (await self._chunk(self.chunk_index(norm))).get(norm)
        if not isinstance(entry, dict):
            return None
        ident = ItemIdentity.from_dict(entry)
        if ident is None or not ident.variant_id:
            return None
        return ident

    async def put(self, code: str, identity: ItemIdentity) -> None:
        norm = normalize_scan_code(code)
        if not norm:
            return
        idx = self.chunk_index(norm)
        chunk = await self._chunk(idx)
        chunk[norm] = {**identity.to_dict(), "updatedAt": iso_now()}
        self._dirty.add(idx)

    async def flush(self) -> int:
        dirty = sorted(self._dirty)
        for idx in dirty:
            await self.store.set(self.chunk_key(idx), self._loaded.get(idx, {}))
        self._dirty.clear()
        return len(dirty)

    async def invalidate(self) -> None:
        for idx in range(self.chunks):
            await self.store.delete(self.chunk_key(idx))
        self._loaded.clear()
        self._dirty.clear()
        self.version += 1
        logger.info("resolver cache invalidated: version=%d", self.version)


class CodeResolver:
    """扫码值 → ItemIdentity：缓存命中直接返回；否则远端查询，结果按 code / sku / barcode 三个键回填。"""

    def __init__(self, lookup: ItemLookup, *, cache: Optional[ResolverCache] = None) -> None:
        self.lookup = lookup
        self.cache = cache

    async def resolve(self, code: str) -> ItemIdentity:
        norm = normalize_scan_code(code)
        if not norm:
            raise ResolutionError("empty scan code", raw_code=str(code or ""))

        if self.cache is not None:
            hit = await self.cache.get(norm)
            if hit is not None:
                return hit

        try:
            ident = await self.lookup.lookup_by_code(norm)
        except RemoteError as exc:
            raise ResolutionError(f"lookup failed: {exc.message}", raw_code=norm) from exc
        if ident is None:
            raise ResolutionError(f"item not found: {norm}", raw_code=norm)

        if self.cache is not None:
            for key in {norm, normalize_scan_code(ident.sku), normalize_scan_code(ident.barcode)}:
                if key:
                    await self.cache.put(key, ident)
        return ident
