# stockrecon/services/audit_logger.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from stockrecon.core.config import get_settings
from stockrecon.storage.kv import KeyValueStore
from stockrecon.utils.qty import to_qty
from stockrecon.utils.time import iso_now

logger = logging.getLogger("stockrecon.audit")

DEFAULT_AUDIT_KEY = "stock_transfer_pos_inbound_audit_v1"


def log_event(kind: str, key: str, extra: dict[str, Any] | None = None) -> None:
    """轻量审计（本地日志）。"""
    try:
        logger.info("[audit] %s | %s | %s", kind, key, json.dumps(extra or {}, ensure_ascii=False))
    except (TypeError, ValueError):
        logger.info("[audit] %s | %s", kind, key)


@dataclass
class AuditEntry:
    """
    审计记录（只追加）：

    - operation_ref : 组 / 操作标识（入库为 shipment id）
    - over / extras : [{inventoryItemId, qty, title, sku}]
    """

    operation_ref: str
    location_ref: str
    reason: str = ""
    note: str = ""
    over: List[Dict[str, Any]] = field(default_factory=list)
    extras: List[Dict[str, Any]] = field(default_factory=list)
    at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at": self.at or iso_now(),
            "operationRef": self.operation_ref,
            # 旧读者按 shipmentId / locationId 过滤
            "shipmentId": self.operation_ref,
            "locationId": self.location_ref,
            "reason": self.reason,
            "note": self.note,
            "over": list(self.over),
            "extras": list(self.extras),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["AuditEntry"]:
        if not isinstance(data, Mapping):
            return None
        ref = str(data.get("operationRef") or data.get("shipmentId") or "").strip()
        if not ref:
            return None
        over = data.get("over")
        extras = data.get("extras")
        return cls(
            operation_ref=ref,
            location_ref=str(data.get("locationId") or data.get("locationRef") or "").strip(),
            reason=str(data.get("reason") or ""),
            note=str(data.get("note") or ""),
            over=[x for x in over if isinstance(x, Mapping)] if isinstance(over, list) else [],
            extras=[x for x in extras if isinstance(x, Mapping)] if isinstance(extras, list) else [],
            at=data.get("at"),
        )


class AuditLogger:
    """
    有界审计历史（最新在前，超过 max_entries 丢最旧的），整列表一次写入。
    读路径容错：损坏 / 缺失数据视为空历史。
    """

    def __init__(self, store: KeyValueStore, *, key: str = DEFAULT_AUDIT_KEY, max_entries: Optional[int] = None) -> None:
        self.store = store
        self.key = key
        self.max_entries = max_entries or get_settings().AUDIT_MAX_ENTRIES

    @staticmethod
    def _parse(raw: Any) -> List[AuditEntry]:
        if not isinstance(raw, list):
            return []
        return [e for e in (AuditEntry.from_dict(x) for x in raw) if e is not None]

    async def read(self) -> List[AuditEntry]:
        try:
            raw = await self.store.get(self.key)
        except Exception:
            logger.warning("audit read failed: key=%s", self.key, exc_info=True)
            return []
        return self._parse(raw)

    async def append(self, entry: AuditEntry) -> List[AuditEntry]:
        """读失败直接抛出（不能用空历史覆盖已有记录）；只有缺失 / 损坏数据按空处理。"""
        cur = self._parse(await self.store.get(self.key))
        entry.at = entry.at or iso_now()
        nxt = [entry, *cur][: self.max_entries]
        await self.store.set(self.key, [e.to_dict() for e in nxt])
        log_event(
            "recon.audit",
            entry.operation_ref,
            {"location": entry.location_ref, "over": len(entry.over), "extras": len(entry.extras)},
        )
        return nxt

    async def history_for(self, operation_ref: str) -> List[AuditEntry]:
        return [e for e in await self.read() if e.operation_ref == operation_ref]


# ----------------------------------------------------------------------
# 历史索引（列表画面用）
# ----------------------------------------------------------------------


def _qty(x: Mapping[str, Any], *names: str) -> int:
    for n in names:
        if x.get(n) is not None:
            return to_qty(x.get(n))
    return 0


def _loc_ok(entry: AuditEntry, location_id: Optional[str]) -> bool:
    return not location_id or not entry.location_ref or entry.location_ref == location_id


def over_by_group(entries: List[AuditEntry], *, location_id: Optional[str] = None) -> Dict[str, int]:
    idx: Dict[str, int] = {}
    for e in entries:
        if not _loc_ok(e, location_id):
            continue
        n = sum(_qty(x, "qty", "overQty", "delta") for x in e.over)
        if n > 0:
            idx[e.operation_ref] = idx.get(e.operation_ref, 0) + n
    return idx


def extras_by_group(entries: List[AuditEntry], *, location_id: Optional[str] = None) -> Dict[str, int]:
    idx: Dict[str, int] = {}
    for e in entries:
        if not _loc_ok(e, location_id):
            continue
        n = sum(_qty(x, "qty", "delta", "receiveQty") for x in e.extras)
        if n > 0:
            idx[e.operation_ref] = idx.get(e.operation_ref, 0) + n
    return idx


def over_by_item(
    entries: List[AuditEntry],
    *,
    operation_ref: Optional[str] = None,
    location_id: Optional[str] = None,
) -> Dict[str, int]:
    idx: Dict[str, int] = {}
    for e in entries:
        if operation_ref and e.operation_ref != operation_ref:
            continue
        if not _loc_ok(e, location_id):
            continue
        for x in e.over:
            item_id = str(x.get("inventoryItemId") or "").strip()
            n = _qty(x, "overQty", "qty", "delta")
            if item_id and n > 0:
                idx[item_id] = idx.get(item_id, 0) + n
    return idx
