# stockrecon/services/group_records.py
from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional

from stockrecon.services.draft_migrations import migrate_count_record
from stockrecon.services.grouping import GroupingCoordinator, OperationStatus
from stockrecon.services.line_types import CommittedLine
from stockrecon.storage.kv import KeyValueStore
from stockrecon.utils.time import iso_now

logger = logging.getLogger("stockrecon.groups")


class GroupRecordStore:
    """
    跨会话的分组提交记录：

        {operationId, status, groupIds, groupItems: {gid: [CommittedLine...]}, createdAt, completedAt}

    重新进入操作时用它恢复 completed 组（只读回显）。
    """

    def __init__(self, store: KeyValueStore, *, key_prefix: str = "stock_transfer_pos") -> None:
        self.store = store
        self.key_prefix = key_prefix

    def key_for(self, workflow: str, location_id: str, operation_id: str) -> str:
        return f"{self.key_prefix}_{workflow}_groups_v1:{location_id}:{operation_id}"

    async def load(
        self,
        key: str,
        *,
        planned_by_group: Optional[Mapping[str, List[str]]] = None,
    ) -> Dict[str, List[CommittedLine]]:
        """→ {group_id: 冻结快照}；只返回快照非空的组。损坏数据视为空历史。"""
        raw = await self.store.get(key)
        if raw is None:
            return {}
        rec = migrate_count_record(raw, planned_by_group or {})
        if rec is None:
            logger.warning("group record ignored (unrecognized shape): key=%s", key)
            return {}

        out: Dict[str, List[CommittedLine]] = {}
        for gid, items in (rec.get("groupItems") or {}).items():
            if not isinstance(items, list):
                continue
            frozen = [c for c in (CommittedLine.from_dict(it) for it in items) if c is not None]
            if frozen:
                out[str(gid)] = frozen
        return out

    async def save(self, key: str, operation_id: str, coordinator: GroupingCoordinator) -> None:
        prev = await self.store.get(key)
        created_at = prev.get("createdAt") if isinstance(prev, Mapping) else None
        status = coordinator.status
        record = {
            "operationId": operation_id,
            "status": status.value,
            "groupIds": coordinator.group_ids(),
            "groupItems": {
                g.group_id: [c.to_dict() for c in g.committed_lines]
                for g in coordinator.groups()
                if g.committed_lines
            },
            "createdAt": created_at or iso_now(),
            "completedAt": iso_now() if status is OperationStatus.COMPLETED else None,
        }
        await self.store.set(key, record)
