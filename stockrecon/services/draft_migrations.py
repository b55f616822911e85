# stockrecon/services/draft_migrations.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from stockrecon.utils.qty import to_qty

logger = logging.getLogger("stockrecon.draft")

DRAFT_VERSION = 2


def _s(v: Any) -> str:
    return str(v if v is not None else "").strip()


def _migrate_v1_inbound(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """
    旧入库草稿（按 shipment 存）：
      {shipmentId, transferId, rows:[{shipmentLineItemId, receiveQty}],
       extras:[{inventoryItemId, receiveQty, ...}], onlyUnreceived, reason, note, savedAt}
    → v2：行按 lineId（= shipment line item id）合并，extras 变予定外行。
    """
    shipment_id = _s(raw.get("shipmentId")) or None
    lines: List[Dict[str, Any]] = []

    for r in raw.get("rows") or []:
        if not isinstance(r, Mapping):
            continue
        line_id = _s(r.get("shipmentLineItemId") or r.get("id"))
        if not line_id:
            continue
        lines.append(
            {
                "lineId": line_id,
                "inventoryItemId": _s(r.get("inventoryItemId")),
                "actualQty": to_qty(r.get("receiveQty")),
                "groupId": _s(r.get("shipmentId")) or shipment_id,
                "remoteLineId": line_id,
                "isUnplanned": False,
            }
        )

    for e in raw.get("extras") or []:
        if not isinstance(e, Mapping):
            continue
        item_id = _s(e.get("inventoryItemId"))
        if not item_id:
            continue
        lines.append(
            {
                "inventoryItemId": item_id,
                "variantId": e.get("variantId"),
                "sku": e.get("sku"),
                "barcode": e.get("barcode"),
                "imageUrl": e.get("imageUrl"),
                "title": e.get("title") or e.get("label"),
                "actualQty": to_qty(e.get("receiveQty", e.get("qty"))),
                "groupId": shipment_id,
                "isUnplanned": True,
            }
        )

    return {
        "v": DRAFT_VERSION,
        "operationId": _s(raw.get("transferId")) or shipment_id or "",
        "lines": lines,
        "note": _s(raw.get("note")),
        "reasonCode": _s(raw.get("reason")),
        "savedAt": raw.get("savedAt"),
    }


def _migrate_v1_count(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """旧棚卸草稿：{items:[{inventoryItemId, actualQuantity|actualQty, currentQuantity}]}。"""
    lines: List[Dict[str, Any]] = []
    for it in raw.get("items") or raw.get("lines") or []:
        if not isinstance(it, Mapping):
            continue
        item_id = _s(it.get("inventoryItemId"))
        if not item_id:
            continue
        lines.append(
            {
                "lineId": _s(it.get("lineId")) or item_id,
                "inventoryItemId": item_id,
                "variantId": it.get("variantId"),
                "sku": it.get("sku"),
                "barcode": it.get("barcode"),
                "imageUrl": it.get("imageUrl"),
                "title": it.get("title"),
                "plannedQty": to_qty(it.get("plannedQty", it.get("currentQuantity"))),
                "actualQty": to_qty(it.get("actualQty", it.get("actualQuantity"))),
                "groupId": _s(it.get("groupId") or it.get("productGroupId")) or None,
                "isUnplanned": bool(it.get("isUnplanned", it.get("isExtra", False))),
            }
        )
    return {
        "v": DRAFT_VERSION,
        "operationId": _s(raw.get("operationId") or raw.get("countId") or raw.get("id")),
        "lines": lines,
        "note": _s(raw.get("note")),
        "reasonCode": _s(raw.get("reasonCode") or raw.get("reason")),
        "savedAt": raw.get("savedAt"),
    }


def migrate_draft(raw: Any) -> Optional[Dict[str, Any]]:
    """
    读取草稿时唯一的升级入口：
      - 非 dict → None（视为没有草稿）
      - v >= 2 → 原样
      - 含 rows / shipmentId → 旧入库草稿
      - 含 items → 旧棚卸草稿
    """
    if not isinstance(raw, Mapping):
        return None
    v = raw.get("v")
    if isinstance(v, int) and v >= DRAFT_VERSION:
        return dict(raw)
    if "rows" in raw or "shipmentId" in raw:
        logger.info("draft migrated: v1 inbound shipment=%s", raw.get("shipmentId"))
        return _migrate_v1_inbound(raw)
    if "items" in raw:
        logger.info("draft migrated: v1 count")
        return _migrate_v1_count(raw)
    if "lines" in raw:
        return {**raw, "v": DRAFT_VERSION}
    return None


def migrate_count_record(raw: Any, planned_by_group: Mapping[str, List[str]]) -> Optional[Dict[str, Any]]:
    """
    分组提交记录升级：

    旧格式只有一个扁平 items 列表（不区分组）。按“当前计划里各组有哪些 item”
    过滤重建 groupItems；一个组的快照非空才视为已完成。
    新格式（含 groupItems）原样返回。
    """
    if not isinstance(raw, Mapping):
        return None
    if isinstance(raw.get("groupItems"), Mapping):
        return dict(raw)

    items = [it for it in (raw.get("items") or []) if isinstance(it, Mapping)]
    group_ids = [g for g in (raw.get("groupIds") or list(planned_by_group.keys())) if g]
    group_items: Dict[str, List[Dict[str, Any]]] = {}
    for gid in group_ids:
        wanted = set(planned_by_group.get(gid) or [])
        picked = [dict(it) for it in items if _s(it.get("inventoryItemId")) in wanted]
        if picked:
            group_items[gid] = picked

    logger.info("count record migrated: groups=%s completed=%s", group_ids, list(group_items.keys()))
    return {
        "operationId": _s(raw.get("operationId") or raw.get("id")),
        "status": raw.get("status") or "in_progress",
        "groupIds": group_ids,
        "groupItems": group_items,
        "createdAt": raw.get("createdAt"),
        "completedAt": raw.get("completedAt"),
    }
