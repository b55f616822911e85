# stockrecon/adapters/admin_graphql.py
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from stockrecon.adapters.base import (
    ActivationResult,
    QuantityChange,
    QuantitySet,
    ReceiveItem,
)
from stockrecon.core.config import get_settings
from stockrecon.core.errors import RemoteError, RemoteErrorKind
from stockrecon.metrics import FALLBACKS
from stockrecon.services.line_types import ItemIdentity, ReconciliationLine, compose_title
from stockrecon.utils.codes import normalize_scan_code

logger = logging.getLogger("stockrecon.remote")

# 远端错误文本 → 结构化 kind。全项目只有这里看错误文本。
_CAPABILITY = re.compile(r"doesn't exist|unknown field|undefined|not defined by type", re.I)
_BOUNDS = re.compile(r"exceed|greater than|more than|unreceived|remaining quantit", re.I)
_COMPARE = re.compile(r"compare ?quantity|changeFromQuantity|stale", re.I)

Q_ADJUST = (
    "mutation Adjust($input: InventoryAdjustQuantitiesInput!) { inventoryAdjustQuantities(input: $input) "
    "{ inventoryAdjustmentGroup { id } userErrors { field message } } }"
)
Q_SET = (
    "mutation Set($input: InventorySetQuantitiesInput!) { inventorySetQuantities(input: $input) "
    "{ inventoryAdjustmentGroup { id } userErrors { field message } } }"
)
Q_CURRENT = (
    'query Cur($id: ID!, $loc: ID!) { inventoryItem(id: $id) { id inventoryLevel(locationId: $loc) '
    '{ quantities(names: ["available"]) { name quantity } } } }'
)
Q_CHECK_LEVELS = (
    "query Check($ids: [ID!]!, $locationId: ID!) { nodes(ids: $ids) { ... on InventoryItem "
    "{ id tracked inventoryLevel(locationId: $locationId) { id } } } }"
)
Q_ACTIVATE = (
    "mutation Activate($inventoryItemId: ID!, $locationId: ID!) { inventoryActivate("
    "inventoryItemId: $inventoryItemId, locationId: $locationId) { inventoryLevel { id } userErrors { field message } } }"
)
Q_RECEIVE_ITEMS = (
    "mutation ReceiveItems($id: ID!, $items: [InventoryShipmentReceiveItemInput!]!) { inventoryShipmentReceiveItems("
    "id: $id, items: $items) { inventoryShipment { id status } userErrors { field message } } }"
)
Q_RECEIVE = (
    "mutation Receive($id: ID!, $lineItems: [InventoryShipmentReceiveItemInput!]!) { inventoryShipmentReceive("
    "id: $id, lineItems: $lineItems) { inventoryShipment { id status } userErrors { field message } } }"
)
Q_TRANSFER_NOTE = "query TransferNote($id: ID!) { inventoryTransfer(id: $id) { id note status name } }"
Q_TRANSFER_EDIT = (
    "mutation TransferEditNote($id: ID!, $input: InventoryTransferEditInput!) { inventoryTransferEdit("
    "id: $id, input: $input) { inventoryTransfer { id note status } userErrors { field message } } }"
)
Q_VARIANTS = (
    "query GetVariants($first: Int!, $query: String!) { productVariants(first: $first, query: $query) "
    "{ nodes { id title sku barcode image { url } inventoryItem { id } product { title featuredImage { url } } } } }"
)
Q_TRANSFER_SHIPMENTS = (
    "query TransferShipments($id: ID!) { inventoryTransfer(id: $id) { id shipments(first: 10) { nodes { id status } } } }"
)
Q_SHIPMENT_LINES = (
    "query ShipmentLines($id: ID!, $first: Int!, $after: String) { inventoryShipment(id: $id) { id status "
    "lineItems(first: $first, after: $after) { nodes { id quantity acceptedQuantity rejectedQuantity "
    "inventoryItem { id variant { id sku barcode title image { url } product { title } } } } "
    "pageInfo { hasNextPage endCursor } } } }"
)
Q_PRODUCT_GROUPS = (
    "query ProductGroups($namespace: String!, $key: String!) { currentAppInstallation { id "
    "metafield(namespace: $namespace, key: $key) { id value type } } }"
)
Q_COLLECTION_PRODUCTS = (
    "query CollectionProducts($id: ID!, $first: Int!) { collection(id: $id) { products(first: $first) "
    "{ nodes { title featuredImage { url } variants(first: 250) { nodes { id title sku barcode image { url } "
    "inventoryItem { id } } } } } } }"
)
Q_LEVELS = (
    "query Levels($ids: [ID!]!, $locationId: ID!) { nodes(ids: $ids) { ... on InventoryItem "
    '{ id inventoryLevel(locationId: $locationId) { quantities(names: ["available"]) { name quantity } } } } }'
)

# 商品分组存在 app 安装的 metafield 里（JSON 数组）
PRODUCT_GROUPS_NAMESPACE = "stock_transfer_pos"
PRODUCT_GROUPS_KEY = "product_groups_v1"


def classify_error(message: str, *, user_error: bool = False) -> RemoteErrorKind:
    """错误文本 → RemoteErrorKind。"""
    msg = message or ""
    if _CAPABILITY.search(msg):
        return RemoteErrorKind.CAPABILITY_UNSUPPORTED
    if _COMPARE.search(msg):
        return RemoteErrorKind.COMPARE_MISMATCH
    if _BOUNDS.search(msg):
        return RemoteErrorKind.QUANTITY_BOUNDS
    return RemoteErrorKind.USER_ERROR if user_error else RemoteErrorKind.OTHER


def build_variant_search_query(raw: str) -> str:
    """纯数字且 >= 8 位按 barcode 查；含字母或分隔符按 sku 查；最后兜底全文。"""
    q = (raw or "").strip()
    if not q:
        return ""
    parts: List[str] = []
    if q.isdigit():
        parts.append(f"barcode:{q}" if len(q) >= 8 else q)
    if re.search(r"[A-Za-z]", q) or re.search(r"[-_./]", q):
        parts.append(f"sku:{q}")
    parts.append(q)
    return " OR ".join(dict.fromkeys(parts))


def pick_best_variant(code: str, candidates: Sequence[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    """barcode 完全一致 > sku 完全一致 > 第一个。"""
    norm = normalize_scan_code(code)
    if not norm or not candidates:
        return None
    for c in candidates:
        if normalize_scan_code(c.get("barcode")) == norm:
            return c
    for c in candidates:
        if normalize_scan_code(c.get("sku")) == norm:
            return c
    return candidates[0]


def _user_errors(payload: Optional[Mapping[str, Any]]) -> List[str]:
    errs = (payload or {}).get("userErrors") or []
    return [str(e.get("message") or e) for e in errs if e]


class AdminGraphqlClient:
    """
    远端库存平台 GraphQL admin API 客户端：

    - 每次调用一个 POST（query + variables），Bearer token；
    - HTTP 失败 / 超时 → RemoteError(TRANSPORT)；
    - 顶层 errors / userErrors → 按文本归类成 RemoteErrorKind 抛出。
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        note_max_len: Optional[int] = None,
        activation_chunk_size: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        s = get_settings()
        self.base_url = base_url if base_url is not None else s.ADMIN_API_URL
        self.note_max_len = note_max_len or s.NOTE_MAX_LEN
        self.activation_chunk_size = activation_chunk_size or s.ACTIVATION_CHUNK_SIZE
        headers = {"Content-Type": "application/json"}
        tok = token if token is not None else s.ADMIN_API_TOKEN
        if tok:
            headers["Authorization"] = f"Bearer {tok}"
        self._client = client or httpx.AsyncClient(timeout=timeout or s.ADMIN_API_TIMEOUT)
        self._owns_client = client is None
        self._headers = headers

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # 传输
    # ------------------------------------------------------------------

    async def execute(self, query: str, variables: Optional[Dict[str, Any]] = None, *, operation: str = "") -> Dict[str, Any]:
        try:
            resp = await self._client.post(
                self.base_url,
                json={"query": query, "variables": variables or {}},
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            raise RemoteError(f"{operation or 'graphql'}: {exc}", RemoteErrorKind.TRANSPORT, operation=operation) from exc

        if resp.status_code >= 400:
            raise RemoteError(
                f"HTTP {resp.status_code}: {resp.text[:500]}",
                RemoteErrorKind.TRANSPORT,
                operation=operation,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise RemoteError("invalid json response", RemoteErrorKind.TRANSPORT, operation=operation) from exc

        errors = body.get("errors") or []
        if errors:
            msg = " / ".join(str(e.get("message") if isinstance(e, Mapping) else e) for e in errors)
            raise RemoteError(msg, classify_error(msg), operation=operation)
        return body.get("data") or {}

    async def _mutate(self, query: str, variables: Dict[str, Any], field: str) -> Dict[str, Any]:
        data = await self.execute(query, variables, operation=field)
        payload = data.get(field) or {}
        errs = _user_errors(payload)
        if errs:
            msg = f"{field} failed: {' / '.join(errs)}"
            raise RemoteError(msg, classify_error(msg, user_error=True), operation=field)
        return payload

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def lookup_by_code(self, code: str) -> Optional[ItemIdentity]:
        query = build_variant_search_query(code)
        if not query:
            return None
        data = await self.execute(Q_VARIANTS, {"first": 50, "query": query}, operation="productVariants")
        nodes = (data.get("productVariants") or {}).get("nodes") or []
        candidates = [
            {
                "variantId": n.get("id"),
                "inventoryItemId": (n.get("inventoryItem") or {}).get("id"),
                "sku": n.get("sku") or "",
                "barcode": n.get("barcode") or "",
                "productTitle": (n.get("product") or {}).get("title") or "",
                "variantTitle": n.get("title") or "",
                "imageUrl": (n.get("image") or {}).get("url")
                or ((n.get("product") or {}).get("featuredImage") or {}).get("url")
                or "",
            }
            for n in nodes
        ]
        best = pick_best_variant(code, candidates)
        if best is None or not best.get("variantId") or not best.get("inventoryItemId"):
            return None
        return ItemIdentity.from_dict(best)

    async def fetch_current_quantity(self, item_id: str, location_id: str) -> Optional[int]:
        data = await self.execute(Q_CURRENT, {"id": item_id, "loc": location_id}, operation="inventoryItem")
        level = (data.get("inventoryItem") or {}).get("inventoryLevel")
        if not level:
            return None
        for q in level.get("quantities") or []:
            if q.get("name") == "available":
                return int(q.get("quantity") or 0)
        return None

    async def fetch_planned_lines(self, operation_ref: str) -> Dict[str, List[ReconciliationLine]]:
        """入库：transfer → 各 shipment 的行（分页拉全）。"""
        data = await self.execute(Q_TRANSFER_SHIPMENTS, {"id": operation_ref}, operation="inventoryTransfer")
        transfer = data.get("inventoryTransfer") or {}
        shipments = ((transfer.get("shipments") or {}).get("nodes")) or []
        out: Dict[str, List[ReconciliationLine]] = {}
        for s in shipments:
            sid = s.get("id")
            if sid:
                out[sid] = await self._fetch_shipment_lines(sid)
        return out

    async def _fetch_shipment_lines(self, shipment_id: str) -> List[ReconciliationLine]:
        lines: List[ReconciliationLine] = []
        after: Optional[str] = None
        while True:
            data = await self.execute(
                Q_SHIPMENT_LINES,
                {"id": shipment_id, "first": 250, "after": after},
                operation="inventoryShipment",
            )
            shipment = data.get("inventoryShipment") or {}
            conn = shipment.get("lineItems") or {}
            for li in conn.get("nodes") or []:
                item = li.get("inventoryItem") or {}
                v = item.get("variant") or {}
                product_title = (v.get("product") or {}).get("title") or ""
                accepted = int(li.get("acceptedQuantity") or 0)
                lines.append(
                    ReconciliationLine(
                        line_id=li["id"],
                        item_id=item.get("id") or "",
                        variant_id=v.get("id"),
                        sku=v.get("sku") or "",
                        barcode=v.get("barcode") or "",
                        image_url=(v.get("image") or {}).get("url") or "",
                        title=compose_title(product_title, v.get("title") or "", v.get("sku") or item.get("id") or ""),
                        planned_qty=int(li.get("quantity") or 0),
                        actual_qty=accepted,
                        committed_qty=accepted,
                        rejected_qty=int(li.get("rejectedQuantity") or 0),
                        group_id=shipment_id,
                        remote_line_id=li["id"],
                    )
                )
            page = conn.get("pageInfo") or {}
            if not page.get("hasNextPage"):
                break
            after = page.get("endCursor")
        return lines

    # ------------------------------------------------------------------
    # 数量调整
    # ------------------------------------------------------------------

    async def adjust_quantities(
        self,
        changes: Sequence[QuantityChange],
        *,
        reason: str = "correction",
        reference: str = "",
    ) -> Dict[str, Any]:
        inp: Dict[str, Any] = {
            "reason": reason,
            "name": "available",
            "changes": [
                {"inventoryItemId": c.item_id, "locationId": c.location_id, "delta": c.delta} for c in changes
            ],
        }
        if reference:
            inp["referenceDocumentUri"] = reference
        payload = await self._mutate(Q_ADJUST, {"input": inp}, "inventoryAdjustQuantities")
        return payload.get("inventoryAdjustmentGroup") or {}

    async def set_quantities(
        self,
        sets: Sequence[QuantitySet],
        *,
        reason: str = "correction",
        reference: str = "",
    ) -> Dict[str, Any]:
        inp: Dict[str, Any] = {
            "reason": reason,
            "name": "available",
            "quantities": [
                {
                    "inventoryItemId": s.item_id,
                    "locationId": s.location_id,
                    "quantity": s.quantity,
                    "compareQuantity": s.compare_quantity,
                }
                for s in sets
            ],
        }
        if reference:
            inp["referenceDocumentUri"] = reference
        payload = await self._mutate(Q_SET, {"input": inp}, "inventorySetQuantities")
        return payload.get("inventoryAdjustmentGroup") or {}

    async def activate_at_location(self, location_id: str, item_ids: Sequence[str]) -> ActivationResult:
        """
        按块（默认 50 个）先查 inventoryLevel，再对没有 level 的逐个 activate。
        块查询失败：整块记错误；单个激活失败：只记该 item。
        """
        res = ActivationResult()
        ids = [i for i in dict.fromkeys(str(x).strip() for x in item_ids) if i]
        size = max(1, self.activation_chunk_size)
        for start in range(0, len(ids), size):
            chunk = ids[start : start + size]
            try:
                data = await self.execute(Q_CHECK_LEVELS, {"ids": chunk, "locationId": location_id}, operation="nodes")
            except RemoteError as exc:
                res.errors.extend(f"{i}: {exc.message}" for i in chunk)
                continue
            for node in data.get("nodes") or []:
                iid = str((node or {}).get("id") or "").strip()
                if not iid:
                    continue
                if (node.get("inventoryLevel") or {}).get("id"):
                    res.already_active.append(iid)
                    continue
                try:
                    await self._mutate(
                        Q_ACTIVATE, {"inventoryItemId": iid, "locationId": location_id}, "inventoryActivate"
                    )
                    res.activated.append(iid)
                except RemoteError as exc:
                    res.errors.append(f"{iid}: {exc.message}")
        return res

    # ------------------------------------------------------------------
    # 收货 / 备注
    # ------------------------------------------------------------------

    async def receive_items(self, shipment_id: str, items: Sequence[ReceiveItem]) -> Dict[str, Any]:
        """
        inventoryShipmentReceiveItems → 不支持时 inventoryShipmentReceive
        → reason 字段也不支持时去掉 reason 再试一次。
        """
        clean = [
            {"shipmentLineItemId": it.remote_line_id, "quantity": int(it.quantity), "reason": it.reason.value}
            for it in items
            if it.remote_line_id and it.quantity > 0
        ]
        if not clean:
            return {}
        try:
            payload = await self._mutate(
                Q_RECEIVE_ITEMS, {"id": shipment_id, "items": clean}, "inventoryShipmentReceiveItems"
            )
            return payload.get("inventoryShipment") or {}
        except RemoteError as exc:
            if exc.kind is not RemoteErrorKind.CAPABILITY_UNSUPPORTED:
                raise
        FALLBACKS.labels(mutation="inventoryShipmentReceive").inc()
        logger.info("receive fallback: inventoryShipmentReceive shipment=%s", shipment_id)
        try:
            payload = await self._mutate(Q_RECEIVE, {"id": shipment_id, "lineItems": clean}, "inventoryShipmentReceive")
            return payload.get("inventoryShipment") or {}
        except RemoteError as exc:
            if exc.kind is not RemoteErrorKind.CAPABILITY_UNSUPPORTED or "reason" not in exc.message.lower():
                raise
        no_reason = [{"shipmentLineItemId": c["shipmentLineItemId"], "quantity": c["quantity"]} for c in clean]
        payload = await self._mutate(Q_RECEIVE, {"id": shipment_id, "lineItems": no_reason}, "inventoryShipmentReceive")
        return payload.get("inventoryShipment") or {}

    async def append_note(self, operation_ref: str, text: str) -> bool:
        """读当前备注 → 空行分隔追加 → 超长保留末尾 note_max_len 字符。失败返回 False。"""
        if not operation_ref or not text:
            return False
        try:
            data = await self.execute(Q_TRANSFER_NOTE, {"id": operation_ref}, operation="inventoryTransfer")
            transfer = data.get("inventoryTransfer")
            if not transfer:
                logger.warning("append_note: transfer not found id=%s", operation_ref)
                return False
            current = str(transfer.get("note") or "").strip()
            merged = f"{current}\n\n{text}" if current else text
            clipped = merged[-self.note_max_len :] if len(merged) > self.note_max_len else merged
            note_value = clipped.strip()
            if not note_value:
                return False
            payload = await self._mutate(Q_TRANSFER_EDIT, {"id": operation_ref, "input": {"note": note_value}}, "inventoryTransferEdit")
            return bool(payload.get("inventoryTransfer"))
        except RemoteError as exc:
            logger.warning("append_note failed: id=%s err=%s", operation_ref, exc.message)
            return False


class CountPlannedSource:
    """
    棚卸的计划行来源（PlannedLineSource）：

    - 商品分组从 app metafield 读（id / collectionIds / collectionConfigs）；
    - 每个 collection 拉商品变体，collectionConfigs.selectedVariantIds 非空时只取选中的；
    - planned_qty = 该 location 当前 available；没有库存水平的商品不进盘点；
    - 同一商品在多个分组里时只归第一个分组（line_id = inventory item id）。
    """

    def __init__(
        self,
        client: AdminGraphqlClient,
        *,
        location_id: str,
        group_ids: Sequence[str],
        products_first: int = 250,
        level_chunk_size: int = 50,
    ) -> None:
        self.client = client
        self.location_id = location_id
        self.group_ids = list(group_ids)
        self.products_first = max(1, min(250, int(products_first)))
        self.level_chunk_size = max(1, int(level_chunk_size))

    async def read_product_groups(self) -> List[Dict[str, Any]]:
        data = await self.client.execute(
            Q_PRODUCT_GROUPS,
            {"namespace": PRODUCT_GROUPS_NAMESPACE, "key": PRODUCT_GROUPS_KEY},
            operation="currentAppInstallation",
        )
        raw = ((data.get("currentAppInstallation") or {}).get("metafield") or {}).get("value") or "[]"
        try:
            groups = json.loads(raw)
        except ValueError:
            logger.warning("product groups metafield is not valid json")
            return []
        return [g for g in groups if isinstance(g, Mapping) and g.get("id")] if isinstance(groups, list) else []

    async def fetch_planned_lines(self, operation_ref: str) -> Dict[str, List[ReconciliationLine]]:
        """operation_ref 为棚卸 id，只用于日志。"""
        by_id = {g["id"]: g for g in await self.read_product_groups()}
        seen: set = set()
        out: Dict[str, List[ReconciliationLine]] = {}
        for gid in self.group_ids:
            group = by_id.get(gid)
            if group is None:
                logger.warning("count %s: product group not found id=%s", operation_ref, gid)
                out[gid] = []
                continue
            variants = []
            for v in await self._group_variants(group):
                if v["item_id"] in seen:
                    continue
                seen.add(v["item_id"])
                variants.append(v)
            levels = await self._available(v["item_id"] for v in variants)
            out[gid] = [
                ReconciliationLine(
                    line_id=v["item_id"],
                    item_id=v["item_id"],
                    variant_id=v["variant_id"],
                    sku=v["sku"],
                    barcode=v["barcode"],
                    image_url=v["image_url"],
                    title=compose_title(v["product_title"], v["variant_title"], v["sku"] or v["item_id"]),
                    planned_qty=levels[v["item_id"]],
                    group_id=gid,
                )
                for v in variants
                if levels.get(v["item_id"]) is not None
            ]
        return out

    async def _group_variants(self, group: Mapping[str, Any]) -> List[Dict[str, Any]]:
        configs = {
            c.get("collectionId"): c for c in group.get("collectionConfigs") or [] if isinstance(c, Mapping)
        }
        rows: List[Dict[str, Any]] = []
        for collection_id in group.get("collectionIds") or []:
            selected = set((configs.get(collection_id) or {}).get("selectedVariantIds") or [])
            data = await self.client.execute(
                Q_COLLECTION_PRODUCTS,
                {"id": collection_id, "first": self.products_first},
                operation="collection",
            )
            products = ((data.get("collection") or {}).get("products") or {}).get("nodes") or []
            for p in products:
                for v in (p.get("variants") or {}).get("nodes") or []:
                    item_id = (v.get("inventoryItem") or {}).get("id")
                    if not item_id or (selected and v.get("id") not in selected):
                        continue
                    rows.append(
                        {
                            "item_id": item_id,
                            "variant_id": v.get("id"),
                            "sku": v.get("sku") or "",
                            "barcode": v.get("barcode") or "",
                            "image_url": (v.get("image") or {}).get("url")
                            or (p.get("featuredImage") or {}).get("url")
                            or "",
                            "product_title": p.get("title") or "",
                            "variant_title": v.get("title") or "",
                        }
                    )
        return rows

    async def _available(self, item_ids) -> Dict[str, Optional[int]]:
        ids = list(item_ids)
        out: Dict[str, Optional[int]] = {}
        for i in range(0, len(ids), self.level_chunk_size):
            chunk = ids[i : i + self.level_chunk_size]
            data = await self.client.execute(
                Q_LEVELS,
                {"ids": chunk, "locationId": self.location_id},
                operation="nodes",
            )
            for node in data.get("nodes") or []:
                if not node or not node.get("id"):
                    continue
                level = node.get("inventoryLevel")
                qty = None
                if level:
                    for q in level.get("quantities") or []:
                        if q.get("name") == "available":
                            qty = int(q.get("quantity") or 0)
                out[node["id"]] = qty
        return out
