# stockrecon/services/change_log_service.py
from __future__ import annotations

import csv
import logging
from datetime import date, datetime, timedelta
from io import StringIO
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from stockrecon.core.config import get_settings
from stockrecon.core.errors import ReconError
from stockrecon.models.inventory_change_log import InventoryChangeLog
from stockrecon.schemas.change_log import ChangeLogIn, ChangeLogResult
from stockrecon.services.change_log import Activity
from stockrecon.utils.codes import raw_id
from stockrecon.utils.time import UTC, date_in_timezone, parse_ts, utc_now

logger = logging.getLogger("stockrecon.change_log")

# webhook 可能先到（activity=admin_webhook），在这个窗口内的同量记录改标为真实来源
RELABEL_BEFORE = timedelta(minutes=5)
RELABEL_AFTER = timedelta(minutes=2)

ACTIVITY_LABELS = {
    Activity.INBOUND_TRANSFER.value: "入库",
    Activity.OUTBOUND_TRANSFER.value: "出库",
    Activity.INVENTORY_COUNT.value: "盘点",
    Activity.LOSS_ENTRY.value: "损耗",
    Activity.PURCHASE_ENTRY.value: "采购",
    Activity.ADMIN_WEBHOOK.value: "管理",
}

CSV_HEADER = [
    "timestamp",
    "date",
    "inventory_item_id",
    "variant_id",
    "sku",
    "location_id",
    "location_name",
    "activity",
    "activity_label",
    "delta",
    "quantity_after",
    "source_id",
    "adjustment_group_id",
]


def activity_label(activity: Optional[str]) -> str:
    key = str(activity or "").strip().lower()
    return ACTIVITY_LABELS.get(key, "其他")


def idempotency_key(shop: str, entry: ChangeLogIn, ts_text: str) -> str:
    """shop:item:location:timestamp:quantity_after（quantity_after 缺失记为 0）"""
    return f"{shop}:{entry.inventory_item_id}:{entry.location_id}:{ts_text}:{entry.quantity_after or 0}"


def _as_utc(ts: datetime) -> datetime:
    return ts.astimezone(UTC) if ts.tzinfo else ts.replace(tzinfo=UTC)


def _location_variants(ids: Iterable[str]) -> List[str]:
    """位置过滤同时匹配 GID 与纯数字两种存法。"""
    out: List[str] = []
    for v in ids:
        s = str(v or "").strip()
        if not s:
            continue
        rid = raw_id(s)
        for cand in (s, rid, f"gid://shopify/Location/{rid}"):
            if cand not in out:
                out.append(cand)
    return out


# ----------------------------------------------------------------------
# 写入
# ----------------------------------------------------------------------


async def record_change(
    session: AsyncSession,
    shop: str,
    entry: ChangeLogIn,
    *,
    tz_name: Optional[str] = None,
) -> ChangeLogResult:
    """
    记录一条变动（调用方负责 commit）：

      1) 同 (shop, idempotency_key) 已存在 → 返回已有 id（duplicate）
      2) -5min/+2min 内有同 item / location / quantity_after 的 admin_webhook 行
         → 改标为本次 activity（updated），不新增
      3) 否则插入
    """
    tz_name = tz_name or get_settings().SHOP_TIMEZONE
    ts = _as_utc(parse_ts(entry.timestamp) or utc_now())
    ts_text = entry.timestamp or ts.isoformat().replace("+00:00", "Z")
    key = idempotency_key(shop, entry, ts_text)

    existing = await session.scalar(
        select(InventoryChangeLog).where(
            InventoryChangeLog.shop == shop,
            InventoryChangeLog.idempotency_key == key,
        )
    )
    if existing is not None:
        logger.info("change log duplicate: shop=%s id=%s", shop, existing.id)
        return ChangeLogResult(id=existing.id, duplicate=True)

    rid_item = raw_id(entry.inventory_item_id)
    rid_loc = raw_id(entry.location_id)
    # webhook 行存纯数字 ID，POS 端上报 GID：两种都匹配
    stmt = select(InventoryChangeLog).where(
        InventoryChangeLog.shop == shop,
        InventoryChangeLog.inventory_item_id.in_(sorted({entry.inventory_item_id, rid_item})),
        InventoryChangeLog.location_id.in_(_location_variants([entry.location_id])),
        InventoryChangeLog.activity == Activity.ADMIN_WEBHOOK.value,
        InventoryChangeLog.timestamp >= ts - RELABEL_BEFORE,
        InventoryChangeLog.timestamp <= ts + RELABEL_AFTER,
    )
    if entry.quantity_after is None:
        stmt = stmt.where(InventoryChangeLog.quantity_after.is_(None))
    else:
        stmt = stmt.where(InventoryChangeLog.quantity_after == entry.quantity_after)
    webhook_row = await session.scalar(stmt.order_by(InventoryChangeLog.timestamp.desc()).limit(1))

    if webhook_row is not None:
        webhook_row.activity = entry.activity
        webhook_row.source_type = entry.activity
        webhook_row.source_id = entry.source_id or None
        webhook_row.adjustment_group_id = entry.adjustment_group_id or None
        if entry.delta is not None:
            webhook_row.delta = entry.delta
        if entry.quantity_after is not None:
            webhook_row.quantity_after = entry.quantity_after
        await session.flush()
        logger.info(
            "change log relabelled admin_webhook → %s: id=%s item=%s location=%s",
            entry.activity,
            webhook_row.id,
            rid_item,
            rid_loc,
        )
        return ChangeLogResult(id=webhook_row.id, updated=True)

    row = InventoryChangeLog(
        shop=shop,
        timestamp=ts,
        date=date_in_timezone(ts, tz_name),
        inventory_item_id=entry.inventory_item_id,
        variant_id=entry.variant_id or None,
        sku=entry.sku or "",
        location_id=entry.location_id,
        location_name=entry.location_name or entry.location_id,
        activity=entry.activity,
        delta=entry.delta,
        quantity_after=entry.quantity_after,
        source_type=entry.activity,
        source_id=entry.source_id or None,
        adjustment_group_id=entry.adjustment_group_id or None,
        idempotency_key=key,
        note=None,
    )
    try:
        # savepoint：冲突只回滚本行，批量里先写入的行保留
        async with session.begin_nested():
            session.add(row)
            await session.flush()
    except IntegrityError:
        # 并发重复提交：唯一约束兜底，返回先写入的那条
        again = await session.scalar(
            select(InventoryChangeLog).where(
                InventoryChangeLog.shop == shop,
                InventoryChangeLog.idempotency_key == key,
            )
        )
        if again is None:
            raise
        return ChangeLogResult(id=again.id, duplicate=True)

    logger.info(
        "change log recorded: shop=%s activity=%s item=%s location=%s delta=%s qty_after=%s",
        shop,
        entry.activity,
        rid_item,
        rid_loc,
        entry.delta,
        entry.quantity_after,
    )
    return ChangeLogResult(id=row.id)


async def record_changes(
    session: AsyncSession,
    shop: str,
    entries: Sequence[ChangeLogIn],
    *,
    tz_name: Optional[str] = None,
) -> List[ChangeLogResult]:
    return [await record_change(session, shop, e, tz_name=tz_name) for e in entries]


# ----------------------------------------------------------------------
# 查询 / 导出
# ----------------------------------------------------------------------


def _history_stmt(
    shop: str,
    *,
    location_ids: Sequence[str] = (),
    activities: Sequence[str] = (),
    item_ids: Sequence[str] = (),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
):
    stmt = select(InventoryChangeLog).where(InventoryChangeLog.shop == shop)
    if location_ids:
        stmt = stmt.where(InventoryChangeLog.location_id.in_(_location_variants(location_ids)))
    if activities:
        stmt = stmt.where(InventoryChangeLog.activity.in_(list(activities)))
    if item_ids:
        stmt = stmt.where(InventoryChangeLog.inventory_item_id.in_(list(item_ids)))
    if date_from is not None:
        stmt = stmt.where(InventoryChangeLog.date >= date_from)
    if date_to is not None:
        stmt = stmt.where(InventoryChangeLog.date <= date_to)
    return stmt


def _ordered(stmt, order: str):
    if order == "asc":
        return stmt.order_by(InventoryChangeLog.timestamp.asc(), InventoryChangeLog.id.asc())
    return stmt.order_by(InventoryChangeLog.timestamp.desc(), InventoryChangeLog.id.desc())


async def list_changes(
    session: AsyncSession,
    shop: str,
    *,
    location_ids: Sequence[str] = (),
    activities: Sequence[str] = (),
    item_ids: Sequence[str] = (),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    order: str = "desc",
    limit: int = 100,
    offset: int = 0,
) -> Tuple[int, List[InventoryChangeLog]]:
    """→ (总数, 当前页)；默认最新在前。"""
    base = _history_stmt(
        shop,
        location_ids=location_ids,
        activities=activities,
        item_ids=item_ids,
        date_from=date_from,
        date_to=date_to,
    )
    total = await session.scalar(select(func.count()).select_from(base.subquery()))
    rows = (await session.execute(_ordered(base, order).limit(limit).offset(offset))).scalars().all()
    return int(total or 0), list(rows)


async def export_rows(
    session: AsyncSession,
    shop: str,
    *,
    max_rows: Optional[int] = None,
    order: str = "desc",
    **filters,
) -> List[InventoryChangeLog]:
    max_rows = max_rows or get_settings().CHANGE_HISTORY_MAX_EXPORT
    base = _history_stmt(shop, **filters)
    count = int(await session.scalar(select(func.count()).select_from(base.subquery())) or 0)
    if count > max_rows:
        raise ReconError(
            f"too many rows to export ({count} > {max_rows}); narrow the date range or filters",
            code="EXPORT_TOO_LARGE",
            status=400,
        )
    return list((await session.execute(_ordered(base, order))).scalars().all())


def build_history_csv(rows: Iterable[InventoryChangeLog]) -> Tuple[StringIO, str]:
    """CSV（首行表头，带 UTF-8 BOM，表格软件直接打开不乱码）。"""
    buf = StringIO()
    buf.write("\ufeff")
    writer = csv.writer(buf)
    writer.writerow(CSV_HEADER)
    for r in rows:
        ts = r.timestamp.isoformat() if isinstance(r.timestamp, datetime) else str(r.timestamp)
        d = r.date.isoformat() if isinstance(r.date, date) else str(r.date)
        writer.writerow(
            [
                ts,
                d,
                r.inventory_item_id,
                r.variant_id or "",
                r.sku or "",
                r.location_id,
                r.location_name or "",
                r.activity,
                activity_label(r.activity),
                "" if r.delta is None else r.delta,
                "" if r.quantity_after is None else r.quantity_after,
                r.source_id or "",
                r.adjustment_group_id or "",
            ]
        )
    buf.seek(0)
    filename = f"inventory_change_history_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
    return buf, filename
