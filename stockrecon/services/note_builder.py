# stockrecon/services/note_builder.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from stockrecon.utils.time import utc_now

_HEADERS = {
    "receive": "[POS入库处理]",
    "count": "[POS盘点处理]",
}


def _title(x: Mapping[str, Any]) -> str:
    return str(x.get("title") or x.get("inventoryItemId") or "不明").strip()


def _local(at: datetime, tz_name: str) -> datetime:
    try:
        return at.astimezone(ZoneInfo(tz_name or "UTC"))
    except (ZoneInfoNotFoundError, ValueError):
        return at


def build_note_line(
    *,
    workflow: str = "receive",
    finalize: bool,
    note: str = "",
    over: Iterable[Mapping[str, Any]] = (),
    extras: Iterable[Mapping[str, Any]] = (),
    adjustments: Iterable[Mapping[str, Any]] = (),
    at: Optional[datetime] = None,
    tz_name: str = "UTC",
) -> str:
    """
    追加到远端单据备注里的一段文字：

        [POS入库处理] 2026-01-02 10:30
        状态: 完成
        备注: ...
        超出预定: 1件
          - 商品 / 红 (SKU: A-1): +2
        预定外入库: 1件
          - 商品X, SKU: X-1, 数量: 2
        库存调整记录:
          - 仓库A: 商品X +2
    """
    ts = _local(at or utc_now(), tz_name).strftime("%Y-%m-%d %H:%M")
    lines: List[str] = [f"{_HEADERS.get(workflow, '[POS处理]')} {ts}"]
    lines.append("状态: 完成" if finalize else "状态: 部分处理")
    if note:
        lines.append(f"备注: {note}")

    over = list(over)
    if over:
        lines.append(f"超出预定: {len(over)}件")
        for o in over:
            sku = str(o.get("sku") or "").strip()
            qty = int(o.get("qty") or 0)
            lines.append(f"  - {_title(o)} (SKU: {sku}): +{qty}" if sku else f"  - {_title(o)}: +{qty}")

    extras = list(extras)
    if extras:
        lines.append(f"预定外: {len(extras)}件")
        for e in extras:
            sku = str(e.get("sku") or "").strip()
            qty = int(e.get("qty") or 0)
            lines.append(f"  - {_title(e)}{', SKU: ' + sku if sku else ''}, 数量: {qty}")

    adjustments = list(adjustments)
    if adjustments:
        lines.append("库存调整记录:")
        for a in adjustments:
            loc = str(a.get("locationName") or a.get("locationId") or "不明").strip()
            delta = int(a.get("delta") or 0)
            lines.append(f"  - {loc}: {_title(a)} {'+' if delta > 0 else ''}{delta}")

    return "\n".join(lines)
