# stockrecon/api/routers/change_log.py
from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from stockrecon.api.deps import get_shop, require_token
from stockrecon.core.errors import ReconError
from stockrecon.db.session import get_session
from stockrecon.schemas.change_log import (
    ChangeHistoryPage,
    ChangeHistoryRow,
    ChangeLogBatchIn,
    ChangeLogBatchResult,
    ChangeLogIn,
)
from stockrecon.services.change_log_service import (
    build_history_csv,
    export_rows,
    list_changes,
    record_change,
    record_changes,
)

router = APIRouter(prefix="/api", tags=["change-log"], dependencies=[Depends(require_token)])


@router.post("/log-inventory-change")
async def log_inventory_change(
    payload: Dict[str, Any] = Body(...),
    shop: str = Depends(get_shop),
    session: AsyncSession = Depends(get_session),
):
    """
    记录库存变动：

    - 单条：{inventoryItemId, locationId, activity, delta, quantityAfter, ...}
    - 批量：{"entries": [...]}
    - 同一 idempotency key 重复上报 → 返回已有 id；
    - 近期 admin_webhook 行 → 改标为本次 activity。
    """
    try:
        if "entries" in payload:
            batch = ChangeLogBatchIn.model_validate(payload)
            results = await record_changes(session, shop, batch.entries)
            await session.commit()
            return ChangeLogBatchResult(results=results)
        entry = ChangeLogIn.model_validate(payload)
    except ValidationError as exc:
        raise ReconError(f"Missing required fields: {exc.error_count()} error(s)", code="INVALID_PAYLOAD", status=400) from exc

    result = await record_change(session, shop, entry)
    await session.commit()
    return result


def _filters(
    location_id: List[str],
    activity: List[str],
    item_id: List[str],
    date_from: Optional[date],
    date_to: Optional[date],
) -> Dict[str, Any]:
    if date_from and date_to and date_from > date_to:
        raise ReconError("date_from must not be after date_to", code="INVALID_RANGE", status=400)
    return {
        "location_ids": location_id,
        "activities": activity,
        "item_ids": item_id,
        "date_from": date_from,
        "date_to": date_to,
    }


@router.get("/change-history", response_model=ChangeHistoryPage)
async def change_history(
    location_id: List[str] = Query(default=[]),
    activity: List[str] = Query(default=[]),
    item_id: List[str] = Query(default=[]),
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    order: Literal["asc", "desc"] = Query(default="desc"),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    shop: str = Depends(get_shop),
    session: AsyncSession = Depends(get_session),
):
    """变动历史（默认最新在前）。"""
    total, rows = await list_changes(
        session,
        shop,
        order=order,
        limit=limit,
        offset=offset,
        **_filters(location_id, activity, item_id, date_from, date_to),
    )
    return ChangeHistoryPage(total=total, items=[ChangeHistoryRow.model_validate(r) for r in rows])


@router.get("/change-history.csv")
async def change_history_csv(
    location_id: List[str] = Query(default=[]),
    activity: List[str] = Query(default=[]),
    item_id: List[str] = Query(default=[]),
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    order: Literal["asc", "desc"] = Query(default="desc"),
    shop: str = Depends(get_shop),
    session: AsyncSession = Depends(get_session),
):
    """导出 CSV（表头 + UTF-8 BOM）；超过导出上限返回 400。"""
    rows = await export_rows(session, shop, order=order, **_filters(location_id, activity, item_id, date_from, date_to))
    buf, filename = build_history_csv(rows)
    return StreamingResponse(
        buf,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
