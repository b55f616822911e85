# tests/services/test_change_log_service.py
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from stockrecon.models.inventory_change_log import InventoryChangeLog
from stockrecon.schemas.change_log import ChangeLogIn
from stockrecon.services.change_log_service import record_change, record_changes

pytestmark = pytest.mark.grp_api


def _entry(item: int, ts: str) -> ChangeLogIn:
    return ChangeLogIn.model_validate(
        {
            "inventoryItemId": f"gid://shopify/InventoryItem/{item}",
            "locationId": "gid://shopify/Location/1",
            "activity": "inventory_count",
            "delta": 1,
            "quantityAfter": 5,
            "timestamp": ts,
        }
    )


@pytest.mark.asyncio
async def test_batch_keeps_earlier_rows_when_later_row_conflicts(session: AsyncSession, monkeypatch):
    """
    并发写入抢先插入了同一 idempotency key：
    冲突只回滚该行，批量里先写入的行仍然提交，返回已有 id。
    """
    first = _entry(1, "2026-01-02T01:00:00Z")
    second = _entry(2, "2026-01-02T01:05:00Z")

    # 另一个请求已经写入 second
    existing = await record_change(session, "default", second, tz_name="UTC")
    await session.commit()

    # 让 second 的存在检查落空，走到唯一约束冲突分支
    real_scalar = session.scalar
    key_checks = {"n": 0}

    async def racing_scalar(stmt, *args, **kwargs):
        if "idempotency_key = " in str(stmt):
            key_checks["n"] += 1
            if key_checks["n"] == 2:
                return None
        return await real_scalar(stmt, *args, **kwargs)

    monkeypatch.setattr(session, "scalar", racing_scalar)
    results = await record_changes(session, "default", [first, second], tz_name="UTC")
    await session.commit()
    monkeypatch.undo()

    assert not results[0].duplicate
    assert results[1].duplicate and results[1].id == existing.id

    total = await session.scalar(select(func.count()).select_from(InventoryChangeLog))
    assert total == 2
    kept = await session.get(InventoryChangeLog, results[0].id)
    assert kept is not None and kept.inventory_item_id.endswith("/1")
