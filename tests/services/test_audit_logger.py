# tests/services/test_audit_logger.py
from __future__ import annotations

import pytest
from sqlalchemy import text

from stockrecon.services.audit_logger import AuditEntry, AuditLogger
from stockrecon.storage.kv import SqlKeyValueStore

pytestmark = pytest.mark.grp_commit


@pytest.mark.asyncio
async def test_append_newest_first_and_bounded(kv):
    audit = AuditLogger(kv, max_entries=3)
    for n in range(5):
        await audit.append(AuditEntry(operation_ref=f"S{n}", location_ref="L1"))

    entries = await audit.read()
    assert [e.operation_ref for e in entries] == ["S4", "S3", "S2"]
    assert all(e.at for e in entries)

    raw = await kv.get(audit.key)
    # 旧读者按 shipmentId 过滤
    assert raw[0]["shipmentId"] == "S4"


@pytest.mark.asyncio
async def test_read_tolerates_garbage(kv):
    audit = AuditLogger(kv, max_entries=10)
    await kv.set(audit.key, {"not": "a list"})
    assert await audit.read() == []

    await kv.set(audit.key, [None, 3, {"shipmentId": "S9", "over": "bad"}, {"note": "no ref"}])
    (only,) = await audit.read()
    assert only.operation_ref == "S9" and only.over == []

    assert [e.operation_ref for e in await audit.history_for("S9")] == ["S9"]


@pytest.mark.asyncio
async def test_sql_kv_store_upsert_delete_and_bad_json(async_session_maker):
    store = SqlKeyValueStore(async_session_maker, namespace="shop-a")

    assert await store.get("k") is None
    await store.set("k", {"v": 1, "名": "值"})
    await store.set("k", {"v": 2})
    assert await store.get("k") == {"v": 2}

    # 命名空间隔离
    other = SqlKeyValueStore(async_session_maker, namespace="shop-b")
    assert await other.get("k") is None

    async with async_session_maker() as s:
        await s.execute(text("UPDATE kv_store SET value = '{broken' WHERE key = 'shop-a:k'"))
        await s.commit()
    assert await store.get("k") is None

    await store.delete("k")
    await store.delete("k")
    async with async_session_maker() as s:
        n = (await s.execute(text("SELECT COUNT(*) FROM kv_store"))).scalar_one()
    assert n == 0


@pytest.mark.asyncio
async def test_audit_logger_over_sql_store(async_session_maker):
    audit = AuditLogger(SqlKeyValueStore(async_session_maker), max_entries=5)
    await audit.append(
        AuditEntry(
            operation_ref="S1",
            location_ref="L1",
            over=[{"inventoryItemId": "i1", "qty": 2, "title": "T", "sku": "A"}],
        )
    )
    (entry,) = await audit.read()
    assert entry.over[0]["qty"] == 2


class _FlakyStore:
    def __init__(self, inner) -> None:
        self.inner = inner
        self.fail_next_get = False

    async def get(self, key):
        if self.fail_next_get:
            self.fail_next_get = False
            raise ConnectionError("store unavailable")
        return await self.inner.get(key)

    async def set(self, key, value):
        await self.inner.set(key, value)

    async def delete(self, key):
        await self.inner.delete(key)


@pytest.mark.asyncio
async def test_append_read_failure_keeps_history(kv):
    store = _FlakyStore(kv)
    audit = AuditLogger(store, max_entries=10)
    for n in range(5):
        await audit.append(AuditEntry(operation_ref=f"S{n}", location_ref="L1"))

    store.fail_next_get = True
    with pytest.raises(ConnectionError):
        await audit.append(AuditEntry(operation_ref="S5", location_ref="L1"))
    assert len(await audit.read()) == 5

    await audit.append(AuditEntry(operation_ref="S5", location_ref="L1"))
    assert [e.operation_ref for e in await audit.read()] == ["S5", "S4", "S3", "S2", "S1", "S0"]

    # 读路径仍然容错
    store.fail_next_get = True
    assert await audit.read() == []
