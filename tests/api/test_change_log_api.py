# tests/api/test_change_log_api.py
from datetime import date, datetime, timezone

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from stockrecon.core.config import get_settings
from stockrecon.models.inventory_change_log import InventoryChangeLog

pytestmark = pytest.mark.grp_api

UTC = timezone.utc
ITEM = "gid://shopify/InventoryItem/1"
LOC = "gid://shopify/Location/1"


def _entry(**over):
    base = {
        "inventoryItemId": ITEM,
        "locationId": LOC,
        "locationName": "店铺A",
        "activity": "inbound_transfer",
        "delta": 3,
        "quantityAfter": 10,
        "sourceId": "100",
        "timestamp": "2026-01-02T01:00:00Z",
    }
    base.update(over)
    return base


@pytest.fixture
def change_log_token(monkeypatch):
    monkeypatch.setenv("RECON_CHANGE_LOG_TOKEN", "s3cret")
    get_settings.cache_clear()
    yield "s3cret"
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_single_entry_is_idempotent(client: httpx.AsyncClient):
    r1 = await client.post("/api/log-inventory-change", json=_entry())
    assert r1.status_code == 200, r1.text
    b1 = r1.json()
    assert b1["ok"] is True and isinstance(b1["id"], int) and b1["duplicate"] is False

    r2 = await client.post("/api/log-inventory-change", json=_entry())
    b2 = r2.json()
    assert b2["duplicate"] is True and b2["id"] == b1["id"]

    page = (await client.get("/api/change-history")).json()
    assert page["total"] == 1
    row = page["items"][0]
    assert row["activity"] == "inbound_transfer"
    assert row["date"] == "2026-01-02"
    assert row["quantity_after"] == 10


@pytest.mark.asyncio
async def test_batch_entries(client: httpx.AsyncClient):
    body = {
        "entries": [
            _entry(),
            _entry(inventoryItemId=2, timestamp="2026-01-02T02:00:00Z", activity="outbound_transfer", delta=-1),
        ]
    }
    r = await client.post("/api/log-inventory-change", json=body)
    assert r.status_code == 200, r.text
    results = r.json()["results"]
    assert len(results) == 2
    assert all(x["ok"] and not x["duplicate"] for x in results)


@pytest.mark.asyncio
async def test_missing_fields_rejected(client: httpx.AsyncClient):
    r = await client.post("/api/log-inventory-change", json={"activity": "inbound_transfer"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INVALID_PAYLOAD"


@pytest.mark.asyncio
async def test_recent_admin_webhook_row_is_relabelled(client: httpx.AsyncClient, session: AsyncSession):
    """webhook 先到（纯数字 ID）：2 分钟后同量上报 → 改标，不新增。"""
    ts = datetime(2026, 1, 2, 0, 59, tzinfo=UTC)
    row = InventoryChangeLog(
        shop="default",
        timestamp=ts,
        date=date(2026, 1, 2),
        inventory_item_id="1",
        location_id="1",
        location_name="1",
        activity="admin_webhook",
        delta=3,
        quantity_after=10,
        source_type="admin_webhook",
        idempotency_key="webhook-1",
    )
    session.add(row)
    await session.commit()

    r = await client.post("/api/log-inventory-change", json=_entry())
    body = r.json()
    assert body["updated"] is True and body["id"] == row.id

    page = (await client.get("/api/change-history")).json()
    assert page["total"] == 1
    assert page["items"][0]["activity"] == "inbound_transfer"
    assert page["items"][0]["source_id"] == "100"


@pytest.mark.asyncio
async def test_webhook_outside_window_is_not_touched(client: httpx.AsyncClient, session: AsyncSession):
    session.add(
        InventoryChangeLog(
            shop="default",
            timestamp=datetime(2026, 1, 2, 0, 30, tzinfo=UTC),
            date=date(2026, 1, 2),
            inventory_item_id="1",
            location_id="1",
            activity="admin_webhook",
            quantity_after=10,
            source_type="admin_webhook",
            idempotency_key="webhook-old",
        )
    )
    await session.commit()

    body = (await client.post("/api/log-inventory-change", json=_entry())).json()
    assert body["updated"] is False

    page = (await client.get("/api/change-history", params={"order": "asc"})).json()
    assert [x["activity"] for x in page["items"]] == ["admin_webhook", "inbound_transfer"]


@pytest.mark.asyncio
async def test_history_filters_order_and_paging(client: httpx.AsyncClient):
    await client.post("/api/log-inventory-change", json=_entry(timestamp="2026-01-01T01:00:00Z"))
    await client.post(
        "/api/log-inventory-change",
        json=_entry(activity="inventory_count", timestamp="2026-01-02T01:00:00Z", quantityAfter=7),
    )
    await client.post(
        "/api/log-inventory-change",
        json=_entry(locationId="gid://shopify/Location/2", timestamp="2026-01-03T01:00:00Z"),
    )

    desc = (await client.get("/api/change-history")).json()
    assert desc["total"] == 3
    assert [x["date"] for x in desc["items"]] == ["2026-01-03", "2026-01-02", "2026-01-01"]

    asc = (await client.get("/api/change-history", params={"order": "asc", "limit": 1, "offset": 1})).json()
    assert asc["total"] == 3
    assert [x["date"] for x in asc["items"]] == ["2026-01-02"]

    counts = (await client.get("/api/change-history", params={"activity": "inventory_count"})).json()
    assert counts["total"] == 1

    # 纯数字 location 也能匹配 GID 存储的行
    loc1 = (await client.get("/api/change-history", params={"location_id": "1"})).json()
    assert loc1["total"] == 2

    ranged = (
        await client.get("/api/change-history", params={"date_from": "2026-01-02", "date_to": "2026-01-02"})
    ).json()
    assert ranged["total"] == 1

    bad = await client.get("/api/change-history", params={"date_from": "2026-01-03", "date_to": "2026-01-01"})
    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "INVALID_RANGE"


@pytest.mark.asyncio
async def test_history_is_scoped_by_shop(client: httpx.AsyncClient):
    await client.post("/api/log-inventory-change", json=_entry(), headers={"X-Shop-Domain": "a.example"})

    assert (await client.get("/api/change-history")).json()["total"] == 0
    other = await client.get("/api/change-history", headers={"X-Shop-Domain": "a.example"})
    assert other.json()["total"] == 1


@pytest.mark.asyncio
async def test_csv_export_has_bom_and_header(client: httpx.AsyncClient):
    await client.post("/api/log-inventory-change", json=_entry())

    r = await client.get("/api/change-history.csv")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert "attachment" in r.headers["content-disposition"]
    assert r.content.startswith("﻿".encode("utf-8"))

    lines = r.content.decode("utf-8-sig").splitlines()
    assert lines[0].split(",")[:3] == ["timestamp", "date", "inventory_item_id"]
    assert len(lines) == 2
    assert "入库" in lines[1]


@pytest.mark.asyncio
async def test_token_required_when_configured(client: httpx.AsyncClient, change_log_token):
    r = await client.post("/api/log-inventory-change", json=_entry())
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "UNAUTHORIZED"

    ok = await client.post(
        "/api/log-inventory-change",
        json=_entry(),
        headers={"Authorization": f"Bearer {change_log_token}"},
    )
    assert ok.status_code == 200


@pytest.mark.asyncio
async def test_metrics_endpoint(client: httpx.AsyncClient):
    r = await client.get("/metrics")
    assert r.status_code == 200
    assert "recon_scans_total" in r.text
