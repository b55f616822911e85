# tests/unit/test_draft_migrations.py
from stockrecon.services.draft_migrations import DRAFT_VERSION, migrate_count_record, migrate_draft


def test_non_dict_and_unknown_shape_are_no_draft():
    assert migrate_draft(None) is None
    assert migrate_draft([1, 2]) is None
    assert migrate_draft({"foo": 1}) is None


def test_current_version_passthrough():
    raw = {"v": DRAFT_VERSION, "lines": [], "note": "x"}
    assert migrate_draft(raw) == raw


def test_v1_inbound_draft():
    raw = {
        "shipmentId": "gid://shopify/InventoryShipment/9",
        "transferId": "gid://shopify/InventoryTransfer/1",
        "rows": [
            {"shipmentLineItemId": "L1", "receiveQty": "3"},
            {"receiveQty": 2},
            "junk",
        ],
        "extras": [
            {"inventoryItemId": "gid://shopify/InventoryItem/5", "receiveQty": 2, "label": "赠品"},
            {"receiveQty": 1},
        ],
        "reason": "damaged",
        "note": " 备注 ",
    }
    out = migrate_draft(raw)

    assert out["v"] == DRAFT_VERSION
    assert out["operationId"] == "gid://shopify/InventoryTransfer/1"
    assert out["reasonCode"] == "damaged"
    assert out["note"] == "备注"
    planned, extra = out["lines"]
    assert planned["lineId"] == "L1" and planned["actualQty"] == 3 and not planned["isUnplanned"]
    assert planned["groupId"] == "gid://shopify/InventoryShipment/9"
    assert extra["isUnplanned"] and extra["title"] == "赠品" and extra["actualQty"] == 2


def test_v1_count_draft():
    raw = {
        "countId": "C-1",
        "items": [
            {"inventoryItemId": "I1", "actualQuantity": 4, "currentQuantity": 6, "productGroupId": "G1"},
            {"inventoryItemId": "I2", "actualQty": 1, "isExtra": True},
            {"sku": "no-item"},
        ],
    }
    out = migrate_draft(raw)

    assert out["operationId"] == "C-1"
    assert len(out["lines"]) == 2
    first, second = out["lines"]
    assert first["lineId"] == "I1" and first["plannedQty"] == 6 and first["actualQty"] == 4
    assert first["groupId"] == "G1"
    assert second["isUnplanned"] and second["groupId"] is None


def test_lines_without_version_are_upgraded():
    out = migrate_draft({"lines": [{"lineId": "a"}]})
    assert out["v"] == DRAFT_VERSION


def test_count_record_legacy_flat_items_split_by_group():
    raw = {
        "id": "C-1",
        "status": "completed",
        "items": [
            {"inventoryItemId": "I1", "actualQuantity": 3},
            {"inventoryItemId": "I3", "actualQuantity": 1},
        ],
    }
    out = migrate_count_record(raw, {"G1": ["I1", "I2"], "G2": ["I3"], "G3": ["I9"]})

    assert out["operationId"] == "C-1"
    assert out["groupIds"] == ["G1", "G2", "G3"]
    assert set(out["groupItems"]) == {"G1", "G2"}
    assert out["groupItems"]["G1"][0]["inventoryItemId"] == "I1"


def test_count_record_new_shape_passthrough():
    raw = {"groupItems": {"G1": []}, "groupIds": ["G1"]}
    assert migrate_count_record(raw, {}) == raw
    assert migrate_count_record("x", {}) is None
