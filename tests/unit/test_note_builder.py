# tests/unit/test_note_builder.py
from datetime import datetime, timezone

from stockrecon.services.note_builder import build_note_line

AT = datetime(2026, 1, 2, 1, 30, tzinfo=timezone.utc)


def test_receive_note_full():
    text = build_note_line(
        finalize=True,
        note="外箱破损",
        over=[{"title": "Tee / Red", "sku": "A-1", "qty": 2}],
        extras=[{"title": "Gift", "qty": 1}],
        adjustments=[{"locationName": "仓库A", "title": "Gift", "delta": 1}],
        at=AT,
        tz_name="Asia/Tokyo",
    )
    lines = text.split("\n")

    assert lines[0] == "[POS入库处理] 2026-01-02 10:30"
    assert lines[1] == "状态: 完成"
    assert "备注: 外箱破损" in lines
    assert "超出预定: 1件" in lines
    assert "  - Tee / Red (SKU: A-1): +2" in lines
    assert "  - Gift, 数量: 1" in lines
    assert "  - 仓库A: Gift +1" in lines


def test_partial_note_minimal_and_bad_timezone():
    text = build_note_line(finalize=False, at=AT, tz_name="Not/AZone")
    assert text == "[POS入库处理] 2026-01-02 01:30\n状态: 部分处理"


def test_count_header_and_negative_adjustment():
    text = build_note_line(
        workflow="count",
        finalize=True,
        adjustments=[{"locationId": "L9", "inventoryItemId": "I1", "delta": -3}],
        at=AT,
    )
    assert text.startswith("[POS盘点处理]")
    assert text.endswith("  - L9: I1 -3")
