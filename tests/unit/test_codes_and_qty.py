# tests/unit/test_codes_and_qty.py
import pytest

from stockrecon.utils.codes import hash_code, normalize_scan_code, raw_id, to_gid
from stockrecon.utils.qty import QTY_MAX, clamp_qty, to_int, to_qty


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("  4900000000001 ", "4900000000001"),
        ("sku-1", "SKU-1"),
        ("ab c\t12", "ABC12"),
        ("A/B#1.2_x", "AB1.2_X"),
        (None, ""),
        ("   ", ""),
    ],
)
def test_normalize_scan_code(raw, expected):
    assert normalize_scan_code(raw) == expected


def test_hash_code_is_stable_and_32bit():
    h = hash_code("4900000000001")
    assert h == hash_code("4900000000001")
    assert 0 <= h <= 0xFFFFFFFF
    assert hash_code("") == 5381
    assert hash_code("A") != hash_code("B")


def test_raw_id_and_to_gid():
    assert raw_id("gid://shopify/InventoryItem/123") == "123"
    assert raw_id(" 456 ") == "456"
    assert raw_id(None) == ""

    assert to_gid("Location", 77) == "gid://shopify/Location/77"
    assert to_gid("Location", "gid://shopify/Location/1") == "gid://shopify/Location/1"
    assert to_gid("Location", "abc") is None
    assert to_gid("Location", "") is None


def test_to_qty_is_lenient_and_non_negative():
    assert to_qty("3") == 3
    assert to_qty(2.9) == 2
    assert to_qty(-3) == 0
    assert to_qty("x") == 0
    assert to_qty(None, 5) == 5
    assert to_qty(True) == 0
    assert to_qty(float("nan")) == 0


def test_to_int_keeps_sign_and_clamp():
    assert to_int("-2.7") == -2
    assert to_int(4.2) == 4
    assert clamp_qty(-1) == 0
    assert clamp_qty(QTY_MAX + 10) == QTY_MAX
    assert clamp_qty(3, floor=5) == 5
