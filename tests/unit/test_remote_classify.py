# tests/unit/test_remote_classify.py
import pytest

from stockrecon.adapters.admin_graphql import build_variant_search_query, classify_error, pick_best_variant
from stockrecon.core.errors import RemoteErrorKind


@pytest.mark.parametrize(
    "msg, kind",
    [
        ("Field 'inventoryShipmentReceiveItems' doesn't exist on type 'Mutation'", RemoteErrorKind.CAPABILITY_UNSUPPORTED),
        ("Argument 'reason' is not defined by type 'X'", RemoteErrorKind.CAPABILITY_UNSUPPORTED),
        ("quantity exceeds unreceived quantity", RemoteErrorKind.QUANTITY_BOUNDS),
        ("compareQuantity does not match", RemoteErrorKind.COMPARE_MISMATCH),
        ("Throttled", RemoteErrorKind.OTHER),
        ("", RemoteErrorKind.OTHER),
    ],
)
def test_classify_error(msg, kind):
    assert classify_error(msg) is kind


def test_classify_user_error_default():
    assert classify_error("Location is inactive", user_error=True) is RemoteErrorKind.USER_ERROR


def test_build_variant_search_query():
    assert build_variant_search_query("4900000000001") == "barcode:4900000000001 OR 4900000000001"
    assert build_variant_search_query("1234") == "1234"
    assert build_variant_search_query("SKU-1") == "sku:SKU-1 OR SKU-1"
    assert build_variant_search_query("  ") == ""


def test_pick_best_variant_prefers_barcode_then_sku():
    candidates = [
        {"variantId": "v1", "sku": "X", "barcode": "111"},
        {"variantId": "v2", "sku": "ABC", "barcode": "222"},
        {"variantId": "v3", "sku": "333", "barcode": "abc"},
    ]
    assert pick_best_variant("abc", candidates)["variantId"] == "v3"
    assert pick_best_variant("222", candidates)["variantId"] == "v2"
    assert pick_best_variant("x", candidates)["variantId"] == "v1"
    assert pick_best_variant("zzz", candidates)["variantId"] == "v1"
    assert pick_best_variant("", candidates) is None
    assert pick_best_variant("abc", []) is None
