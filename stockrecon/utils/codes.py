# stockrecon/utils/codes.py
from __future__ import annotations

import re
from typing import Optional

_WS = re.compile(r"\s+")
_NOT_CODE = re.compile(r"[^0-9A-Z._-]")


def normalize_scan_code(code: object) -> str:
    """
    扫码值统一口径：去空白 → 大写 → 只保留 [0-9A-Z._-]。
    None / 空串 → ""。
    """
    s = str(code if code is not None else "").strip()
    if not s:
        return ""
    return _NOT_CODE.sub("", _WS.sub("", s).upper())


def hash_code(code: str) -> int:
    """djb2 变体（h*33 ^ c），按 32 位无符号截断，用于缓存分片。"""
    h = 5381
    for ch in code:
        h = (((h << 5) + h) ^ ord(ch)) & 0xFFFFFFFF
    return h


def raw_id(value: object) -> str:
    """gid://shopify/InventoryItem/123 → "123"；非 GID 原样（去空白）。"""
    if value is None:
        return ""
    s = str(value).strip()
    if s.startswith("gid://"):
        last = s.rsplit("/", 1)[-1]
        return last or s
    return s


def to_gid(kind: str, value: object) -> Optional[str]:
    """
    数字 → gid://shopify/<kind>/<n>；已是 GID 原样返回；其他 → None。
    """
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if s.startswith("gid://"):
        return s
    if s.isdigit():
        return f"gid://shopify/{kind}/{s}"
    return None
