# stockrecon/utils/qty.py
from __future__ import annotations

import math

QTY_MAX = 999_999


def to_qty(value: object, default: int = 0) -> int:
    """
    宽松转非负整数：None / 非数字 → default；小数向下取整；负数 → 0。
    """
    if value is None or isinstance(value, bool):
        return default
    try:
        n = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if math.isnan(n) or math.isinf(n):
        return default
    return max(0, int(math.floor(n)))


def to_int(value: object, default: int = 0) -> int:
    """同 to_qty，但保留符号（delta 用）。"""
    if value is None or isinstance(value, bool):
        return default
    try:
        n = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if math.isnan(n) or math.isinf(n):
        return default
    return int(math.floor(n)) if n >= 0 else -int(math.floor(-n))


def clamp_qty(value: int, floor: int = 0, ceiling: int = QTY_MAX) -> int:
    return max(floor, min(ceiling, int(value)))
