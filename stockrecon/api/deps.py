# stockrecon/api/deps.py
from __future__ import annotations

from typing import Optional

from fastapi import Header

from stockrecon.core.config import get_settings
from stockrecon.core.errors import ReconError


def get_shop(x_shop_domain: Optional[str] = Header(default=None)) -> str:
    """店铺标识：请求头 X-Shop-Domain 优先，否则用配置的默认店铺。"""
    shop = (x_shop_domain or "").strip()
    return shop or get_settings().SHOP_DOMAIN


def require_token(authorization: Optional[str] = Header(default=None)) -> None:
    """配置了 CHANGE_LOG_TOKEN 时要求 Bearer token 一致；未配置则放行。"""
    expected = get_settings().CHANGE_LOG_TOKEN
    if not expected:
        return
    got = (authorization or "").strip()
    if not got.lower().startswith("bearer ") or got[7:].strip() != expected:
        raise ReconError("No session found", code="UNAUTHORIZED", status=401)
