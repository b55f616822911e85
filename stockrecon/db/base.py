# stockrecon/db/base.py
from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """全局唯一 ORM Base"""

    pass


def init_models() -> None:
    """显式导入模型模块，确保 Base.metadata 完整（create_all 前调用）。"""
    from stockrecon.models import inventory_change_log, kv_store  # noqa: F401
