# stockrecon/models/inventory_change_log.py
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from sqlalchemy import BigInteger, Date, DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from stockrecon.db.base import Base


class InventoryChangeLog(Base):
    """
    在库变动日志（按 (item, location) 的 delta 粒度，供下游报表）。

    - activity       : inbound_transfer / outbound_transfer / inventory_count / ... / admin_webhook
    - idempotency_key: shop:item:location:timestamp:quantity_after，(shop, key) 唯一
    """

    __tablename__ = "inventory_change_log"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)

    inventory_item_id: Mapped[str] = mapped_column(String(255), nullable=False)
    variant_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sku: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    location_id: Mapped[str] = mapped_column(String(255), nullable=False)
    location_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    activity: Mapped[str] = mapped_column(String(64), nullable=False)
    delta: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    quantity_after: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source_type: Mapped[str] = mapped_column(String(64), nullable=False)
    source_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    adjustment_group_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(512), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("shop", "idempotency_key", name="uq_inventory_change_log_shop_idem"),
        Index("ix_inventory_change_log_shop_ts", "shop", "timestamp"),
        Index("ix_inventory_change_log_item_loc", "shop", "inventory_item_id", "location_id"),
    )
