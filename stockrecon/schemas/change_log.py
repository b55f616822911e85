# stockrecon/schemas/change_log.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Base(BaseModel):
    """
    通用基类：
    - from_attributes: 支持 ORM 序列化；
    - extra = ignore: 忽略未知字段（前向兼容）；
    - populate_by_name: 允许 snake_case 或 camelCase。
    """

    model_config = ConfigDict(
        from_attributes=True,
        extra="ignore",
        populate_by_name=True,
    )


class ChangeLogIn(_Base):
    """一条库存变动（POS 端 / 提交流程上报）。"""

    inventory_item_id: str = Field(..., alias="inventoryItemId", min_length=1)
    location_id: str = Field(..., alias="locationId", min_length=1)
    activity: str = Field(..., min_length=1, max_length=64)
    variant_id: Optional[str] = Field(default=None, alias="variantId")
    sku: Optional[str] = None
    location_name: Optional[str] = Field(default=None, alias="locationName")
    delta: Optional[int] = None
    quantity_after: Optional[int] = Field(default=None, alias="quantityAfter")
    source_id: Optional[str] = Field(default=None, alias="sourceId")
    adjustment_group_id: Optional[str] = Field(default=None, alias="adjustmentGroupId")
    timestamp: Optional[str] = None

    @field_validator("inventory_item_id", "location_id", "variant_id", "source_id", "adjustment_group_id", mode="before")
    @classmethod
    def _id_to_str(cls, v):
        # 数字 ID 也接受
        if v is None:
            return v
        return str(v).strip()


class ChangeLogBatchIn(_Base):
    entries: List[ChangeLogIn] = Field(default_factory=list)


class ChangeLogResult(_Base):
    ok: bool = True
    id: Optional[int] = None
    updated: bool = False
    duplicate: bool = False


class ChangeLogBatchResult(_Base):
    ok: bool = True
    results: List[ChangeLogResult] = Field(default_factory=list)


class ChangeHistoryRow(_Base):
    id: int
    timestamp: datetime
    date: str
    inventory_item_id: str
    variant_id: Optional[str] = None
    sku: str = ""
    location_id: str
    location_name: str = ""
    activity: str
    delta: Optional[int] = None
    quantity_after: Optional[int] = None
    source_id: Optional[str] = None
    adjustment_group_id: Optional[str] = None

    @field_validator("date", mode="before")
    @classmethod
    def _date_str(cls, v):
        return v.isoformat() if hasattr(v, "isoformat") else str(v)


class ChangeHistoryPage(_Base):
    total: int
    items: List[ChangeHistoryRow] = Field(default_factory=list)
