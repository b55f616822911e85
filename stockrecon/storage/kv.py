# stockrecon/storage/kv.py
from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stockrecon.models.kv_store import KvEntry

logger = logging.getLogger("stockrecon.storage")


class KeyValueStore(Protocol):
    """
    作用域内的 JSON 键值持久化（草稿 / 跨画面扫码队列 / 审计日志共用）。
    值必须是可 JSON 序列化的 dict / list / 标量；不存在的 key → None。
    """

    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """进程内实现（测试 / 单机）；读写都做深拷贝，避免调用方共享可变对象。"""

    def __init__(self, initial: Dict[str, Any] | None = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})
        self.writes = 0

    async def get(self, key: str) -> Any:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        # 与持久化实现保持一致：不可 JSON 序列化的值直接报错
        json.dumps(value, ensure_ascii=False)
        self._data[key] = copy.deepcopy(value)
        self.writes += 1

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data.keys())


class SqlKeyValueStore:
    """
    kv_store 表实现：

    - set = upsert（先查后写，同一 session 内提交，保证单次原子写）；
    - 读到损坏的 JSON → None（记 WARNING，不抛）。
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, namespace: str = "") -> None:
        self._factory = session_factory
        self._ns = namespace

    def _k(self, key: str) -> str:
        return f"{self._ns}:{key}" if self._ns else key

    async def get(self, key: str) -> Any:
        async with self._factory() as session:
            row = (await session.execute(select(KvEntry.value).where(KvEntry.key == self._k(key)))).first()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except (TypeError, ValueError):
            logger.warning("kv_store: malformed json for key=%s", key)
            return None

    async def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        async with self._factory() as session:
            async with session.begin():
                entry = await session.get(KvEntry, self._k(key))
                if entry is None:
                    session.add(KvEntry(key=self._k(key), value=payload))
                else:
                    entry.value = payload

    async def delete(self, key: str) -> None:
        async with self._factory() as session:
            async with session.begin():
                await session.execute(delete(KvEntry).where(KvEntry.key == self._k(key)))
