# tests/conftest.py
from __future__ import annotations

from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from stockrecon.api.main import create_app
from stockrecon.db.session import create_all, enable_sqlite_savepoints, get_session
from stockrecon.storage.kv import MemoryKeyValueStore
from tests.helpers.fakes import FakeLookup, FakeRemoteInventory, identity


# =========================================
# 每用例独立的内存 sqlite（StaticPool 保证同一连接）
# =========================================
@pytest_asyncio.fixture(scope="function")
async def async_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        future=True,
    )
    enable_sqlite_savepoints(engine)
    await create_all(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(scope="function")
def async_session_maker(async_engine: AsyncEngine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(async_session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as sess:
        try:
            yield sess
            if sess.in_transaction():
                await sess.commit()
        except Exception:
            if sess.in_transaction():
                await sess.rollback()
            raise


@pytest_asyncio.fixture(scope="function")
async def client(async_session_maker) -> AsyncGenerator[httpx.AsyncClient, None]:
    """ASGI 客户端：get_session 覆盖为测试库。"""
    app = create_app(auto_create_tables=False)

    async def _override() -> AsyncGenerator[AsyncSession, None]:
        async with async_session_maker() as s:
            yield s

    app.dependency_overrides[get_session] = _override
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# =========================================
# 对账引擎通用替身
# =========================================
@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def remote() -> FakeRemoteInventory:
    return FakeRemoteInventory()


@pytest.fixture
def lookup() -> FakeLookup:
    lk = FakeLookup()
    for n in range(1, 10):
        lk.add(identity(n))
    return lk
