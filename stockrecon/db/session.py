# stockrecon/db/session.py
# 异步会话工厂 + FastAPI 依赖（get_session）
from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from stockrecon.core.config import get_settings
from stockrecon.db.base import Base, init_models


def normalize_async_dsn(url: str) -> str:
    """sqlite:/// → sqlite+aiosqlite:///；postgres(ql):// → postgresql+psycopg://"""
    if not url:
        return "sqlite+aiosqlite:///./stockrecon.db"
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite://" + url[len("sqlite://") :]
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def enable_sqlite_savepoints(engine: AsyncEngine) -> AsyncEngine:
    """
    sqlite 驱动默认自己管理 BEGIN，SAVEPOINT（begin_nested）不可靠：
    关掉驱动的隐式事务，由 SQLAlchemy 显式发 BEGIN。
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _no_driver_tx(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def make_engine(url: Optional[str] = None, *, echo: Optional[bool] = None) -> AsyncEngine:
    s = get_settings()
    dsn = normalize_async_dsn(url if url is not None else s.DATABASE_URL)
    engine = create_async_engine(dsn, echo=s.SQL_ECHO if echo is None else echo, future=True)
    if dsn.startswith("sqlite"):
        enable_sqlite_savepoints(engine)
    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_all(engine: AsyncEngine) -> None:
    init_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


_engine: Optional[AsyncEngine] = None
_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = make_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _factory
    if _factory is None:
        _factory = make_session_factory(get_engine())
    return _factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    用法：async def endpoint(session: AsyncSession = Depends(get_session)): ...
    异常时回滚，由调用方显式 commit。
    """
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
