# stockrecon/api/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from stockrecon import __version__
from stockrecon.api.errors import recon_error_handler, unhandled_error_handler
from stockrecon.api.routers.change_log import router as change_log_router
from stockrecon.core.config import get_settings
from stockrecon.core.errors import ReconError
from stockrecon.core.logging import setup_logging
from stockrecon.db.session import create_all, get_engine
from stockrecon.metrics import router as metrics_router

logger = logging.getLogger("stockrecon.api")


def create_app(*, auto_create_tables: bool = True) -> FastAPI:
    """
    变动日志服务：
    - /api/log-inventory-change、/api/change-history(.csv)
    - /metrics
    auto_create_tables：启动时 create_all（本地 / sqlite 用；生产由迁移负责）。
    """
    s = get_settings()
    setup_logging(s.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if auto_create_tables:
            await create_all(get_engine())
        logger.info("stockrecon api started: env=%s", s.ENV)
        yield

    app = FastAPI(title="stockrecon", version=__version__, lifespan=lifespan)
    app.add_exception_handler(ReconError, recon_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(change_log_router)
    app.include_router(metrics_router)
    return app
