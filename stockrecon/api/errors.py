# stockrecon/api/errors.py
import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from stockrecon.core.errors import ReconError

logger = logging.getLogger("stockrecon.api")


def recon_error_handler(_: Request, exc: ReconError):
    return JSONResponse(
        status_code=exc.status,
        content={"error": {"code": exc.code, "message": exc.message}},
    )


async def unhandled_error_handler(_: Request, exc: Exception):
    logger.exception("UNHANDLED_EXC: %s", exc)
    return JSONResponse(status_code=500, content={"error": {"code": "INTERNAL_ERROR", "message": "internal error"}})
