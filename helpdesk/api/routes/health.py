import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

router = APIRouter(prefix="/api/health", tags=["health"])

logger = logging.getLogger(__name__)


@router.get("", summary="Public health probe")
async def health(request: Request) -> JSONResponse:
    engine = getattr(request.app.state, "db_engine", None)
    if engine is None:
        return JSONResponse(status_code=503, content={"status": "degraded", "database": "unconfigured"})
    try:
        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        logger.exception("Database health check failed")
        return JSONResponse(status_code=503, content={"status": "degraded", "database": "unavailable"})
    return JSONResponse(content={"status": "ok", "database": "ok"})
