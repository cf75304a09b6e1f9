"""GET /health: liveness plus a database round trip."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from bulletin.api.deps import get_session_factory
from bulletin.core.settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def _database_available(factory: sessionmaker[Session]) -> bool:
    try:
        with factory() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Health check could not reach the database", exc_info=True)
        return False
    return True


@router.get("/health", summary="Service and database health")
def health_check(factory: sessionmaker[Session] = Depends(get_session_factory)) -> JSONResponse:
    settings = get_settings()
    database_ok = _database_available(factory)
    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={
            "status": "ok" if database_ok else "degraded",
            "service": settings.app_name,
            "version": settings.app_version,
            "environment": settings.app_env,
            "database": "available" if database_ok else "unavailable",
        },
    )
