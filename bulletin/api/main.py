"""FastAPI application factory.

Assembles exception handlers and all API routers.
This module is the authoritative app object; bulletin/main.py re-exports it.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from bulletin.api.deps import UNAUTHORIZED_HEADERS
from bulletin.api.routes.deliveries import router as deliveries_router
from bulletin.api.routes.health import router as health_router
from bulletin.api.routes.newsletters import router as newsletters_router
from bulletin.api.routes.subscriptions import router as subscriptions_router
from bulletin.core.errors import (
    AuthorizationError,
    InvariantViolation,
    UnexpectedError,
    ValidationError,
    error_chain,
)
from bulletin.core.logging import setup_logging
from bulletin.core.settings import get_settings
from bulletin.db.session import get_session_factory, session_scope
from bulletin.idempotency.gate import expire_stale_claims

logger = logging.getLogger(__name__)


def _sweep_once(claim_ttl: timedelta) -> int:
    with session_scope(get_session_factory()) as db:
        return expire_stale_claims(db, claim_ttl)


async def _sweep_stale_claims() -> None:
    """Periodically delete idempotency claims that never received a response."""
    settings = get_settings()
    claim_ttl = timedelta(seconds=settings.idempotency_claim_ttl_seconds)
    while True:
        await asyncio.sleep(settings.idempotency_sweep_interval)
        try:
            await run_in_threadpool(_sweep_once, claim_ttl)
        except Exception:
            logger.exception("stale idempotency claim sweep failed")


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    task = asyncio.create_task(_sweep_stale_claims())
    yield
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@app.exception_handler(RequestValidationError)
async def _request_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(ValidationError)
async def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(AuthorizationError)
async def _authorization_error(_: Request, exc: AuthorizationError) -> JSONResponse:
    return JSONResponse(status_code=401, content={"detail": str(exc)}, headers=UNAUTHORIZED_HEADERS)


@app.exception_handler(UnexpectedError)
@app.exception_handler(InvariantViolation)
async def _internal_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Request %s %s failed\n%s", request.method, request.url.path, error_chain(exc))
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(health_router)
app.include_router(subscriptions_router)
app.include_router(newsletters_router)
app.include_router(deliveries_router)
