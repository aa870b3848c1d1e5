"""Claimflow: FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from redis import Redis
from sqlalchemy import text
from sqlalchemy.orm import Session

from claimflow import __version__
from claimflow.api.routes import appointments_router, assessments_router, requests_router
from claimflow.core.config import settings
from claimflow.core.database import get_db
from claimflow.core.errors import ClaimflowError
from claimflow.core.logging import init_logging

logger = logging.getLogger(__name__)


def _run_migrations() -> None:
    """Apply pending Alembic migrations."""
    from alembic import command
    from alembic.config import Config as AlembicConfig

    cfg = AlembicConfig("alembic.ini")
    command.upgrade(cfg, "head")
    logger.info("Alembic migrations applied.")


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Startup / shutdown lifecycle hook."""
    if settings.auto_migrate:
        loop = asyncio.get_running_loop()
        await asyncio.wait_for(loop.run_in_executor(None, _run_migrations), timeout=60)
    yield


app = FastAPI(title="Claimflow", version=__version__, lifespan=lifespan)
init_logging(app)


@app.exception_handler(ClaimflowError)
async def claimflow_error_handler(request: Request, exc: ClaimflowError):
    headers = {"Retry-After": "1"} if exc.status_code == 503 else None
    level = logging.ERROR if exc.status_code >= 500 and not exc.retryable else logging.INFO
    logger.log(level, "%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# ── Routers ──────────────────────────────────────────────────────────
app.include_router(requests_router)
app.include_router(assessments_router)
app.include_router(appointments_router)


@app.get("/health")
def health(db: Session = Depends(get_db)):
    """Health check with service status details."""
    result = {
        "status": "healthy",
        "version": __version__,
        "database": "disconnected",
        "redis": "disconnected",
    }

    try:
        db.execute(text("SELECT 1"))
        result["database"] = "connected"
    except Exception as exc:
        logger.warning("Database health check failed: %s", exc)
        result["status"] = "degraded"

    try:
        Redis.from_url(settings.redis_url, socket_timeout=2).ping()
        result["redis"] = "connected"
    except Exception as exc:
        logger.warning("Redis health check failed: %s", exc)
        result["status"] = "degraded"

    return result
