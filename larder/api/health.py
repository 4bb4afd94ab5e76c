"""
Health endpoints for the larder API.

Lightweight checks for operational monitoring without exposing secrets.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from larder.core.config import settings
from larder.core.database import get_engine

logger = logging.getLogger("larder")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "profiles",
    "households",
    "household_members",
    "household_invitations",
    "items",
    "household_notifications",
]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok", "backend_mode": settings.BACKEND_MODE}


@root_router.get("/readyz")
def readyz():
    """Readiness: the local backend needs its tables; the hosted one has nothing to check."""
    if settings.BACKEND_MODE != "local":
        return {"status": "ok"}

    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
