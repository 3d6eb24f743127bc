"""
Health, readiness and metrics endpoints.

Provides lightweight endpoints for operational monitoring without exposing secrets.
"""

import logging

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from backend.core.config import settings
from backend.core.database import get_engine
from backend.core.metrics import METRICS

logger = logging.getLogger("seek")

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(request: Request):
    """Readiness: engine registry present, and the state table when storage is a database."""
    registry = getattr(request.app.state, "streak_registry", None)
    if registry is None:
        return JSONResponse(status_code=503, content={"status": "not_ready", "reason": "streak registry missing"})

    if settings.STREAK_STORAGE.lower() != "database":
        return {"status": "ready", "storage": "memory"}

    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        if not inspect(engine).has_table("streak_state_blobs"):
            return JSONResponse(status_code=503, content={"status": "not_ready", "reason": "missing table streak_state_blobs"})
    except Exception as e:
        logger.warning(f"[readyz] database check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "not_ready", "reason": "database unavailable"})

    return {"status": "ready", "storage": "database"}


@root_router.get("/metrics")
def metrics_endpoint():
    payload = METRICS.export_prometheus()
    return Response(content=payload, media_type="text/plain")
