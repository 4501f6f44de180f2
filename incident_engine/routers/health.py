"""
File: routers/health.py
Purpose: Liveness and readiness probes.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..deps import get_runtime

router = APIRouter(tags=["system"])


@router.get("/health")
def health() -> dict:
    """Return service health status for liveness probes."""
    return {"status": "ok"}


@router.get("/healthz")
def healthz(runtime=Depends(get_runtime)):
    """Readiness: the database must answer SELECT 1."""
    db_ok = runtime.db.healthy()
    body = {
        "status": "ok" if db_ok else "degraded",
        "db": db_ok,
        "engine": runtime.consumer is not None or runtime.sweeper is not None,
        "ai_worker": runtime.worker is not None,
    }
    return JSONResponse(body, status_code=200 if db_ok else 503)
