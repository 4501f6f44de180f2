"""
File: routers/metrics.py
Purpose: Prometheus metrics endpoint.
"""

from fastapi import APIRouter, Response

from ..instrumentation import render_metrics

router = APIRouter(tags=["system"])


@router.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics in text format."""
    content_type, payload = render_metrics()
    return Response(payload, media_type=content_type)
