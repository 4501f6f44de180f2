"""Router registry for the incident engine (system, incidents, jobs)."""

from .health import router as health_router
from .metrics import router as metrics_router
from .incidents import router as incidents_router
from .jobs import router as jobs_router

routers = [
    health_router,
    metrics_router,
    incidents_router,
    jobs_router,
]
