"""
File: deps.py
Purpose: Request-scoped accessors for the components built in the lifespan.
"""

from fastapi import HTTPException, Request, status


def get_runtime(request: Request):
    """Return the Runtime attached to app.state by the lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not started")
    return runtime
