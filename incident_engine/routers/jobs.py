"""
File: routers/jobs.py
Purpose: Manual wake-up of the AI job worker.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from ..deps import get_runtime

router = APIRouter(prefix="/v1/jobs", tags=["jobs"])


@router.post("/drain")
async def drain_jobs(runtime=Depends(get_runtime)):
    """Process available jobs now; same operation the poll timer runs."""
    if runtime.worker is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="AI worker is not enabled")
    processed = await runtime.worker.drain()
    return {"processed": processed}
