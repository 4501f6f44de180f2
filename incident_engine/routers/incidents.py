"""
File: routers/incidents.py
Purpose: Operator actions on incidents (manual resolve, investigation claim).
"""

from fastapi import APIRouter, Depends, HTTPException, status

from ..deps import get_runtime
from ..models import IncidentStatus

router = APIRouter(prefix="/v1/incidents", tags=["incidents"])


def _view(incident) -> dict:
    return {
        "id": incident.id,
        "status": incident.status,
        "severity": incident.severity,
        "title": incident.title,
        "fingerprint": incident.fingerprint,
        "last_seen_at": incident.last_seen_at,
        "resolved_at": incident.resolved_at,
    }


@router.post("/{incident_id}/resolve")
def resolve_incident(incident_id: str, runtime=Depends(get_runtime)):
    """Resolve regardless of current status; 404 when the id is unknown."""
    if not runtime.incidents.resolve(incident_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Incident not found")
    return _view(runtime.incidents.get(incident_id))


@router.post("/{incident_id}/investigate")
def investigate_incident(incident_id: str, runtime=Depends(get_runtime)):
    """Claim an open incident; claimed incidents are skipped by auto-resolve."""
    if runtime.incidents.mark_investigating(incident_id):
        return _view(runtime.incidents.get(incident_id))

    incident = runtime.incidents.get(incident_id)
    if incident is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Incident not found")
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Incident is {incident.status}, only {IncidentStatus.OPEN} incidents can be claimed",
    )
