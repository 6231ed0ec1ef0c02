"""Health, readiness and metrics endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..service import OEEDataService
from .deps import get_service

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    """Liveness: ok while the process is running."""
    return {"status": "ok"}


@router.get("/ready")
def ready(service: OEEDataService = Depends(get_service)):
    """Readiness: 503 once telemetry has given up reconnecting."""
    status = service.get_health_status()
    if status["telemetry"]["state"] == "failed":
        raise HTTPException(status_code=503, detail="telemetry failed")
    return status


@router.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
