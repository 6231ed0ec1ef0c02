from __future__ import annotations

from fastapi import HTTPException, Request

from ..service import OEEDataService


def get_service(request: Request) -> OEEDataService:
    """Servicio creado en el lifespan de la app."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="service not started")
    return service
