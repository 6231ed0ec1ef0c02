"""Endpoints de consulta OEE (delegan en OEEDataService)."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from ..correlation.engine import CorrelationFilters
from ..sources.errors import DataSourceError, EntryNotFoundError, ReadOnlySourceError, UnknownDatasetError
from ..service import OEEDataService
from .deps import get_service

router = APIRouter(prefix="/api/oee", tags=["oee"])
logger = logging.getLogger(__name__)


@router.get("")
async def realtime(service: OEEDataService = Depends(get_service)):
    """Muestra más reciente de cada línea."""
    data = await service.get_realtime_snapshot()
    return {"data": data, "count": len(data), "connection": service.get_connection_status()}


@router.get("/history")
def history(
    limit: int = Query(100, ge=1, le=10000),
    line: Optional[str] = Query(None, description="Filter by line"),
    since: Optional[str] = Query(None, description="ISO-8601 lower bound"),
    until: Optional[str] = Query(None, description="ISO-8601 upper bound"),
    service: OEEDataService = Depends(get_service),
):
    return service.get_historical_snapshot(limit=limit, entity_id=line, since=since, until=until)


@router.get("/correlated")
async def correlated(
    line: Optional[str] = None,
    order_id: Optional[str] = Query(None, alias="orderId"),
    batch_id: Optional[str] = Query(None, alias="batchId"),
    since: Optional[str] = None,
    until: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=10000),
    service: OEEDataService = Depends(get_service),
):
    filters = CorrelationFilters(
        entity_id=line,
        order_id=order_id,
        batch_id=batch_id,
        since=since,
        until=until,
        history_limit=limit,
    )
    return await service.get_correlated_snapshot(filters)


@router.get("/status")
def status(service: OEEDataService = Depends(get_service)):
    return service.get_connection_status()


@router.post("/refresh")
async def refresh(service: OEEDataService = Depends(get_service)):
    """Fuerza la recarga de todos los datasets."""
    results = await service.force_reload()
    failed = [name for name, result in results.items() if result == "error"]
    if failed:
        logger.warning("[API] Reload finished with errors: %s", failed)
    return {"success": not failed, "datasets": results}


@router.post("/reconnect")
async def reconnect(service: OEEDataService = Depends(get_service)):
    """Reconexión manual al broker (sale de FAILED)."""
    return await service.reconnect_telemetry()


@router.get("/stats")
async def stats(service: OEEDataService = Depends(get_service)):
    return {
        "stats": service.get_data_stats(),
        "integrity": await service.validate_data_integrity(),
    }


@router.patch("/data/{dataset}/{entry_id}")
async def update_entry(
    dataset: str,
    entry_id: str,
    patch: dict[str, Any] = Body(...),
    service: OEEDataService = Depends(get_service),
):
    """Actualiza una entrada de un dataset de negocio."""
    try:
        updated = await service.update_entry(dataset, entry_id, patch)
    except (UnknownDatasetError, EntryNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ReadOnlySourceError as e:
        raise HTTPException(status_code=405, detail=str(e))
    except DataSourceError as e:
        logger.error("[API] Update of %s/%s failed: %s", dataset, entry_id, e)
        raise HTTPException(status_code=502, detail=str(e))
    return {"success": True, "data": updated}
