"""Correlación de telemetría OEE con datos de negocio.

Une cada orden con la muestra en vivo de su centro de trabajo y compone un
snapshot con hot data, histórico y datasets de negocio.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Union

from ..cache.store import CacheStore
from ..persistence.history_log import HistoryLog, HistoryLogError
from ..sources.errors import DataSourceError, UnknownDatasetError
from ..timeutils import to_iso, utc_now
from .synthetic import SYNTHETIC_SOURCE, generate_synthetic_history

logger = logging.getLogger(__name__)

HOT_DATASET = "oee"
CORRELATED_DATASETS = ("orders", "qa", "compliance", "issues", "batches")
HISTORY_SOURCE = "history"
UNKNOWN_WORK_CENTER = "UNKNOWN"

NO_DATA = {"status": "no-data", "metrics": {}}


@dataclass
class CorrelationFilters:
    entity_id: Optional[str] = None
    order_id: Optional[str] = None
    batch_id: Optional[str] = None
    since: Optional[Union[str, datetime]] = None
    until: Optional[Union[str, datetime]] = None
    history_limit: Optional[int] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "CorrelationFilters":
        """Acepta claves del API (line, entityId, orderId, batchId, limit...)."""
        data = data or {}
        limit = data.get("limit", data.get("historyLimit"))
        return cls(
            entity_id=data.get("entityId") or data.get("line"),
            order_id=data.get("orderId"),
            batch_id=data.get("batchId"),
            since=data.get("since"),
            until=data.get("until"),
            history_limit=int(limit) if limit is not None else None,
        )


def work_center_of(order: Mapping[str, Any]) -> str:
    """Centro de trabajo de una orden (campo directo o primera operación)."""
    for field in ("workCenter", "line", "productionLine"):
        if order.get(field):
            return str(order[field])

    operations = order.get("operations")
    if isinstance(operations, list):
        for operation in operations:
            if isinstance(operation, Mapping) and operation.get("workCenter"):
                return str(operation["workCenter"])
    return UNKNOWN_WORK_CENTER


def join_orders(orders: list[dict[str, Any]], hot: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Cada orden exactamente una vez, con su muestra OEE o el stub ``no-data``."""
    by_line = {sample.get("line"): sample for sample in hot}
    joined = []
    for order in orders:
        if not isinstance(order, Mapping):
            order = {"value": order}
        work_center = work_center_of(order)
        match = by_line.get(work_center)
        joined.append({
            **order,
            "workCenter": work_center,
            "oee": dict(match) if match is not None else dict(NO_DATA, metrics={}),
        })
    return joined


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _matches(record: Any, filters: CorrelationFilters) -> bool:
    """Filtra por los campos que el registro tenga; los que no, no excluyen."""
    if not isinstance(record, Mapping):
        return True
    if filters.entity_id:
        line = record.get("line") or record.get("workCenter")
        if line is not None and line != filters.entity_id:
            return False
    if filters.batch_id and record.get("batchId") not in (None, filters.batch_id):
        return False
    if filters.order_id and record.get("orderId") not in (None, filters.order_id):
        return False
    return True


class CorrelationEngine:
    """Compone snapshots correlacionados a partir de la cache y el histórico."""

    def __init__(
        self,
        cache: CacheStore,
        history_log: Optional[HistoryLog] = None,
        *,
        history_limit: int = 100,
        rng: Optional[random.Random] = None,
    ):
        self._cache = cache
        self._history_log = history_log
        self.history_limit = history_limit
        self._rng = rng

    async def _dataset(self, key: str, force_refresh: bool = False) -> list[Any]:
        try:
            return _as_list(await self._cache.get_cached(key, force_refresh=force_refresh))
        except UnknownDatasetError:
            logger.debug("[CORRELATION] Dataset %s not configured", key)
            return []
        except DataSourceError as e:
            logger.warning("[CORRELATION] Failed to load %s: %s", key, e)
            return []

    async def get_hot(self, entity_id: Optional[str] = None) -> list[dict[str, Any]]:
        """Snapshot en vivo (siempre refrescado)."""
        hot = await self._dataset(HOT_DATASET, force_refresh=True)
        if entity_id:
            hot = [s for s in hot if s.get("line") == entity_id]
        return hot

    def get_history(
        self,
        limit: Optional[int] = None,
        entity_id: Optional[str] = None,
        since: Optional[Union[str, datetime]] = None,
        until: Optional[Union[str, datetime]] = None,
    ) -> tuple[list[dict[str, Any]], str]:
        """Histórico más reciente primero y su origen ("history" o "synthetic")."""
        limit = self.history_limit if limit is None else limit

        if self._history_log is not None:
            try:
                if not self._history_log.is_empty():
                    records = self._history_log.query(limit=limit, entity_id=entity_id, since=since, until=until)
                    for record in records:
                        record["source"] = HISTORY_SOURCE
                    return records, HISTORY_SOURCE
            except HistoryLogError as e:
                logger.error("[CORRELATION] %s, falling back to synthetic history", e)

        logger.info("[CORRELATION] No historical data, generating synthetic history")
        return generate_synthetic_history(limit=limit, entity_id=entity_id, rng=self._rng), SYNTHETIC_SOURCE

    async def get_correlated_snapshot(
        self,
        filters: Optional[Union[CorrelationFilters, Mapping[str, Any]]] = None,
    ) -> dict[str, Any]:
        """Hot data, histórico, órdenes unidas y datasets de negocio."""
        if not isinstance(filters, CorrelationFilters):
            filters = CorrelationFilters.from_mapping(filters)

        hot = await self.get_hot(filters.entity_id)
        history, history_source = self.get_history(
            limit=filters.history_limit,
            entity_id=filters.entity_id,
            since=filters.since,
            until=filters.until,
        )

        datasets = {}
        for key in CORRELATED_DATASETS:
            records = await self._dataset(key)
            datasets[key] = [r for r in records if _matches(r, filters)]

        orders = [
            order for order in datasets.pop("orders")
            if not filters.entity_id
            or (isinstance(order, Mapping) and work_center_of(order) == filters.entity_id)
        ]
        joined = join_orders(orders, hot)

        oee_values = [
            s["metrics"]["oee"]
            for s in hot
            if isinstance(s.get("metrics"), Mapping) and s["metrics"].get("oee") is not None
        ]
        return {
            "hot": hot,
            "history": history,
            "historySource": history_source,
            "orders": joined,
            **datasets,
            "summary": {
                "lines": len(hot),
                "orders": len(joined),
                "ordersWithData": sum(1 for o in joined if o["oee"].get("status") != NO_DATA["status"]),
                "averageOee": round(sum(oee_values) / len(oee_values), 2) if oee_values else None,
            },
            "timestamp": to_iso(utc_now()),
        }
