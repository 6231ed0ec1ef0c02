"""Servicio de consulta OEE: punto único de acceso a hot y cold data.

Posee el registro de fuentes, la cache, el log histórico, el motor de
correlación y el hub de eventos. No hay estado global: cada proceso crea
su ``OEEDataService`` y lo cierra con ``shutdown()``.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence, Union

import httpx

from common.config import Settings
from .cache.store import CacheStore
from .correlation.engine import HOT_DATASET, CorrelationEngine, CorrelationFilters
from .events.hub import SubscriberHub
from .persistence.history_log import HistoryLog, HistoryLogError
from .resilience.dead_letter import DeadLetterQueue, create_dead_letter_queue
from .sources.config_loader import BUSINESS_DATASETS, load_source_configs
from .sources.errors import DataSourceError
from .sources.registry import DataSourceRegistry
from .timeutils import parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

REQUIRED_DATASETS = BUSINESS_DATASETS[:4] + (HOT_DATASET,)


def summarize_history(history: Sequence[Mapping[str, Any]]) -> Optional[dict[str, Any]]:
    """Promedios de componentes OEE y rango temporal (history más reciente primero)."""
    if not history:
        return None

    def _avg(name: str) -> Optional[float]:
        values = [
            r["metrics"][name]
            for r in history
            if isinstance(r.get("metrics"), Mapping) and isinstance(r["metrics"].get(name), (int, float))
        ]
        return round(sum(values) / len(values), 2) if values else None

    return {
        "avgOEE": _avg("oee"),
        "avgAvailability": _avg("availability"),
        "avgPerformance": _avg("performance"),
        "avgQuality": _avg("quality"),
        "timeRange": {"from": history[-1].get("timestamp"), "to": history[0].get("timestamp")},
    }


class OEEDataService:
    """Query API del hub OEE."""

    def __init__(
        self,
        settings: Settings,
        *,
        registry: Optional[DataSourceRegistry] = None,
        history_log: Optional[HistoryLog] = None,
        hub: Optional[SubscriberHub] = None,
        dead_letter: Optional[DeadLetterQueue] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self.history_log = history_log or HistoryLog(settings.history_file)
        self.hub = hub or SubscriberHub(heartbeat_interval=settings.heartbeat_seconds)
        self.dead_letter = dead_letter if dead_letter is not None else create_dead_letter_queue(settings)
        self.registry = registry or DataSourceRegistry(
            settings,
            history_log=self.history_log,
            hub=self.hub,
            dead_letter=self.dead_letter,
            transport=transport,
        )
        self.cache = CacheStore(self.registry)
        self.engine = CorrelationEngine(
            self.cache,
            self.history_log,
            history_limit=settings.history_limit,
            rng=rng,
        )
        self._started = False

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    def configure_sources(self) -> None:
        configs = load_source_configs(self.settings.data_sources_config, self.settings)
        if HOT_DATASET not in configs:
            logger.warning("[SERVICE] No telemetry source configured (MQTT_BROKER_URL unset), live OEE disabled")
        self.registry.configure(configs)

    async def start(self) -> None:
        """Carga configuración, replaya histórico, conecta fuentes y carga datasets."""
        if self._started:
            return

        self.configure_sources()
        self._replay_history()

        await self.registry.start()
        await self.hub.start()
        await self.load_all_data()
        self._started = True
        logger.info("[SERVICE] Started with datasets: %s", ", ".join(self.registry.datasets))

    def _replay_history(self) -> None:
        """Relee el fichero histórico (puede escribirlo otro proceso, p.ej. el simulador)."""
        try:
            self.history_log.load_all()
        except HistoryLogError as e:
            logger.error("[SERVICE] %s", e)

    async def shutdown(self) -> None:
        await self.hub.stop()
        await self.registry.cleanup()
        self.cache.invalidate_all()
        self._started = False
        logger.info("[SERVICE] Shut down")

    async def load_all_data(self) -> dict[str, str]:
        """Carga todos los datasets configurados. Un fallo no frena al resto."""
        results = {}
        for name in self.registry.datasets:
            try:
                data = await self.cache.get_cached(name, force_refresh=True)
                results[name] = "loaded" if data is not None else "empty"
            except DataSourceError as e:
                logger.error("[SERVICE] Failed to load %s: %s", name, e)
                results[name] = "error"
        logger.info("[SERVICE] Data load: %s", results)
        return results

    # ------------------------------------------------------------------
    # Query API
    # ------------------------------------------------------------------

    async def get_realtime_snapshot(self) -> list[dict[str, Any]]:
        return await self.engine.get_hot()

    def get_historical_snapshot(
        self,
        limit: Optional[int] = None,
        entity_id: Optional[str] = None,
        since: Optional[Union[str, datetime]] = None,
        until: Optional[Union[str, datetime]] = None,
    ) -> dict[str, Any]:
        history, source = self.engine.get_history(limit=limit, entity_id=entity_id, since=since, until=until)
        return {
            "history": history,
            "count": len(history),
            "source": source,
            "summary": summarize_history(history),
            "timestamp": to_iso(utc_now()),
        }

    async def get_correlated_snapshot(
        self,
        filters: Optional[Union[CorrelationFilters, Mapping[str, Any]]] = None,
    ) -> dict[str, Any]:
        return await self.engine.get_correlated_snapshot(filters)

    def get_connection_status(self) -> dict[str, Any]:
        telemetry = self.registry.telemetry
        if telemetry is None:
            return {
                "connected": False,
                "state": "disabled",
                "reconnectAttempts": 0,
                "sampleCount": 0,
                "endpoint": None,
            }
        return telemetry.connection_status()

    async def reconnect_telemetry(self) -> dict[str, Any]:
        """Reconexión manual del cliente MQTT (reinicia el contador de intentos)."""
        telemetry = self.registry.telemetry
        if telemetry is None:
            logger.warning("[SERVICE] Reconnect requested but telemetry is disabled")
            return self.get_connection_status()

        logger.info("[SERVICE] Manual telemetry reconnect (state=%s)", telemetry.connection_status()["state"])
        await telemetry.restart()
        return self.get_connection_status()

    async def force_reload(self) -> dict[str, str]:
        """Vacía la cache, relee configuración e histórico y recarga todos los datasets."""
        logger.info("[SERVICE] Reloading data")
        self.cache.invalidate_all()
        self.configure_sources()
        self._replay_history()
        await self.registry.start()
        results = await self.load_all_data()
        self.hub.publish("oee/cache_refreshed", {"datasets": results}, event_type="cache_refreshed")
        return results

    # ------------------------------------------------------------------
    # Escritura y diagnóstico
    # ------------------------------------------------------------------

    async def update_entry(self, dataset: str, entry_id: str, patch: Mapping[str, Any]) -> Any:
        """Actualiza una entrada en su fuente y refresca el dataset en cache.

        Raises:
            ReadOnlySourceError, EntryNotFoundError, DataSourceError
        """
        source_config, source = self.registry.resolve(dataset)
        updated = await source.update(source_config, entry_id, patch)
        await self.cache.get_cached(dataset, force_refresh=True)
        self.hub.publish(f"data/{dataset}/updated", {"id": entry_id}, event_type="data_updated")
        return updated

    def get_data_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = dict(self.cache.stats()["entries"])
        stats["oee_connection"] = self.get_connection_status()
        stats["history"] = self.history_log.stats
        return stats

    async def validate_data_integrity(self, required: Sequence[str] = REQUIRED_DATASETS) -> dict[str, Any]:
        loaded = self.cache.keys()
        missing = [name for name in required if name not in loaded]

        oee_status = "not_required"
        if HOT_DATASET in required:
            hot = await self.engine.get_hot()
            ages = [
                (utc_now() - parse_iso(s["receivedAt"])).total_seconds()
                for s in hot
                if parse_iso(s.get("receivedAt")) is not None
            ]
            if not ages:
                oee_status = "no_data"
            else:
                oee_status = "fresh" if max(ages) < self.settings.staleness_seconds else "stale"

        return {
            "isValid": not missing,
            "missing": missing,
            "loaded": loaded,
            "sources": {name: cfg.type.value for name, cfg in self.registry.datasets.items()},
            "oeeStatus": oee_status,
            "oeeConnection": self.get_connection_status(),
            "timestamp": to_iso(utc_now()),
        }

    def get_health_status(self) -> dict[str, Any]:
        connection = self.get_connection_status()
        telemetry_ok = connection["state"] in ("connected", "disabled")
        return {
            "status": "healthy" if telemetry_ok else "degraded",
            "telemetry": connection,
            "datasets": self.cache.keys(),
            "history": self.history_log.stats,
            "hub": self.hub.stats,
            "dlq": self.dead_letter.stats,
            "timestamp": to_iso(utc_now()),
        }
