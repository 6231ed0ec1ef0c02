"""Cache de datasets en memoria, sin expiración.

Una entrada solo cambia por ``force_refresh``, ``set`` o ``invalidate_all``.
Los valores devueltos son copias: quien llama no puede mutar la cache.
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from ..sources.errors import UnknownDatasetError
from ..sources.registry import DataSourceRegistry
from ..timeutils import to_iso

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: str
    value: Any
    source_type: str
    loaded_at: float = field(default_factory=time.time)


class CacheStore:
    """Cache por nombre de dataset respaldada por el registro de fuentes."""

    def __init__(self, registry: DataSourceRegistry):
        self._registry = registry
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._loads = 0

    async def load(self, key: str) -> Any:
        """Pide el dataset a su fuente y lo guarda si devuelve datos.

        Raises:
            DataSourceError: errores de la fuente (incluye UnknownDatasetError).
        """
        source_config, source = self._registry.resolve(key)
        data = await source.fetch(source_config)
        self._loads += 1

        if data is None:
            logger.warning("[CACHE] %s returned no data for %s", source.name, key)
            return None

        self._entries[key] = CacheEntry(key=key, value=data, source_type=source_config.type.value)
        logger.debug("[CACHE] Loaded %s from %s", key, source.name)
        return copy.deepcopy(data)

    async def get_cached(self, key: str, force_refresh: bool = False) -> Any:
        """Valor cacheado, o carga desde la fuente si falta o se fuerza."""
        entry = self._entries.get(key)
        if force_refresh or entry is None:
            await self.load(key)
            entry = self._entries.get(key)
        else:
            self._hits += 1

        return copy.deepcopy(entry.value) if entry is not None else None

    def set(self, key: str, value: Any) -> None:
        try:
            source_type = self._registry.resolve(key)[0].type.value
        except UnknownDatasetError:
            source_type = "manual"
        self._entries[key] = CacheEntry(key=key, value=copy.deepcopy(value), source_type=source_type)

    def invalidate_all(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        logger.info("[CACHE] Invalidated %d entries", count)

    def keys(self) -> list[str]:
        return list(self._entries)

    def entry_info(self, key: str) -> Optional[dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value = entry.value
        return {
            "count": len(value) if isinstance(value, (list, dict)) else 1,
            "source": entry.source_type,
            "lastUpdate": to_iso(entry.loaded_at),
        }

    def stats(self) -> dict[str, Any]:
        return {
            "entries": {key: self.entry_info(key) for key in self._entries},
            "hits": self._hits,
            "loads": self._loads,
        }
