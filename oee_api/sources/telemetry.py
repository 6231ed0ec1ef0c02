"""Fuente de datos de telemetría en vivo (solo lectura)."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from ..mqtt.connection_state import ConnectionState
from ..mqtt.telemetry_client import TelemetryClient
from .base import DataSource, SourceConfig, SourceType
from .errors import ReadOnlySourceError

logger = logging.getLogger(__name__)


class TelemetryDataSource(DataSource):
    """Expone el snapshot del TelemetryClient como dataset.

    ``fetch`` ignora la configuración del dataset y nunca toca la red. Sin
    conexión con el broker no hay datos en vivo: devuelve ``[]`` aunque el
    cliente conserve las últimas muestras.
    """

    source_type = SourceType.TELEMETRY

    def __init__(self, client: TelemetryClient, config: Optional[Mapping[str, Any]] = None):
        super().__init__(config)
        self.client = client

    async def start(self) -> None:
        await self.client.connect()

    async def restart(self) -> None:
        """Reconexión manual (única salida de FAILED)."""
        await self.client.restart()

    async def fetch(self, source_config: Optional[SourceConfig] = None) -> list[dict[str, Any]]:
        if self.client.state != ConnectionState.CONNECTED:
            logger.debug("[SOURCE] Telemetry %s, no live data", ConnectionState(self.client.state).value)
            return []
        return self.client.fetch_latest()

    async def update(self, source_config: SourceConfig, entry_id: str, patch: Mapping[str, Any]) -> Any:
        raise ReadOnlySourceError(self.name, "telemetry data source is read-only")

    def connection_status(self) -> dict[str, Any]:
        return self.client.connection_status()

    async def cleanup(self) -> None:
        await self.client.cleanup()
