"""Factory de fuentes de datos y registro dataset → fuente.

Una instancia por tipo de fuente; varios datasets pueden compartirla.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional

import httpx

from ..mqtt.telemetry_client import TelemetryClient
from .base import DataSource, SourceConfig, SourceType
from .errors import UnknownDatasetError, UnknownSourceTypeError
from .http_source import RemoteApiDataSource, RestApiDataSource
from .local_file import LocalFileDataSource
from .telemetry import TelemetryDataSource

if TYPE_CHECKING:
    from common.config import Settings
    from ..events.hub import SubscriberHub
    from ..persistence.history_log import HistoryLog
    from ..resilience.dead_letter import DeadLetterQueue

logger = logging.getLogger(__name__)


class DataSourceRegistry:
    """Crea fuentes por tipo y resuelve datasets a (config, fuente)."""

    def __init__(
        self,
        settings: Optional["Settings"] = None,
        *,
        history_log: Optional["HistoryLog"] = None,
        hub: Optional["SubscriberHub"] = None,
        dead_letter: Optional["DeadLetterQueue"] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        telemetry_client_factory: Optional[Callable[[Mapping[str, Any]], TelemetryClient]] = None,
    ):
        self._settings = settings
        self._history_log = history_log
        self._hub = hub
        self._dead_letter = dead_letter
        self._transport = transport
        self._telemetry_client_factory = telemetry_client_factory

        self._sources: dict[SourceType, DataSource] = {}
        self._datasets: dict[str, SourceConfig] = {}

        self._builders: dict[SourceType, Callable[[dict[str, Any]], DataSource]] = {
            SourceType.LOCAL_FILE: self._build_local,
            SourceType.REMOTE_AUTH: self._build_remote,
            SourceType.REST: self._build_rest,
            SourceType.TELEMETRY: self._build_telemetry,
        }

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    def create(self, source_type: "str | SourceType", config: Optional[Mapping[str, Any]] = None) -> DataSource:
        """Crea una fuente nueva del tipo indicado.

        Raises:
            UnknownSourceTypeError: si el tipo no existe.
        """
        try:
            kind = SourceType.parse(source_type)
        except ValueError:
            raise UnknownSourceTypeError(str(source_type)) from None

        source = self._builders[kind](dict(config or {}))
        logger.info("[SOURCE] Created %s (%s)", source.name, kind.value)
        return source

    def _build_local(self, config: dict[str, Any]) -> DataSource:
        if self._settings is not None:
            config.setdefault("basePath", self._settings.mock_data_path)
        return LocalFileDataSource(config)

    def _build_remote(self, config: dict[str, Any]) -> DataSource:
        if self._settings is not None:
            s = self._settings
            defaults = {
                "baseUrl": s.sap_base_url,
                "username": s.sap_username,
                "password": s.sap_password,
                "client": s.sap_client,
                "defaultPlant": s.sap_default_plant,
            }
            for key, value in defaults.items():
                if value is not None:
                    config.setdefault(key, value)
        return RemoteApiDataSource(config, transport=self._transport)

    def _build_rest(self, config: dict[str, Any]) -> DataSource:
        return RestApiDataSource(config, transport=self._transport)

    def _build_telemetry(self, config: dict[str, Any]) -> DataSource:
        if self._telemetry_client_factory is not None:
            client = self._telemetry_client_factory(config)
        else:
            if self._settings is None:
                raise ValueError("Telemetry source requires settings or a client factory")
            overrides: dict[str, Any] = {}
            if config.get("topicBase"):
                overrides["topic_base"] = config["topicBase"]
            client = TelemetryClient.from_settings(
                self._settings,
                broker_url=config.get("brokerUrl"),
                history_log=self._history_log,
                hub=self._hub,
                dead_letter=self._dead_letter,
                **overrides,
            )
        return TelemetryDataSource(client, config)

    # ------------------------------------------------------------------
    # Registro
    # ------------------------------------------------------------------

    def register(self, name: str, source_config: SourceConfig) -> DataSource:
        """Asocia un dataset a su fuente (creándola si es el primer uso del tipo)."""
        source = self._sources.get(source_config.type)
        if source is None:
            source = self.create(source_config.type, source_config.config)
            self._sources[source_config.type] = source
        self._datasets[name] = source_config
        return source

    def configure(self, configs: Mapping[str, SourceConfig]) -> None:
        """Sustituye la tabla de datasets (las fuentes existentes se reutilizan)."""
        self._datasets.clear()
        for name, source_config in configs.items():
            self.register(name, source_config)
        logger.info("[SOURCE] Configured datasets: %s", ", ".join(self._datasets) or "-")

    def resolve(self, name: str) -> tuple[SourceConfig, DataSource]:
        source_config = self._datasets.get(name)
        if source_config is None:
            raise UnknownDatasetError(name)
        return source_config, self._sources[source_config.type]

    @property
    def datasets(self) -> dict[str, SourceConfig]:
        return dict(self._datasets)

    def get_source(self, source_type: "str | SourceType") -> Optional[DataSource]:
        return self._sources.get(SourceType.parse(source_type))

    @property
    def telemetry(self) -> Optional[TelemetryDataSource]:
        source = self._sources.get(SourceType.TELEMETRY)
        return source if isinstance(source, TelemetryDataSource) else None

    async def start(self) -> None:
        for source in self._sources.values():
            await source.start()

    async def cleanup(self) -> None:
        """Libera todas las fuentes y vacía el registro."""
        for source in list(self._sources.values()):
            await source.cleanup()
        self._sources.clear()
        self._datasets.clear()
