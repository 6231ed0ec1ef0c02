"""Contrato común de las fuentes de datos y su configuración.

Cada variante declara su ``source_type``; el registro elige la variante por
ese tag (ver ``registry.py``).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SourceType(str, Enum):
    """Variantes de fuente de datos."""
    LOCAL_FILE = "local"
    REMOTE_AUTH = "remote"
    REST = "rest"
    TELEMETRY = "telemetry"

    @classmethod
    def parse(cls, value: "str | SourceType") -> "SourceType":
        """Acepta el valor o uno de sus alias (mock, sap, oee)."""
        if isinstance(value, SourceType):
            return value
        key = str(value).strip().lower()
        key = SOURCE_TYPE_ALIASES.get(key, key)
        return cls(key)


SOURCE_TYPE_ALIASES = {
    "mock": SourceType.LOCAL_FILE.value,
    "file": SourceType.LOCAL_FILE.value,
    "sap": SourceType.REMOTE_AUTH.value,
    "oee": SourceType.TELEMETRY.value,
    "mqtt": SourceType.TELEMETRY.value,
}


class SourceConfig(BaseModel):
    """Configuración de un dataset: qué fuente lo sirve y cómo pedirlo."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, arbitrary_types_allowed=True)

    type: SourceType
    file: Optional[str] = None
    endpoint: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    # Opciones del constructor de la fuente (basePath, baseUrl, username...)
    config: dict[str, Any] = Field(default_factory=dict)

    static_params: dict[str, Any] = Field(default_factory=dict, alias="staticParams")
    select_fields: list[str] = Field(default_factory=list, alias="selectFields")
    order_by: Optional[str] = Field(default=None, alias="orderBy")
    top: Optional[int] = None
    plant: Optional[str] = None
    order_type: Optional[str] = Field(default=None, alias="orderType")
    mrp_controller: Optional[str] = Field(default=None, alias="mrpController")
    result_path: Optional[str] = Field(default=None, alias="resultPath")
    transform: Optional[Callable[[Any], Any]] = Field(default=None, exclude=True)

    @field_validator("type", mode="before")
    @classmethod
    def parse_type(cls, v: Any) -> SourceType:
        return SourceType.parse(v)


class DataSource(ABC):
    """Fuente de datos: fetch/update por dataset y liberación de recursos."""

    source_type: SourceType

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        self.config: dict[str, Any] = dict(config or {})

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    async def fetch(self, source_config: SourceConfig) -> Any:
        """Devuelve los datos del dataset, o None si no hay datos."""

    @abstractmethod
    async def update(self, source_config: SourceConfig, entry_id: str, patch: Mapping[str, Any]) -> Any:
        """Actualiza una entrada y devuelve la entrada resultante."""

    async def start(self) -> None:
        """Arranque de fuentes con conexión propia (telemetría)."""

    async def cleanup(self) -> None:
        """Libera recursos (conexiones, clientes HTTP)."""
