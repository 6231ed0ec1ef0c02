"""Carga de la declaración de datasets desde YAML.

Formato:

dataSources:
  orders:
    type: local
    file: orders
    config:
      basePath: mock-data
  oee:
    type: telemetry
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Optional, Union

import yaml
from pydantic import ValidationError

from .base import SourceConfig, SourceType
from .http_source import resolve_env_placeholders

if TYPE_CHECKING:
    from common.config import Settings

logger = logging.getLogger(__name__)

BUSINESS_DATASETS = ("orders", "issues", "batches", "compliance", "qa")
TELEMETRY_DATASET = "oee"


def default_source_configs(
    mock_data_path: str = "mock-data",
    telemetry_enabled: bool = False,
) -> dict[str, SourceConfig]:
    """Ficheros locales para los datasets de negocio y telemetría si hay broker."""
    configs = {
        name: SourceConfig(type=SourceType.LOCAL_FILE, file=name, config={"basePath": mock_data_path})
        for name in BUSINESS_DATASETS
    }
    if telemetry_enabled:
        configs[TELEMETRY_DATASET] = SourceConfig(type=SourceType.TELEMETRY)
    return configs


def parse_source_configs(raw: Mapping[str, Any]) -> dict[str, SourceConfig]:
    """Valida el mapping ``dataSources`` (ValidationError si algo no cuadra)."""
    sources = raw.get("dataSources")
    if not isinstance(sources, Mapping):
        raise ValueError("config must contain a 'dataSources' mapping")

    return {
        str(name): SourceConfig.model_validate(resolve_env_placeholders(dict(entry)))
        for name, entry in sources.items()
    }


def load_source_configs(
    path: Union[str, Path],
    settings: Optional["Settings"] = None,
) -> dict[str, SourceConfig]:
    """Lee el YAML de datasets; si falta o es inválido aplica la config por defecto."""
    mock_data_path = settings.mock_data_path if settings else "mock-data"
    telemetry_enabled = bool(settings and settings.mqtt_broker_url)

    config_file = Path(path)
    if not config_file.exists():
        logger.warning("[SOURCE] Config file %s not found, using defaults", config_file)
        return default_source_configs(mock_data_path, telemetry_enabled)

    try:
        with config_file.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        configs = parse_source_configs(raw)
    except (yaml.YAMLError, ValidationError, ValueError, TypeError) as e:
        logger.error("[SOURCE] Failed to load data source config %s: %s", config_file, e)
        return default_source_configs(mock_data_path, telemetry_enabled)

    if TELEMETRY_DATASET in configs and configs[TELEMETRY_DATASET].type == SourceType.TELEMETRY and not (
        telemetry_enabled or configs[TELEMETRY_DATASET].config.get("brokerUrl")
    ):
        logger.warning("[SOURCE] No broker configured, dropping '%s' telemetry dataset", TELEMETRY_DATASET)
        configs.pop(TELEMETRY_DATASET)

    logger.info("[SOURCE] Loaded %d data source configs from %s", len(configs), config_file)
    return configs
