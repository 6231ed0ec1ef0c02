"""Fuente de datos sobre ficheros JSON locales (``<base_path>/<file>.json``)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Optional

import orjson

from ..timeutils import to_iso, utc_now
from .base import DataSource, SourceConfig, SourceType
from .errors import DataSourceError, EntryNotFoundError

logger = logging.getLogger(__name__)

# Campos que identifican una entrada, por orden de preferencia
ID_FIELDS = ("id", "orderId", "batchId", "issueId")


class LocalFileDataSource(DataSource):
    source_type = SourceType.LOCAL_FILE

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        super().__init__(config)
        self.base_path = Path(self.config.get("basePath", "mock-data"))

    def _path(self, source_config: SourceConfig) -> Path:
        if not source_config.file:
            raise DataSourceError("Local source config requires 'file'", self.name)
        return self.base_path / f"{source_config.file}.json"

    def _load(self, path: Path) -> Any:
        try:
            return orjson.loads(path.read_bytes())
        except orjson.JSONDecodeError as e:
            raise DataSourceError(f"Invalid JSON in {path}: {e}", self.name) from e

    async def fetch(self, source_config: SourceConfig) -> Any:
        path = self._path(source_config)
        if not path.exists():
            logger.warning("[SOURCE] File not found: %s", path)
            return None
        return self._load(path)

    async def update(self, source_config: SourceConfig, entry_id: str, patch: Mapping[str, Any]) -> dict[str, Any]:
        path = self._path(source_config)
        if not path.exists():
            raise DataSourceError(f"File not found: {path}", self.name)

        data = self._load(path)
        if not isinstance(data, list):
            raise EntryNotFoundError(self.name, entry_id, source_config.file)

        for index, entry in enumerate(data):
            if isinstance(entry, dict) and any(
                str(entry.get(field)) == str(entry_id) for field in ID_FIELDS if field in entry
            ):
                break
        else:
            raise EntryNotFoundError(self.name, entry_id, source_config.file)

        updated = {**data[index], **dict(patch), "lastUpdated": to_iso(utc_now())}
        data[index] = updated
        path.write_bytes(orjson.dumps(data, option=orjson.OPT_INDENT_2))
        logger.info("[SOURCE] Updated %s in %s", entry_id, path)
        return updated
