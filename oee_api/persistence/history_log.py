"""Log histórico de OEE en un fichero JSON.

El fichero contiene un array JSON ordenado por llegada. Cada ``append`` lee
el array completo, añade el registro y reescribe el fichero (O(n) por
append). La escritura usa fichero temporal + ``os.replace`` para que un
fallo a mitad no deje el log truncado.
"""

from __future__ import annotations

import copy
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import orjson

from ..timeutils import parse_iso

logger = logging.getLogger(__name__)

# Campos de una muestra que se persisten (receivedAt y dataAge se descartan)
HISTORY_FIELDS = (
    "line",
    "status",
    "batchId",
    "counters",
    "metrics",
    "parameters",
    "alarms",
    "timestamp",
)


class HistoryLogError(Exception):
    """El fichero histórico existe pero no se puede leer como array JSON."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"History log {path} is unreadable: {reason}")


def to_history_record(sample: Mapping[str, Any]) -> dict[str, Any]:
    """Proyecta una muestra de telemetría al formato persistido."""
    return {name: copy.deepcopy(sample.get(name)) for name in HISTORY_FIELDS}


class HistoryLog:
    """Log append-only de registros históricos OEE."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        # Registros replayados en memoria; None hasta el primer load_all()
        self._records: Optional[list[dict[str, Any]]] = None
        self._appended = 0

    def exists(self) -> bool:
        return self.path.exists()

    def _read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []

        try:
            data = orjson.loads(self.path.read_bytes())
        except orjson.JSONDecodeError as e:
            raise HistoryLogError(self.path, f"invalid JSON: {e}") from e

        if not isinstance(data, list):
            raise HistoryLogError(self.path, f"expected a JSON array, got {type(data).__name__}")
        return data

    def _write(self, records: list[dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(orjson.dumps(records, option=orjson.OPT_INDENT_2))
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def append(self, record: Mapping[str, Any]) -> None:
        """Añade un registro y reescribe el fichero completo.

        Raises:
            HistoryLogError: si el fichero existente está corrupto (no se toca).
            OSError: si falla la escritura.
        """
        records = self._read()
        entry = dict(record)
        records.append(entry)
        self._write(records)

        self._appended += 1
        if self._records is not None:
            self._records.append(copy.deepcopy(entry))
        logger.debug("[HISTORY] Appended line=%s total=%d", entry.get("line"), len(records))

    def load_all(self) -> list[dict[str, Any]]:
        """Lee y devuelve la secuencia completa, en orden de llegada.

        La secuencia queda replayada en memoria para ``query``.
        """
        records = self._read()
        self._records = records
        logger.info("[HISTORY] Loaded %d records from %s", len(records), self.path)
        return copy.deepcopy(records)

    def is_empty(self) -> bool:
        if self._records is None:
            self.load_all()
        return not self._records

    def query(
        self,
        limit: Optional[int] = 100,
        entity_id: Optional[str] = None,
        since: Optional[Union[str, datetime]] = None,
        until: Optional[Union[str, datetime]] = None,
    ) -> list[dict[str, Any]]:
        """Registros más recientes primero, filtrados por línea y rango temporal."""
        if self._records is None:
            self.load_all()

        since_dt = parse_iso(since)
        until_dt = parse_iso(until)

        selected = []
        for record in self._records:
            if entity_id and record.get("line") != entity_id:
                continue
            ts = parse_iso(record.get("timestamp"))
            if (since_dt or until_dt) and ts is None:
                continue
            if since_dt and ts < since_dt:
                continue
            if until_dt and ts > until_dt:
                continue
            selected.append(record)

        selected.sort(key=_record_sort_key, reverse=True)
        if limit is not None:
            selected = selected[: max(limit, 0)]
        return copy.deepcopy(selected)

    @property
    def stats(self) -> dict:
        return {
            "path": str(self.path),
            "exists": self.exists(),
            "records": len(self._records) if self._records is not None else None,
            "appended": self._appended,
        }


def _record_sort_key(record: Mapping[str, Any]) -> float:
    ts = parse_iso(record.get("timestamp"))
    return ts.timestamp() if ts is not None else float("-inf")
