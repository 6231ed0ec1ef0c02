"""Errores tipados de las fuentes de datos."""

from __future__ import annotations

from typing import Optional


class DataSourceError(Exception):
    """Error base de una fuente de datos."""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(message)


class SourceTimeoutError(DataSourceError):
    """La fuente no respondió dentro del timeout configurado."""

    def __init__(self, source: str, timeout_seconds: float, url: Optional[str] = None):
        self.timeout_seconds = timeout_seconds
        self.url = url
        target = f" ({url})" if url else ""
        super().__init__(f"{source} request timed out after {timeout_seconds:.1f}s{target}", source)


class SourceHttpError(DataSourceError):
    """Respuesta HTTP no 2xx."""

    def __init__(self, source: str, status_code: int, reason: str = ""):
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"{source} API error: {status_code} {reason}".rstrip(), source)


class ReadOnlySourceError(DataSourceError):
    """La fuente no admite escrituras."""

    def __init__(self, source: str, detail: str = "update not implemented"):
        super().__init__(f"{source}: {detail}", source)


class EntryNotFoundError(DataSourceError):
    """No existe la entrada a actualizar."""

    def __init__(self, source: str, entry_id: str, collection: str):
        self.entry_id = entry_id
        self.collection = collection
        super().__init__(f"Entry with ID {entry_id} not found in {collection}", source)


class UnknownSourceTypeError(DataSourceError):
    def __init__(self, source_type: str):
        self.source_type = source_type
        super().__init__(f"Unknown data source type: {source_type}")


class UnknownDatasetError(DataSourceError):
    def __init__(self, dataset: str):
        self.dataset = dataset
        super().__init__(f"No data source configured for: {dataset}")
