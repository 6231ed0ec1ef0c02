"""Helpers de fechas ISO-8601 en UTC."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Union[datetime, float]) -> str:
    """Formatea un datetime o epoch como ISO-8601 UTC con sufijo Z."""
    if not isinstance(value, datetime):
        value = datetime.fromtimestamp(value, tz=timezone.utc)
    elif value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """Parsea ISO-8601 (acepta sufijo Z). Retorna None si no es válido."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_epoch(value: Optional[Union[str, datetime]]) -> Optional[float]:
    dt = parse_iso(value)
    return dt.timestamp() if dt is not None else None
