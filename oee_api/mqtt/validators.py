"""Validadores de payloads de telemetría OEE.

Formato esperado en ``<base>/<line>/status``:

{
    "line": "LINE-01",
    "status": "running",
    "batchId": "B-2026-001",
    "counters": {"plannedProductionTime": 480, "operatingTime": 240,
                 "goodCount": 900, "badCount": 100},
    "metrics": {"availability": 50.0, "performance": 100.0,
                "quality": 90.0, "oee": 45.0},
    "parameters": {"temperature": 71.2, "pressure": 2.1},
    "alarms": [],
    "timestamp": "2026-01-31T08:00:00.123Z"
}

Solo ``line`` y ``metrics`` son obligatorios.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..timeutils import parse_epoch, parse_iso, to_iso

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("line", "metrics")

# Diferencia tolerada entre el OEE reportado y el recalculado (puntos %)
OEE_TOLERANCE = 0.5


def compute_oee(availability: float, performance: float, quality: float) -> float:
    """OEE en % = A × min(P, 100) × Q.

    Solo performance se limita a 100; si availability o quality superan
    100 el producto puede superar 100.
    """
    capped_performance = min(performance, 100.0)
    return round(availability / 100 * capped_performance / 100 * quality / 100 * 100, 2)


def _finite(v: float) -> float:
    if v != v:  # NaN check
        raise ValueError("Value is NaN")
    if math.isinf(v):
        raise ValueError("Value is infinite")
    return v


class OEECounters(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    planned_production_time: float = Field(
        default=0,
        validation_alias=AliasChoices("plannedProductionTime", "plannedTime"),
        serialization_alias="plannedProductionTime",
    )
    operating_time: float = Field(default=0, alias="operatingTime")
    good_count: int = Field(default=0, alias="goodCount")
    bad_count: int = Field(default=0, alias="badCount")


class OEEMetrics(BaseModel):
    model_config = ConfigDict(extra="allow")

    availability: float = 0.0
    performance: float = 0.0
    quality: float = 0.0
    oee: Optional[float] = None

    @field_validator("availability", "performance", "quality")
    @classmethod
    def validate_component(cls, v: float) -> float:
        return _finite(v)


class TelemetryPayload(BaseModel):
    """Schema de validación para mensajes de estado de línea."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    line: str
    status: str = "unknown"
    batch_id: Optional[str] = Field(default=None, alias="batchId")
    counters: OEECounters = Field(default_factory=OEECounters)
    metrics: OEEMetrics
    parameters: dict[str, Any] = Field(default_factory=dict)
    alarms: list[Any] = Field(default_factory=list)
    timestamp: Optional[str] = None

    @field_validator("line")
    @classmethod
    def validate_line(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("line is required")
        return v.strip()

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and parse_iso(v) is None:
            raise ValueError(f"Invalid timestamp format: {v!r}")
        return v

    @property
    def timestamp_epoch(self) -> Optional[float]:
        return parse_epoch(self.timestamp)

    @property
    def computed_oee(self) -> float:
        return compute_oee(
            self.metrics.availability,
            self.metrics.performance,
            self.metrics.quality,
        )

    def to_sample(self, received_at: float, data_age: float) -> dict[str, Any]:
        """Convierte a muestra en memoria (con receivedAt y dataAge)."""
        metrics = self.metrics.model_dump()
        metrics["oee"] = self.computed_oee
        return {
            "line": self.line,
            "status": self.status,
            "batchId": self.batch_id,
            "counters": self.counters.model_dump(by_alias=True),
            "metrics": metrics,
            "parameters": dict(self.parameters),
            "alarms": list(self.alarms),
            "timestamp": self.timestamp or to_iso(received_at),
            "receivedAt": to_iso(received_at),
            "dataAge": data_age,
        }


@dataclass
class ValidationResult:
    """Resultado de validación."""

    valid: bool
    payload: Optional[TelemetryPayload] = None
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


def validate_telemetry_payload(data: Any) -> ValidationResult:
    """Valida un payload de telemetría ya decodificado.

    Args:
        data: Objeto decodificado del mensaje MQTT

    Returns:
        ValidationResult con payload validado o error
    """
    if not isinstance(data, dict):
        return ValidationResult(valid=False, error="Payload must be a JSON object")

    missing = [name for name in REQUIRED_FIELDS if data.get(name) is None]
    if missing:
        return ValidationResult(
            valid=False,
            error=f"Missing required field(s): {', '.join(missing)}",
        )

    warnings = []
    counters = data.get("counters")
    if isinstance(counters, dict) and "plannedTime" in counters:
        warnings.append("Used plannedTime instead of plannedProductionTime")

    try:
        payload = TelemetryPayload.model_validate(data)
    except ValidationError as e:
        logger.warning("[TELEMETRY_VALIDATOR] Validation failed: %s", e)
        return ValidationResult(valid=False, error=str(e))

    reported = payload.metrics.oee
    if reported is not None and abs(reported - payload.computed_oee) > OEE_TOLERANCE:
        warnings.append(
            f"Reported oee {reported} differs from computed {payload.computed_oee}"
        )

    return ValidationResult(valid=True, payload=payload, warnings=warnings)
