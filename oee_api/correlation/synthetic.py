"""Histórico OEE sintético para cuando no hay histórico persistido.

Paseo aleatorio acotado alrededor de valores realistas de availability,
performance y quality. Cada registro lleva ``source: "synthetic"``.
"""

from __future__ import annotations

import math
import random
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from ..mqtt.validators import compute_oee
from ..timeutils import to_iso, utc_now

SYNTHETIC_SOURCE = "synthetic"
DEFAULT_LINES = ("LINE-01", "LINE-02", "LINE-03")
INTERVAL_MINUTES = 3
MAINTENANCE_PROBABILITY = 0.1

# componente -> (centro, mínimo, máximo)
COMPONENT_BANDS = {
    "availability": (92.0, 80.0, 99.0),
    "performance": (88.0, 75.0, 99.0),
    "quality": (96.0, 90.0, 99.9),
}
MAX_STEP = 1.5
MEAN_REVERSION = 0.1

PRODUCTS = ("Aspirin 100mg", "Ibuprofen 200mg", "Paracetamol 500mg", "Vitamin C 1000mg")
OPERATORS = ("John Smith", "Maria Garcia", "Chen Wei", "Anna Kowalski")


def shift_for(hour: int) -> str:
    if 6 <= hour < 14:
        return "Day"
    if 14 <= hour < 22:
        return "Evening"
    return "Night"


def generate_synthetic_history(
    limit: int = 100,
    entity_id: Optional[str] = None,
    lines: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> list[dict[str, Any]]:
    """Genera hasta ``limit`` registros, más recientes primero.

    Args:
        limit: Número máximo de registros
        entity_id: Si se indica, solo esa línea
        lines: Líneas a simular (por defecto LINE-01..03)
        now: Instante del registro más reciente
        rng: Generador aleatorio (tests)
    """
    if limit <= 0:
        return []

    rng = rng or random.Random()
    now = now or utc_now()
    line_ids = [entity_id] if entity_id else list(lines or DEFAULT_LINES)
    per_line = math.ceil(limit / len(line_ids))

    records = []
    for line in line_ids:
        values = {name: center for name, (center, _, _) in COMPONENT_BANDS.items()}
        for i in range(per_line):
            for name, (center, low, high) in COMPONENT_BANDS.items():
                step = rng.uniform(-MAX_STEP, MAX_STEP) + (center - values[name]) * MEAN_REVERSION
                values[name] = min(high, max(low, values[name] + step))

            metrics = {name: round(value, 2) for name, value in values.items()}
            metrics["oee"] = compute_oee(metrics["availability"], metrics["performance"], metrics["quality"])

            ts = now - timedelta(minutes=i * INTERVAL_MINUTES)
            records.append({
                "line": line,
                "status": "maintenance" if rng.random() < MAINTENANCE_PROBABILITY else "running",
                "batchId": None,
                "counters": {},
                "metrics": metrics,
                "parameters": {},
                "alarms": [],
                "product": rng.choice(PRODUCTS),
                "operator": rng.choice(OPERATORS),
                "shift": shift_for(ts.hour),
                "timestamp": to_iso(ts),
                "source": SYNTHETIC_SOURCE,
            })

    records.sort(key=lambda r: r["timestamp"], reverse=True)
    return records[:limit]
