"""Estados de conexión y política de reconexión del cliente de telemetría."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from common.config import Settings


class ConnectionState(str, Enum):
    """Estados de la conexión con el broker."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class ReconnectPolicy:
    """Backoff exponencial sin jitter para reconexión al broker."""
    base_delay: float = 5.0  # segundos
    max_delay: float = 60.0  # segundos
    max_attempts: int = 10

    def delay_for(self, attempt: int) -> float:
        """Calcula el delay para un intento dado.

        Args:
            attempt: Número de intento (1-indexed)

        Returns:
            Delay en segundos: min(base × 2^(attempt-1), max)
        """
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    @classmethod
    def from_env(cls) -> "ReconnectPolicy":
        return cls(
            base_delay=float(os.getenv("MQTT_RECONNECT_BASE_DELAY", "5")),
            max_delay=float(os.getenv("MQTT_RECONNECT_MAX_DELAY", "60")),
            max_attempts=int(os.getenv("MQTT_MAX_RECONNECT_ATTEMPTS", "10")),
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ReconnectPolicy":
        return cls(
            base_delay=settings.reconnect_base_delay,
            max_delay=settings.reconnect_max_delay,
            max_attempts=settings.max_reconnect_attempts,
        )
