"""Cliente MQTT de telemetría OEE.

Estructura:
- connection_state.py: estados de conexión y política de reconexión
- validators.py: validación de payloads y cálculo de OEE
- receiver_stats.py: contadores del cliente
- telemetry_client.py: suscripción, snapshot por línea y persistencia
"""

from .connection_state import ConnectionState, ReconnectPolicy
from .telemetry_client import TelemetryClient
from .validators import ValidationResult, compute_oee, validate_telemetry_payload

__all__ = [
    "ConnectionState",
    "ReconnectPolicy",
    "TelemetryClient",
    "ValidationResult",
    "compute_oee",
    "validate_telemetry_payload",
]
