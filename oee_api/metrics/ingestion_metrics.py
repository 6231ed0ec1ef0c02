"""Métricas Prometheus del hub OEE.

Se registran en el registry por defecto de prometheus_client y se exponen
en ``GET /metrics``.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

TELEMETRY_MESSAGES = Counter(
    "oee_telemetry_messages_total",
    "Telemetry messages handled by the telemetry client",
    ["status"],  # accepted, stale, invalid_json, validation_error
)
TELEMETRY_CONNECTED = Gauge(
    "oee_telemetry_connected",
    "1 when the telemetry client is connected to the broker",
)
TELEMETRY_RECONNECT_ATTEMPTS = Gauge(
    "oee_telemetry_reconnect_attempts",
    "Reconnection attempts since the last successful connect",
)
HUB_EVENTS_PUBLISHED = Counter(
    "oee_hub_events_published_total",
    "Events published on the subscriber hub",
)
HUB_LISTENER_ERRORS = Counter(
    "oee_hub_listener_errors_total",
    "Listener callbacks that raised while handling an event",
)
HUB_SUBSCRIBERS = Gauge(
    "oee_hub_subscribers",
    "Active subscriptions on the subscriber hub",
)
