"""Cliente de telemetría OEE usando paho-mqtt.

Flujo:
  MQTT topic <base>/{line}/status
  → TelemetryClient (este archivo)
  → muestra más reciente por línea (memoria)
  → HistoryLog (throttled por línea)
  → SubscriberHub oee/{line}/status

El hilo de red de paho solo reenvía callbacks al event loop con
``call_soon_threadsafe``; todo el estado se modifica en el loop.
paho no reconecta por su cuenta (``reconnect_on_failure=False``): los
reintentos los programa este cliente con ``loop.call_later``.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Optional
from urllib.parse import urlparse

import orjson
import paho.mqtt.client as mqtt

from ..metrics.ingestion_metrics import (
    TELEMETRY_CONNECTED,
    TELEMETRY_MESSAGES,
    TELEMETRY_RECONNECT_ATTEMPTS,
)
from ..persistence.history_log import HistoryLog, HistoryLogError, to_history_record
from ..sources.errors import ReadOnlySourceError
from ..timeutils import to_iso
from .connection_state import ConnectionState, ReconnectPolicy
from .receiver_stats import ReceiverStats
from .validators import validate_telemetry_payload

if TYPE_CHECKING:
    from common.config import Settings
    from ..events.hub import SubscriberHub
    from ..resilience.dead_letter import DeadLetterQueue

logger = logging.getLogger(__name__)

CONNECTION_TOPIC = "oee/connection"

_PLAIN_SCHEMES = ("mqtt", "tcp", "")
_TLS_SCHEMES = ("mqtts", "ssl")


class TelemetryClient:
    """Cliente MQTT de solo lectura para el estado OEE de las líneas."""

    def __init__(
        self,
        broker_url: str,
        *,
        topic_base: str = "plc",
        username: Optional[str] = None,
        password: Optional[str] = None,
        keepalive: int = 60,
        connect_timeout: float = 30.0,
        policy: Optional[ReconnectPolicy] = None,
        staleness_seconds: float = 300.0,
        persist_interval_seconds: float = 60.0,
        history_log: Optional[HistoryLog] = None,
        hub: Optional["SubscriberHub"] = None,
        dead_letter: Optional["DeadLetterQueue"] = None,
        client_id: str = "oee-hub",
        clock: Callable[[], float] = time.time,
        client_factory: Optional[Callable[[str], Any]] = None,
    ):
        parsed = urlparse(broker_url)
        scheme = parsed.scheme.lower()
        if scheme not in _PLAIN_SCHEMES + _TLS_SCHEMES:
            raise ValueError(f"Unsupported broker URL scheme: {broker_url}")

        self.tls = scheme in _TLS_SCHEMES
        self.host = parsed.hostname or "localhost"
        self.port = parsed.port or (8883 if self.tls else 1883)
        self.endpoint = f"{scheme or 'mqtt'}://{self.host}:{self.port}"
        self.username = username or parsed.username
        self.password = password or parsed.password
        self.keepalive = keepalive
        self.connect_timeout = connect_timeout
        self.topic = f"{topic_base}/+/status"
        self.client_id = client_id

        self.policy = policy or ReconnectPolicy()
        self.staleness_seconds = staleness_seconds
        self.persist_interval_seconds = persist_interval_seconds

        self._history_log = history_log
        self._hub = hub
        self._dead_letter = dead_letter
        self._clock = clock
        self._client_factory = client_factory

        self.state = ConnectionState.DISCONNECTED
        self._client: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connecting = False
        self._closing = False
        self._attempts = 0
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self._samples: dict[str, dict[str, Any]] = {}
        self._last_persisted: dict[str, float] = {}
        self.stats = ReceiverStats()

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        *,
        broker_url: Optional[str] = None,
        history_log: Optional[HistoryLog] = None,
        hub: Optional["SubscriberHub"] = None,
        dead_letter: Optional["DeadLetterQueue"] = None,
        **overrides: Any,
    ) -> "TelemetryClient":
        broker_url = broker_url or settings.mqtt_broker_url
        if not broker_url:
            raise ValueError("MQTT_BROKER_URL is not configured")

        options: dict[str, Any] = {
            "topic_base": settings.mqtt_topic_base,
            "username": settings.mqtt_user,
            "password": settings.mqtt_password,
            "keepalive": settings.mqtt_keepalive,
            "connect_timeout": settings.mqtt_connect_timeout,
            "policy": ReconnectPolicy.from_settings(settings),
            "staleness_seconds": settings.staleness_seconds,
            "persist_interval_seconds": settings.persist_interval_seconds,
        }
        options.update(overrides)
        return cls(
            broker_url,
            history_log=history_log,
            hub=hub,
            dead_letter=dead_letter,
            **options,
        )

    # ------------------------------------------------------------------
    # Conexión
    # ------------------------------------------------------------------

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    def _create_client(self) -> Any:
        client_id = f"{self.client_id}-{int(self._clock())}-{self._attempts}"
        if self._client_factory is not None:
            client = self._client_factory(client_id)
        else:
            client = mqtt.Client(
                client_id=client_id,
                protocol=mqtt.MQTTv311,
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                reconnect_on_failure=False,
            )
            client.connect_timeout = self.connect_timeout
            if self.tls:
                client.tls_set()

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        if self.username and self.password:
            client.username_pw_set(self.username, self.password)
        return client

    async def connect(self) -> None:
        """Inicia un intento de conexión con el broker.

        No hace nada si ya hay un intento en curso o si está conectado.
        Los fallos no se propagan: se reflejan en ``state`` y disparan la
        política de reconexión.
        """
        if self._connecting or self.state == ConnectionState.CONNECTED:
            logger.debug("[MQTT] Connect skipped (state=%s)", self.state.value)
            return

        self._loop = asyncio.get_running_loop()
        self._closing = False
        self._connecting = True
        self._set_state(
            ConnectionState.CONNECTING if self._attempts == 0 else ConnectionState.RECONNECTING
        )

        previous, self._client = self._client, self._create_client()
        if previous is not None:
            await self._discard_client(previous)
        client = self._client

        logger.info(
            "[MQTT] Connecting to %s (attempt %d/%d)",
            self.endpoint,
            self._attempts,
            self.policy.max_attempts,
        )
        try:
            await self._loop.run_in_executor(
                None,
                functools.partial(client.connect, self.host, self.port, keepalive=self.keepalive),
            )
        except Exception as e:
            if client is not self._client:
                return
            self._connecting = False
            logger.warning("[MQTT] Connect to %s failed: %s", self.endpoint, e)
            self._handle_close(f"connect failed: {e}")
            return

        if client is self._client:
            client.loop_start()

    async def restart(self) -> None:
        """Reinicia el contador de intentos y reconecta (p.ej. desde FAILED)."""
        self._cancel_reconnect()
        self._attempts = 0
        self._connecting = False
        if self.state == ConnectionState.CONNECTED:
            return
        await self.connect()

    async def _discard_client(self, client: Any) -> None:
        """Suelta un cliente anterior: callbacks fuera, socket cerrado, hilo parado."""
        client.on_connect = None
        client.on_disconnect = None
        client.on_message = None
        client.disconnect()
        await self._loop.run_in_executor(None, client.loop_stop)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _on_connect(self, client, userdata, flags, rc, properties=None):
        """Callback de conexión (hilo de red de paho)."""
        self._loop.call_soon_threadsafe(self._handle_connect, client, rc)

    def _on_disconnect(self, client, userdata, flags, rc, properties=None):
        """Callback de desconexión (hilo de red de paho)."""
        self._loop.call_soon_threadsafe(self._handle_disconnect, client, rc)

    def _on_message(self, client, userdata, msg):
        """Callback de mensaje recibido (hilo de red de paho)."""
        self._loop.call_soon_threadsafe(self._handle_inbound, client, msg.topic, msg.payload)

    def _handle_inbound(self, client: Any, topic: str, payload: bytes) -> None:
        if client is not self._client:
            logger.debug("[MQTT] Dropping message from a discarded client on %s", topic)
            return
        self.handle_message(topic, payload)

    def _handle_connect(self, client: Any, rc: Any) -> None:
        if client is not self._client:
            return
        self._connecting = False

        if rc != 0:
            logger.error("[MQTT] Connection refused by %s: rc=%s", self.endpoint, rc)
            self._handle_close(f"connection refused rc={rc}")
            return

        self._cancel_reconnect()
        self._attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        client.subscribe(self.topic, qos=1)
        logger.info("[MQTT] Connected to %s, subscribed to %s", self.endpoint, self.topic)

    def _handle_disconnect(self, client: Any, rc: Any) -> None:
        if client is not self._client:
            return
        self._connecting = False

        if self._closing:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        logger.warning("[MQTT] Disconnected from %s (rc=%s)", self.endpoint, rc)
        self._handle_close(f"disconnected rc={rc}")

    def _handle_close(self, reason: str) -> None:
        """Programa un único reintento o pasa a FAILED."""
        if self._closing or self._connecting or self._reconnect_handle is not None:
            return

        if self.policy.exhausted(self._attempts):
            self._set_state(ConnectionState.FAILED)
            logger.error(
                "[MQTT] Giving up on %s after %d reconnection attempts (%s)",
                self.endpoint,
                self._attempts,
                reason,
            )
            return

        self._attempts += 1
        delay = self.policy.delay_for(self._attempts)
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_handle = self._loop.call_later(delay, self._start_reconnect)
        logger.warning(
            "[MQTT] %s; reconnecting in %.1fs (attempt %d/%d)",
            reason,
            delay,
            self._attempts,
            self.policy.max_attempts,
        )

    def _start_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._closing or self.state == ConnectionState.CONNECTED:
            return
        self._reconnect_task = self._loop.create_task(self.connect())

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        previous, self.state = self.state, state
        TELEMETRY_CONNECTED.set(1 if state == ConnectionState.CONNECTED else 0)
        TELEMETRY_RECONNECT_ATTEMPTS.set(self._attempts)
        logger.debug("[MQTT] State %s -> %s", previous.value, state.value)

        if self._hub is not None:
            self._hub.publish(CONNECTION_TOPIC, self.connection_status(), event_type="connection_state")

    # ------------------------------------------------------------------
    # Mensajes
    # ------------------------------------------------------------------

    def handle_message(self, topic: str, payload: bytes) -> Optional[dict[str, Any]]:
        """Procesa un mensaje de estado de línea.

        Returns:
            Copia de la muestra aceptada, o None si se descartó.
        """
        self.stats.received += 1
        now = self._clock()
        self.stats.last_message_at = now

        try:
            data = orjson.loads(payload)
        except orjson.JSONDecodeError as e:
            self._reject(topic, payload, f"Invalid JSON: {e}", "invalid_json")
            return None

        validation = validate_telemetry_payload(data)
        if not validation.valid:
            self._reject(topic, data, validation.error, "validation_error")
            return None

        telemetry = validation.payload
        for warning in validation.warnings:
            logger.debug("[MQTT] %s (line=%s)", warning, telemetry.line)

        ts = telemetry.timestamp_epoch
        age = max(0.0, now - ts) if ts is not None else 0.0
        if age > self.staleness_seconds:
            self.stats.stale += 1
            TELEMETRY_MESSAGES.labels(status="stale").inc()
            logger.warning(
                "[MQTT] Ignoring stale data from %s (age %.0fs > %.0fs)",
                telemetry.line,
                age,
                self.staleness_seconds,
            )
            return None

        sample = telemetry.to_sample(received_at=now, data_age=round(age, 3))
        self._samples[telemetry.line] = sample
        self.stats.accepted += 1
        TELEMETRY_MESSAGES.labels(status="accepted").inc()
        logger.debug(
            "[MQTT] Updated %s: OEE %.2f%% (age %.1fs)",
            telemetry.line,
            sample["metrics"]["oee"],
            age,
        )
        if self.stats.accepted % 100 == 0:
            logger.info("[MQTT] %s", self.stats)

        self._persist(sample, now)
        if self._hub is not None:
            self._hub.publish(f"oee/{telemetry.line}/status", sample, event_type="oee_update")

        return copy.deepcopy(sample)

    def _reject(self, topic: str, payload: Any, error: str, error_type: str) -> None:
        self.stats.rejected += 1
        TELEMETRY_MESSAGES.labels(status=error_type).inc()
        logger.warning("[MQTT] Rejected message on %s: %s", topic, error)
        if self._dead_letter is not None:
            self._dead_letter.send(payload, error, error_type, topic=topic)

    def _persist(self, sample: dict[str, Any], now: float) -> None:
        if self._history_log is None:
            return

        line = sample["line"]
        last = self._last_persisted.get(line)
        if last is not None and now - last < self.persist_interval_seconds:
            return

        try:
            self._history_log.append(to_history_record(sample))
        except (HistoryLogError, OSError) as e:
            self.stats.persist_errors += 1
            logger.error("[MQTT] Failed to persist sample for %s: %s", line, e)
            return

        self._last_persisted[line] = now
        self.stats.persisted += 1

    # ------------------------------------------------------------------
    # Consulta
    # ------------------------------------------------------------------

    def fetch_latest(self) -> list[dict[str, Any]]:
        """Copia de la muestra más reciente de cada línea."""
        return copy.deepcopy(list(self._samples.values()))

    def connection_status(self) -> dict[str, Any]:
        last = self.stats.last_message_at
        return {
            "connected": self.state == ConnectionState.CONNECTED,
            "state": self.state.value,
            "reconnectAttempts": self._attempts,
            "maxReconnectAttempts": self.policy.max_attempts,
            "sampleCount": len(self._samples),
            "endpoint": self.endpoint,
            "topic": self.topic,
            "lastMessageAt": to_iso(last) if last else None,
            "stats": self.stats.to_dict(),
        }

    def update(self, *args: Any, **kwargs: Any) -> None:
        raise ReadOnlySourceError("TelemetryClient", "telemetry is read-only")

    async def cleanup(self) -> None:
        """Desconecta, cancela reintentos y vacía las muestras."""
        self._closing = True
        self._connecting = False
        self._cancel_reconnect()

        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()

        client, self._client = self._client, None
        if client is not None:
            client.disconnect()
            await asyncio.get_running_loop().run_in_executor(None, client.loop_stop)

        self._samples.clear()
        self._last_persisted.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("[MQTT] Cleaned up. %s", self.stats)
