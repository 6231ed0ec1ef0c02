"""Tests del cliente de telemetría OEE.

Cubre:
1. Validación y descarte de payloads (JSON inválido, campos faltantes)
2. Umbral de antigüedad (stale)
3. Cálculo de OEE y last-write-wins
4. Persistencia throttled y publicación en el hub
5. Máquina de estados de reconexión con backoff
6. Datos en vivo solo con conexión activa y reconexión manual

Ejecutar:
    pytest tests/test_telemetry_client.py -v
"""

import asyncio
from types import SimpleNamespace
from typing import Any, Dict, List
from unittest.mock import MagicMock, patch

import orjson
import pytest

from oee_api.events.hub import SubscriberHub
from oee_api.mqtt.connection_state import ConnectionState, ReconnectPolicy
from oee_api.mqtt.telemetry_client import TelemetryClient
from oee_api.mqtt.validators import compute_oee, validate_telemetry_payload
from oee_api.persistence.history_log import HistoryLog
from oee_api.resilience.dead_letter import DeadLetterQueue
from oee_api.sources.errors import ReadOnlySourceError
from oee_api.sources.telemetry import TelemetryDataSource
from oee_api.timeutils import to_iso

NOW = 1_770_000_000.0


def iso(ts: float) -> str:
    return to_iso(ts)


def make_payload(line: str = "LINE-01", age: float = 0.0, now: float = NOW, **overrides) -> Dict[str, Any]:
    payload = {
        "line": line,
        "status": "running",
        "batchId": "BATCH-100",
        "counters": {
            "plannedProductionTime": 480,
            "operatingTime": 240,
            "goodCount": 900,
            "badCount": 100,
        },
        "metrics": {"availability": 50.0, "performance": 100.0, "quality": 90.0, "oee": 12.0},
        "parameters": {"temperature": 21.5, "pressure": 1.02},
        "alarms": [],
        "timestamp": iso(now - age),
    }
    payload.update(overrides)
    return payload


class Clock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeMQTTClient:
    """Sustituto de paho.mqtt.client.Client."""

    def __init__(self, client_id: str, fail_connect: bool = False, rc: int = 0):
        self.client_id = client_id
        self.fail_connect = fail_connect
        self.rc = rc
        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.subscriptions: List[tuple] = []
        self.credentials = None
        self.loop_started = False
        self.loop_stopped = False
        self.disconnected = False

    def username_pw_set(self, username, password):
        self.credentials = (username, password)

    def connect(self, host, port, keepalive=60):
        if self.fail_connect:
            raise ConnectionRefusedError("connection refused")

    def loop_start(self):
        self.loop_started = True
        if self.on_connect is not None:
            self.on_connect(self, None, {}, self.rc, None)

    def loop_stop(self):
        self.loop_stopped = True

    def disconnect(self):
        self.disconnected = True

    def subscribe(self, topic, qos=0):
        self.subscriptions.append((topic, qos))


class FakeClientFactory:
    def __init__(self, fail_first: int = 0, always_fail: bool = False):
        self.fail_first = fail_first
        self.always_fail = always_fail
        self.clients: List[FakeMQTTClient] = []

    def __call__(self, client_id: str) -> FakeMQTTClient:
        fail = self.always_fail or len(self.clients) < self.fail_first
        client = FakeMQTTClient(client_id, fail_connect=fail)
        self.clients.append(client)
        return client


async def wait_until(predicate, iterations: int = 100_000) -> None:
    """Cede el loop hasta que se cumpla la condición (sin timers)."""
    for _ in range(iterations):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def make_client(clock):
    def _make(**kwargs) -> TelemetryClient:
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("persist_interval_seconds", 0)
        return TelemetryClient("mqtt://broker.local:1883", **kwargs)
    return _make


# =============================================================================
# TEST: VALIDACIÓN DE PAYLOAD
# =============================================================================

class TestTelemetryValidation:
    """Tests del validador de payloads."""

    def test_valid_payload(self):
        result = validate_telemetry_payload(make_payload())

        assert result.valid is True
        assert result.payload.line == "LINE-01"
        assert result.payload.counters.good_count == 900

    def test_missing_line_and_metrics(self):
        result = validate_telemetry_payload({"status": "running"})

        assert result.valid is False
        assert "line" in result.error
        assert "metrics" in result.error

    def test_not_an_object(self):
        result = validate_telemetry_payload([1, 2, 3])

        assert result.valid is False

    def test_invalid_timestamp(self):
        result = validate_telemetry_payload(make_payload(timestamp="yesterday"))

        assert result.valid is False

    def test_planned_time_alias(self):
        payload = make_payload(counters={"plannedTime": 100, "operatingTime": 50})
        result = validate_telemetry_payload(payload)

        assert result.valid is True
        assert result.payload.counters.planned_production_time == 100
        assert any("plannedTime" in w for w in result.warnings)

    def test_reported_oee_mismatch_is_warning(self):
        result = validate_telemetry_payload(make_payload())

        assert result.valid is True
        assert any("differs" in w for w in result.warnings)

    def test_compute_oee_caps_only_performance(self):
        assert compute_oee(50.0, 100.0, 90.0) == pytest.approx(45.0)
        assert compute_oee(50.0, 150.0, 90.0) == pytest.approx(45.0)
        # availability y quality no se limitan
        assert compute_oee(110.0, 100.0, 100.0) == pytest.approx(110.0)


# =============================================================================
# TEST: PROCESAMIENTO DE MENSAJES
# =============================================================================

class TestMessageHandling:
    """Tests de handle_message."""

    def test_fresh_sample_is_stored_with_computed_oee(self, make_client):
        client = make_client()

        sample = client.handle_message("plc/LINE-01/status", orjson.dumps(make_payload(age=10)))

        assert sample is not None
        assert sample["metrics"]["oee"] == pytest.approx(45.0)
        latest = client.fetch_latest()
        assert len(latest) == 1
        assert latest[0]["line"] == "LINE-01"
        assert latest[0]["dataAge"] == pytest.approx(10.0)
        assert latest[0]["receivedAt"] == iso(NOW)

    def test_stale_sample_is_dropped(self, make_client):
        client = make_client()

        sample = client.handle_message("plc/LINE-01/status", orjson.dumps(make_payload(age=301)))

        assert sample is None
        assert client.fetch_latest() == []
        assert client.stats.stale == 1

    def test_sample_within_threshold_is_kept(self, make_client):
        client = make_client()

        client.handle_message("plc/LINE-01/status", orjson.dumps(make_payload(age=299)))

        assert len(client.fetch_latest()) == 1

    def test_custom_staleness_threshold(self, make_client):
        client = make_client(staleness_seconds=30)

        assert client.handle_message("plc/LINE-01/status", orjson.dumps(make_payload(age=31))) is None

    def test_missing_timestamp_has_zero_age(self, make_client):
        client = make_client()
        payload = make_payload()
        del payload["timestamp"]

        sample = client.handle_message("plc/LINE-01/status", orjson.dumps(payload))

        assert sample["dataAge"] == 0
        assert sample["timestamp"] == iso(NOW)

    def test_invalid_json_goes_to_dead_letter(self, make_client):
        dlq = MagicMock(spec=DeadLetterQueue)
        client = make_client(dead_letter=dlq)

        assert client.handle_message("plc/LINE-01/status", b"not json {") is None

        assert client.stats.rejected == 1
        dlq.send.assert_called_once()
        assert dlq.send.call_args.args[2] == "invalid_json"
        assert dlq.send.call_args.kwargs["topic"] == "plc/LINE-01/status"

    def test_missing_metrics_is_rejected(self, make_client):
        dlq = MagicMock(spec=DeadLetterQueue)
        client = make_client(dead_letter=dlq)
        payload = make_payload()
        del payload["metrics"]

        assert client.handle_message("plc/LINE-01/status", orjson.dumps(payload)) is None

        assert client.fetch_latest() == []
        assert dlq.send.call_args.args[2] == "validation_error"

    def test_last_write_wins_even_with_older_timestamp(self, make_client):
        client = make_client()
        newer = make_payload(age=5)
        older = make_payload(age=100, status="stopped")

        client.handle_message("plc/LINE-01/status", orjson.dumps(newer))
        client.handle_message("plc/LINE-01/status", orjson.dumps(older))

        latest = client.fetch_latest()
        assert len(latest) == 1
        assert latest[0]["status"] == "stopped"

    def test_one_sample_per_line(self, make_client):
        client = make_client()

        for line in ("LINE-01", "LINE-02", "LINE-01"):
            client.handle_message(f"plc/{line}/status", orjson.dumps(make_payload(line=line)))

        assert sorted(s["line"] for s in client.fetch_latest()) == ["LINE-01", "LINE-02"]

    def test_fetch_latest_returns_copies(self, make_client):
        client = make_client()
        client.handle_message("plc/LINE-01/status", orjson.dumps(make_payload()))

        client.fetch_latest()[0]["metrics"]["oee"] = -1

        assert client.fetch_latest()[0]["metrics"]["oee"] == pytest.approx(45.0)

    def test_accepted_sample_is_published(self, make_client):
        hub = SubscriberHub()
        received = []
        hub.subscribe("oee/*/status", received.append)
        client = make_client(hub=hub)

        client.handle_message("plc/LINE-01/status", orjson.dumps(make_payload()))

        assert len(received) == 1
        assert received[0]["type"] == "oee_update"
        assert received[0]["topic"] == "oee/LINE-01/status"
        assert received[0]["payload"]["line"] == "LINE-01"

    def test_update_is_read_only(self, make_client):
        with pytest.raises(ReadOnlySourceError):
            make_client().update("LINE-01", {"status": "idle"})


# =============================================================================
# TEST: PERSISTENCIA
# =============================================================================

class TestPersistence:
    """Tests del append al log histórico desde la ingesta."""

    def test_persist_is_throttled_per_line(self, make_client, clock, tmp_path):
        log = HistoryLog(tmp_path / "oee_history.json")
        client = make_client(history_log=log, persist_interval_seconds=60)

        for offset in (0, 10, 61):
            clock.now = NOW + offset
            client.handle_message("plc/LINE-01/status", orjson.dumps(make_payload(now=clock.now)))
        clock.now = NOW + 62
        client.handle_message("plc/LINE-02/status", orjson.dumps(make_payload(line="LINE-02", now=clock.now)))

        records = log.load_all()
        assert [r["line"] for r in records] == ["LINE-01", "LINE-01", "LINE-02"]
        assert "receivedAt" not in records[0]
        assert client.stats.persisted == 3

    def test_persist_failure_does_not_drop_sample(self, make_client, tmp_path):
        path = tmp_path / "oee_history.json"
        path.write_text("{corrupt")
        client = make_client(history_log=HistoryLog(path))

        sample = client.handle_message("plc/LINE-01/status", orjson.dumps(make_payload()))

        assert sample is not None
        assert client.stats.persist_errors == 1
        assert path.read_text() == "{corrupt"


# =============================================================================
# TEST: RECONEXIÓN
# =============================================================================

class TestReconnectPolicy:
    """Tests del cálculo de backoff."""

    def test_delay_sequence(self):
        policy = ReconnectPolicy(base_delay=5, max_delay=60, max_attempts=10)

        assert [policy.delay_for(n) for n in range(1, 7)] == [5, 10, 20, 40, 60, 60]

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            ReconnectPolicy().delay_for(0)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MQTT_RECONNECT_BASE_DELAY", "2")
        monkeypatch.setenv("MQTT_RECONNECT_MAX_DELAY", "8")
        monkeypatch.setenv("MQTT_MAX_RECONNECT_ATTEMPTS", "4")

        policy = ReconnectPolicy.from_env()

        assert (policy.base_delay, policy.max_delay, policy.max_attempts) == (2.0, 8.0, 4)


class TestConnectionLifecycle:
    """Tests de conexión, reconexión y cleanup."""

    @pytest.mark.asyncio
    async def test_connect_subscribes(self, make_client):
        factory = FakeClientFactory()
        client = make_client(client_factory=factory, username="user", password="secret")

        await client.connect()
        await wait_until(lambda: client.state == ConnectionState.CONNECTED)

        fake = factory.clients[0]
        assert fake.subscriptions == [("plc/+/status", 1)]
        assert fake.credentials == ("user", "secret")
        status = client.connection_status()
        assert status["connected"] is True
        assert status["reconnectAttempts"] == 0
        assert status["endpoint"] == "mqtt://broker.local:1883"

        await client.cleanup()

    @pytest.mark.asyncio
    async def test_backoff_until_failed(self, make_client):
        factory = FakeClientFactory(always_fail=True)
        client = make_client(
            client_factory=factory,
            policy=ReconnectPolicy(base_delay=5, max_delay=60, max_attempts=3),
        )
        loop = asyncio.get_running_loop()
        scheduled = []

        def fake_call_later(delay, callback, *args):
            scheduled.append((delay, callback))
            return MagicMock()

        with patch.object(loop, "call_later", side_effect=fake_call_later):
            await client.connect()
            assert [d for d, _ in scheduled] == [5]

            for expected in (2, 3):
                scheduled[-1][1]()
                await wait_until(lambda: len(scheduled) == expected)

            scheduled[-1][1]()
            await wait_until(lambda: client.state == ConnectionState.FAILED)

        assert [d for d, _ in scheduled] == [5, 10, 20]
        assert client.reconnect_attempts == 3
        assert len(factory.clients) == 4

        await client.cleanup()

    @pytest.mark.asyncio
    async def test_successful_reconnect_resets_attempts(self, make_client):
        factory = FakeClientFactory(fail_first=1)
        client = make_client(client_factory=factory)
        loop = asyncio.get_running_loop()
        scheduled = []

        with patch.object(loop, "call_later", side_effect=lambda d, cb, *a: scheduled.append(cb) or MagicMock()):
            await client.connect()
            assert client.state == ConnectionState.RECONNECTING
            assert client.reconnect_attempts == 1

            scheduled[0]()
            await wait_until(lambda: client.state == ConnectionState.CONNECTED)

        assert client.reconnect_attempts == 0
        await wait_until(lambda: factory.clients[0].loop_stopped)
        assert factory.clients[0].disconnected is True

        await client.cleanup()

    @pytest.mark.asyncio
    async def test_broker_disconnect_schedules_single_retry(self, make_client):
        factory = FakeClientFactory()
        client = make_client(client_factory=factory)
        await client.connect()
        await wait_until(lambda: client.state == ConnectionState.CONNECTED)

        fake = factory.clients[0]
        fake.on_disconnect(fake, None, {}, 7, None)
        fake.on_disconnect(fake, None, {}, 7, None)
        await wait_until(lambda: client.state == ConnectionState.RECONNECTING)
        for _ in range(10):
            await asyncio.sleep(0)

        assert client.reconnect_attempts == 1

        await client.cleanup()
        assert client.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connection_events_are_published(self, make_client):
        hub = SubscriberHub()
        states = []
        hub.subscribe("oee/connection", lambda event: states.append(event["payload"]["state"]))
        client = make_client(client_factory=FakeClientFactory(), hub=hub)

        await client.connect()
        await wait_until(lambda: client.state == ConnectionState.CONNECTED)
        await client.cleanup()

        assert states == ["connecting", "connected", "disconnected"]

    @pytest.mark.asyncio
    async def test_cleanup_clears_samples(self, make_client):
        factory = FakeClientFactory()
        client = make_client(client_factory=factory)
        await client.connect()
        await wait_until(lambda: client.state == ConnectionState.CONNECTED)
        client.handle_message("plc/LINE-01/status", orjson.dumps(make_payload()))

        await client.cleanup()

        assert client.fetch_latest() == []
        assert factory.clients[0].disconnected is True
        assert factory.clients[0].loop_stopped is True

    def test_unsupported_scheme(self):
        with pytest.raises(ValueError):
            TelemetryClient("http://broker.local")

    def test_tls_default_port(self):
        client = TelemetryClient("mqtts://broker.local")

        assert client.tls is True
        assert client.port == 8883


# =============================================================================
# TEST: ESTADO FAILED Y RECONEXIÓN MANUAL
# =============================================================================

class TestFailedStateAndRestart:
    """Sin conexión no hay datos en vivo; restart() es la salida de FAILED."""

    @pytest.mark.asyncio
    async def test_failed_client_serves_no_live_data(self, make_client):
        client = make_client(
            client_factory=FakeClientFactory(always_fail=True),
            policy=ReconnectPolicy(base_delay=5, max_delay=60, max_attempts=0),
        )
        source = TelemetryDataSource(client)
        client.handle_message("plc/LINE-01/status", orjson.dumps(make_payload()))

        await client.connect()

        assert client.state == ConnectionState.FAILED
        assert await source.fetch() == []
        assert [s["line"] for s in client.fetch_latest()] == ["LINE-01"]

        await client.cleanup()

    @pytest.mark.asyncio
    async def test_connected_client_serves_samples(self, make_client):
        client = make_client(client_factory=FakeClientFactory())
        source = TelemetryDataSource(client)
        await client.connect()
        await wait_until(lambda: client.state == ConnectionState.CONNECTED)
        client.handle_message("plc/LINE-01/status", orjson.dumps(make_payload()))

        assert [s["line"] for s in await source.fetch()] == ["LINE-01"]

        await client.cleanup()

    @pytest.mark.asyncio
    async def test_restart_from_failed(self, make_client):
        factory = FakeClientFactory(fail_first=1)
        client = make_client(
            client_factory=factory,
            policy=ReconnectPolicy(base_delay=5, max_delay=60, max_attempts=0),
        )
        await client.connect()
        assert client.state == ConnectionState.FAILED

        await TelemetryDataSource(client).restart()
        await wait_until(lambda: client.state == ConnectionState.CONNECTED)

        status = client.connection_status()
        assert status["connected"] is True
        assert status["reconnectAttempts"] == 0
        assert factory.clients[0].disconnected is True

        await client.cleanup()

    @pytest.mark.asyncio
    async def test_unexpected_connect_error_is_handled(self, make_client):
        def factory(client_id):
            fake = FakeMQTTClient(client_id)
            fake.connect = MagicMock(side_effect=ValueError("Invalid host."))
            return fake

        client = make_client(
            client_factory=factory,
            policy=ReconnectPolicy(base_delay=5, max_delay=60, max_attempts=0),
        )

        await client.connect()

        assert client.state == ConnectionState.FAILED
        assert client.connection_status()["state"] == "failed"

        await client.cleanup()

    @pytest.mark.asyncio
    async def test_messages_from_discarded_client_are_dropped(self, make_client):
        factory = FakeClientFactory()
        client = make_client(client_factory=factory)
        await client.connect()
        await wait_until(lambda: client.state == ConnectionState.CONNECTED)
        fake = factory.clients[0]
        message = SimpleNamespace(topic="plc/LINE-01/status", payload=orjson.dumps(make_payload()))

        client._on_message(fake, None, message)
        await client.cleanup()
        for _ in range(5):
            await asyncio.sleep(0)

        assert client.fetch_latest() == []
        assert client.stats.accepted == 0
