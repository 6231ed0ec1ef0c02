"""Fixtures compartidas."""

from dataclasses import replace

import orjson
import pytest

from common.config import Settings
from oee_api.sources.registry import DataSourceRegistry


def build_settings(**overrides) -> Settings:
    base = Settings(
        mqtt_broker_url=None,
        mqtt_topic_base="plc",
        mqtt_user=None,
        mqtt_password=None,
        mqtt_keepalive=60,
        mqtt_connect_timeout=30,
        reconnect_base_delay=5,
        reconnect_max_delay=60,
        max_reconnect_attempts=10,
        staleness_seconds=300,
        persist_interval_seconds=0,
        history_file="oee_history.json",
        history_limit=100,
        data_sources_config="missing.yaml",
        mock_data_path="mock-data",
        sap_base_url=None,
        sap_username=None,
        sap_password=None,
        sap_client="100",
        sap_default_plant=None,
        heartbeat_seconds=10,
        redis_url=None,
        dlq_stream="dlq:telemetry",
        dlq_max_len=10000,
    )
    return replace(base, **overrides)


class FakeTelemetryClient:
    """Sustituto del TelemetryClient con muestras fijas."""

    def __init__(self, samples=None, state="connected"):
        self.samples = list(samples or [])
        self.state = state
        self.connected_calls = 0
        self.restart_calls = 0
        self.cleaned = False

    async def connect(self):
        self.connected_calls += 1

    async def restart(self):
        self.restart_calls += 1
        self.state = "connected"

    def fetch_latest(self):
        return [dict(s) for s in self.samples]

    def connection_status(self):
        return {
            "connected": self.state == "connected",
            "state": self.state,
            "reconnectAttempts": 0,
            "sampleCount": len(self.samples),
            "endpoint": "mqtt://fake:1883",
        }

    async def cleanup(self):
        self.cleaned = True


def sample(line: str, oee: float, received_at: str = "2026-01-31T08:00:00.000Z") -> dict:
    return {
        "line": line,
        "status": "running",
        "batchId": "BATCH-100",
        "metrics": {"availability": 90.0, "performance": 95.0, "quality": 95.0, "oee": oee},
        "timestamp": received_at,
        "receivedAt": received_at,
        "dataAge": 0,
    }


@pytest.fixture
def make_settings():
    return build_settings


@pytest.fixture
def mock_data_dir(tmp_path):
    """Directorio con ficheros JSON de negocio mínimos."""
    base = tmp_path / "mock-data"
    base.mkdir()
    datasets = {
        "orders": [
            {"orderId": "ORD-1", "workCenter": "LINE-01", "material": "MAT-A"},
            {"orderId": "ORD-2", "operations": [{"workCenter": "LINE-02"}]},
            {"orderId": "ORD-3", "operations": []},
        ],
        "issues": [{"issueId": "ISS-1", "line": "LINE-01", "severity": "high"}],
        "batches": [{"batchId": "BATCH-100", "line": "LINE-01"}],
        "compliance": [{"id": "CMP-1", "status": "ok"}],
        "qa": [{"id": "QA-1", "batchId": "BATCH-100", "result": "pass"}],
    }
    for name, records in datasets.items():
        (base / f"{name}.json").write_bytes(orjson.dumps(records))
    return base


@pytest.fixture
def telemetry():
    return FakeTelemetryClient([sample("LINE-01", 81.23)])


@pytest.fixture
def registry(mock_data_dir, telemetry):
    """Registro con los datasets de negocio locales y telemetría falsa."""
    from oee_api.sources.config_loader import default_source_configs

    reg = DataSourceRegistry(
        build_settings(mock_data_path=str(mock_data_dir)),
        telemetry_client_factory=lambda config: telemetry,
    )
    reg.configure(default_source_configs(str(mock_data_dir), telemetry_enabled=True))
    return reg


@pytest.fixture
def make_sample():
    return sample
