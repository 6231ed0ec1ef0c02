from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _default_env_file() -> str:
    # .env at the repository root, next to mock-data/ and config/.
    repo_root = Path(__file__).resolve().parents[1]
    return str(repo_root / ".env")


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    mqtt_broker_url: Optional[str]
    mqtt_topic_base: str
    mqtt_user: Optional[str]
    mqtt_password: Optional[str]
    mqtt_keepalive: int
    mqtt_connect_timeout: float

    reconnect_base_delay: float
    reconnect_max_delay: float
    max_reconnect_attempts: int

    staleness_seconds: float
    persist_interval_seconds: float
    history_file: str
    history_limit: int

    data_sources_config: str
    mock_data_path: str

    sap_base_url: Optional[str]
    sap_username: Optional[str]
    sap_password: Optional[str]
    sap_client: str
    sap_default_plant: Optional[str]

    heartbeat_seconds: float

    redis_url: Optional[str]
    dlq_stream: str
    dlq_max_len: int


def get_settings() -> Settings:
    # Load env file (if present) but still allow overriding via real environment variables.
    env_file = os.getenv("OEE_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    return Settings(
        mqtt_broker_url=_optional("MQTT_BROKER_URL"),
        mqtt_topic_base=os.getenv("MQTT_TOPIC_BASE", "plc"),
        mqtt_user=_optional("MQTT_USER"),
        mqtt_password=_optional("MQTT_PASS"),
        mqtt_keepalive=int(os.getenv("MQTT_KEEPALIVE", "60")),
        mqtt_connect_timeout=float(os.getenv("MQTT_CONNECT_TIMEOUT", "30")),
        reconnect_base_delay=float(os.getenv("MQTT_RECONNECT_BASE_DELAY", "5")),
        reconnect_max_delay=float(os.getenv("MQTT_RECONNECT_MAX_DELAY", "60")),
        max_reconnect_attempts=int(os.getenv("MQTT_MAX_RECONNECT_ATTEMPTS", "10")),
        staleness_seconds=float(os.getenv("OEE_STALENESS_SECONDS", "300")),
        persist_interval_seconds=float(os.getenv("OEE_PERSIST_INTERVAL_SECONDS", "60")),
        history_file=os.getenv("OEE_HISTORY_FILE", "oee_history.json"),
        history_limit=int(os.getenv("OEE_HISTORY_LIMIT", "100")),
        data_sources_config=os.getenv("DATA_SOURCES_CONFIG", "config/data-sources.yaml"),
        mock_data_path=os.getenv("MOCK_DATA_PATH", "mock-data"),
        sap_base_url=_optional("SAP_API_BASE_URL"),
        sap_username=_optional("SAP_USERNAME"),
        sap_password=_optional("SAP_PASSWORD"),
        # SAP client (mandant) number.
        sap_client=os.getenv("SAP_CLIENT", "100"),
        sap_default_plant=_optional("SAP_DEFAULT_PLANT"),
        heartbeat_seconds=float(os.getenv("EVENTS_HEARTBEAT_SECONDS", "10")),
        redis_url=_optional("REDIS_URL"),
        dlq_stream=os.getenv("DLQ_STREAM", "dlq:telemetry"),
        dlq_max_len=int(os.getenv("DLQ_MAX_LEN", "10000")),
    )
