"""Dead Letter Queue para payloads de telemetría rechazados.

Los mensajes MQTT que no decodifican o no validan se guardan en un Redis
Stream, etiquetados con la línea (si se pudo leer) y el motivo del rechazo.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Optional

import orjson
import redis

if TYPE_CHECKING:
    from common.config import Settings

logger = logging.getLogger(__name__)

PAYLOAD_LIMIT = 5000
ERROR_LIMIT = 1000


def _payload_text(payload: Any) -> str:
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload).decode("utf-8", errors="replace")
    if isinstance(payload, (dict, list)):
        return orjson.dumps(payload, default=str).decode()
    return str(payload)


def _line_of(payload: Any) -> str:
    """Línea del payload rechazado, si es un objeto con ``line``."""
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = orjson.loads(payload)
        except orjson.JSONDecodeError:
            return ""
    if isinstance(payload, dict) and isinstance(payload.get("line"), str):
        return payload["line"]
    return ""


class DeadLetterQueue:
    """DLQ sobre Redis Streams (``XADD`` con ``MAXLEN ~``).

    Sin cliente Redis queda deshabilitada: los rechazos solo se registran
    en el log.
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        stream_name: str = "dlq:telemetry",
        max_len: int = 10000,
    ):
        self._redis = redis_client
        self.stream_name = stream_name
        self.max_len = max_len

        self._sent = 0
        self._errors = 0
        self._by_type: dict[str, int] = {}

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    @property
    def stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "stream": self.stream_name,
            "sent": self._sent,
            "send_errors": self._errors,
            "by_type": dict(self._by_type),
        }

    def send(
        self,
        payload: Any,
        error: str,
        error_type: str,
        topic: Optional[str] = None,
        source: str = "mqtt",
    ) -> bool:
        """Guarda un payload rechazado.

        Args:
            payload: Payload original (bytes, dict o texto)
            error: Motivo del rechazo
            error_type: "invalid_json" o "validation_error"
            topic: Topic MQTT de origen

        Returns:
            True si quedó en el stream.
        """
        text = _payload_text(payload)
        if not self.enabled:
            logger.warning("[DLQ] Disabled, dropping %s from topic=%s: %s", error_type, topic, error)
            return False

        entry = {
            "payload": text[:PAYLOAD_LIMIT],
            "error": str(error)[:ERROR_LIMIT],
            "error_type": error_type,
            "line": _line_of(payload),
            "topic": topic or "",
            "source": source,
            "timestamp": str(time.time()),
        }

        try:
            self._redis.xadd(self.stream_name, entry, maxlen=self.max_len, approximate=True)
        except redis.RedisError as e:
            self._errors += 1
            logger.error("[DLQ] Failed to store %s from topic=%s: %s", error_type, topic, e)
            return False

        self._sent += 1
        self._by_type[error_type] = self._by_type.get(error_type, 0) + 1
        logger.info("[DLQ] Stored %s line=%s topic=%s", error_type, entry["line"] or "-", topic)
        return True

    def get_recent(self, count: int = 10) -> list[dict]:
        """Últimos rechazos, más reciente primero."""
        if not self.enabled:
            return []

        try:
            entries = self._redis.xrevrange(self.stream_name, count=count)
        except redis.RedisError as e:
            logger.error("[DLQ] Failed to read %s: %s", self.stream_name, e)
            return []

        def _text(value):
            return value.decode() if isinstance(value, bytes) else value

        return [
            {"id": _text(entry_id), **{_text(k): _text(v) for k, v in fields.items()}}
            for entry_id, fields in entries
        ]


def create_dead_letter_queue(settings: "Settings") -> DeadLetterQueue:
    """DLQ desde la configuración. Sin REDIS_URL queda deshabilitada."""
    if not settings.redis_url:
        logger.info("[DLQ] REDIS_URL not set, dead-letter queue disabled")
        return DeadLetterQueue(None)

    client = redis.Redis.from_url(settings.redis_url, socket_timeout=5.0, socket_connect_timeout=5.0)
    logger.info("[DLQ] Using stream %s at %s", settings.dlq_stream, settings.redis_url.split("@")[-1])
    return DeadLetterQueue(client, stream_name=settings.dlq_stream, max_len=settings.dlq_max_len)
