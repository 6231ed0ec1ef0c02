"""Hub de suscriptores para eventos OEE.

Los listeners se registran con un patrón de topic y reciben eventos
``{type, timestamp, topic, payload}``. La entrega es síncrona, en orden de
registro, y el fallo de un listener no afecta a los demás.

Patrones (niveles separados por ``/``):
- ``*`` o ``+``: exactamente un nivel
- ``#``: el resto de niveles (incluido ninguno)
- cualquier otro valor: coincidencia literal
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..metrics.ingestion_metrics import HUB_EVENTS_PUBLISHED, HUB_LISTENER_ERRORS, HUB_SUBSCRIBERS
from ..timeutils import utc_now, to_iso

logger = logging.getLogger(__name__)

HEARTBEAT_TOPIC = "system/heartbeat"

Listener = Callable[[dict[str, Any]], None]


def topic_matches(pattern: str, topic: str) -> bool:
    """Indica si ``topic`` coincide con ``pattern``."""
    pattern_levels = pattern.split("/")
    topic_levels = topic.split("/")

    for i, level in enumerate(pattern_levels):
        if level == "#":
            return True
        if i >= len(topic_levels):
            return False
        if level in ("*", "+"):
            continue
        if level != topic_levels[i]:
            return False

    return len(pattern_levels) == len(topic_levels)


@dataclass
class Subscription:
    """Handle de suscripción devuelto por ``SubscriberHub.subscribe``."""
    id: int
    pattern: str
    listener: Listener
    active: bool = True


class SubscriberHub:
    """Fan-out de eventos a listeners por patrón de topic."""

    def __init__(self, heartbeat_interval: float = 10.0):
        self.heartbeat_interval = heartbeat_interval
        self._ids = itertools.count(1)
        self._subscriptions: dict[str, dict[int, Subscription]] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None

        self._published = 0
        self._delivered = 0
        self._listener_errors = 0

    @property
    def subscriber_count(self) -> int:
        return sum(len(subs) for subs in self._subscriptions.values())

    @property
    def stats(self) -> dict:
        return {
            "subscribers": self.subscriber_count,
            "patterns": len(self._subscriptions),
            "published": self._published,
            "delivered": self._delivered,
            "listener_errors": self._listener_errors,
            "heartbeat_running": self._heartbeat_task is not None and not self._heartbeat_task.done(),
        }

    def subscribe(self, pattern: str, listener: Listener) -> Subscription:
        """Registra un listener para un patrón y devuelve su handle."""
        if not pattern:
            raise ValueError("pattern must not be empty")

        handle = Subscription(id=next(self._ids), pattern=pattern, listener=listener)
        self._subscriptions.setdefault(pattern, {})[handle.id] = handle
        HUB_SUBSCRIBERS.set(self.subscriber_count)
        logger.debug("[HUB] Subscribed id=%d pattern=%s", handle.id, pattern)
        return handle

    def unsubscribe(self, handle: Subscription) -> bool:
        """Elimina la suscripción. Idempotente: False si ya no estaba."""
        handle.active = False
        subs = self._subscriptions.get(handle.pattern)
        if not subs or subs.pop(handle.id, None) is None:
            return False

        if not subs:
            del self._subscriptions[handle.pattern]
        HUB_SUBSCRIBERS.set(self.subscriber_count)
        logger.debug("[HUB] Unsubscribed id=%d pattern=%s", handle.id, handle.pattern)
        return True

    def publish(self, topic: str, payload: Any, event_type: Optional[str] = None) -> int:
        """Entrega un evento a todos los listeners que coinciden.

        Returns:
            Número de listeners que recibieron el evento sin error.
        """
        event = {
            "type": event_type or topic.split("/")[-1],
            "timestamp": to_iso(utc_now()),
            "topic": topic,
            "payload": payload,
        }

        matching = sorted(
            (
                sub
                for pattern, subs in self._subscriptions.items()
                if topic_matches(pattern, topic)
                for sub in subs.values()
            ),
            key=lambda sub: sub.id,
        )

        self._published += 1
        HUB_EVENTS_PUBLISHED.inc()

        delivered = 0
        for sub in matching:
            # Un listener anterior pudo cancelar esta suscripción
            if not sub.active:
                continue
            try:
                sub.listener(copy.deepcopy(event))
                delivered += 1
            except Exception:
                self._listener_errors += 1
                HUB_LISTENER_ERRORS.inc()
                logger.exception(
                    "[HUB] Listener id=%d failed on topic=%s", sub.id, topic
                )

        self._delivered += delivered
        return delivered

    async def start(self) -> None:
        """Inicia el heartbeat periódico."""
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("[HUB] Heartbeat started every %.1fs", self.heartbeat_interval)

    async def stop(self) -> None:
        """Detiene el heartbeat y elimina todas las suscripciones."""
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        for subs in self._subscriptions.values():
            for sub in subs.values():
                sub.active = False
        self._subscriptions.clear()
        HUB_SUBSCRIBERS.set(0)
        logger.info("[HUB] Stopped. published=%d delivered=%d", self._published, self._delivered)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.publish(
                HEARTBEAT_TOPIC,
                {"status": "alive", "subscribers": self.subscriber_count},
                event_type="heartbeat",
            )
