"""Stream SSE de eventos del SubscriberHub."""

from __future__ import annotations

import asyncio
import logging

import orjson
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from ..events.hub import SubscriberHub
from ..service import OEEDataService
from ..timeutils import to_iso, utc_now
from .deps import get_service

router = APIRouter(tags=["events"])
logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0
QUEUE_MAX = 1000


def _sse(event: dict) -> bytes:
    return b"data: " + orjson.dumps(event) + b"\n\n"


async def event_stream(hub: SubscriberHub, pattern: str, request: Request):
    """Suscribe una cola al hub y la vacía como SSE hasta que el cliente cierra."""
    queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_MAX)

    def _enqueue(event: dict) -> None:
        if queue.full():
            logger.warning("[SSE] Client queue full, dropping %s", event.get("topic"))
            return
        queue.put_nowait(event)

    handle = hub.subscribe(pattern, _enqueue)
    try:
        yield _sse({
            "type": "connected",
            "timestamp": to_iso(utc_now()),
            "topic": "system/connected",
            "payload": {"pattern": pattern},
        })
        while not await request.is_disconnected():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield b": keepalive\n\n"
                continue
            yield _sse(event)
    finally:
        hub.unsubscribe(handle)
        logger.info("[SSE] Client disconnected (subscription %d)", handle.id)


@router.get("/events")
async def events(
    request: Request,
    pattern: str = Query("#", description="Topic pattern (*, + and # wildcards)"),
    service: OEEDataService = Depends(get_service),
):
    return StreamingResponse(
        event_stream(service.hub, pattern, request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
