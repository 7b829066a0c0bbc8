import asyncio
import json
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from libtrack.core.config import settings
from libtrack.services.notifications import EventHub, event_hub
from libtrack.utils import json_default

logger = logging.getLogger(__name__)

router = APIRouter()


async def _forward(request: Request, hub: EventHub) -> AsyncIterator[str]:
    """Relay hub broadcasts (PENALTY_PAID, BOOK_RETURNED, ...) to one admin console as SSE."""
    async with hub.subscribe() as queue:
        logger.info(f"[Events] Admin console subscribed ({hub.subscriber_count} active).")
        yield f"data: {json.dumps({'type': 'connected'})}\n\n"
        while not await request.is_disconnected():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=settings.STREAM_KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield f"data: {json.dumps(event, default=json_default)}\n\n"
    logger.info("[Events] Admin console unsubscribed.")


@router.get("/events")
async def events(request: Request):
    return StreamingResponse(
        _forward(request, event_hub),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )
