"""Server-Sent Events (SSE) endpoint for live reminder updates.

Each app owns one ``EventBus`` on ``app.state.event_bus``. While at least one
client of that app is connected, its service's reminder callback points at
the bus, so due reminders are shown by the connected UI. When the last client
disconnects the callback is cleared again and due reminders fall back to the
platform notifier.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncGenerator

from fastapi import APIRouter
from starlette.requests import Request
from starlette.responses import StreamingResponse

from medminder.reminders.models import DueReminder
from medminder.reminders.service import ReminderService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sse"])

# Sentinel object to signal generator shutdown
_SHUTDOWN = object()

KEEPALIVE_SECONDS = 30.0


class EventBus:
    """In-memory event bus: subscribers receive events via asyncio.Queue."""

    def __init__(self, maxsize: int = 256) -> None:
        self._maxsize = maxsize
        self._subscribers: list[asyncio.Queue] = []

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def broadcast(self, event_type: str, data: dict) -> None:
        """Push an event to all connected subscribers.

        Subscribers whose queue is full are dropped.
        """
        payload = {"type": event_type, "data": data, "timestamp": time.time()}
        dead: list[asyncio.Queue] = []
        for q in self._subscribers:
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                dead.append(q)
        for q in dead:
            self._subscribers.remove(q)

    def broadcast_reminder(self, reminder: DueReminder) -> None:
        self.broadcast("reminder_due", reminder.to_dict())

    def broadcast_refresh(self) -> None:
        self.broadcast("refresh", {})

    def shutdown(self) -> None:
        """Ask every open stream to finish."""
        for q in list(self._subscribers):
            try:
                q.put_nowait(_SHUTDOWN)
            except asyncio.QueueFull:
                self._subscribers.remove(q)


async def _event_generator(
    request: Request, service: ReminderService, bus: EventBus
) -> AsyncGenerator[str, None]:
    """Yield SSE-formatted events until the client disconnects."""
    queue = bus.subscribe()
    service.set_reminder_callback(bus.broadcast_reminder)
    try:
        yield f"event: connected\ndata: {json.dumps({'status': 'ok'})}\n\n"

        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                if event is _SHUTDOWN:
                    break
                yield f"event: {event['type']}\ndata: {json.dumps(event['data'])}\n\n"
            except TimeoutError:
                yield ": keepalive\n\n"
    finally:
        bus.unsubscribe(queue)
        if not bus:
            service.set_reminder_callback(None)
            logger.debug("Last event subscriber left; reminders fall back to notifications")


@router.get("/events")
async def sse_events(request: Request) -> StreamingResponse:
    """Server-Sent Events stream.

    Event types:
    - connected: Initial connection confirmation
    - reminder_due: A dose is due now (payload is the due reminder)
    - refresh: Adherence or reminder state changed; reload views
    """
    state = request.app.state
    return StreamingResponse(
        _event_generator(request, state.service, state.event_bus),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
