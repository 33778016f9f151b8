import asyncio
import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional, Set

from .logs import json_log

PING_INTERVAL = 25.0


class EventHub:
    """Fan-out of gateway and lifecycle events to live subscribers. Slow subscribers drop events."""

    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._subscribers: Set["asyncio.Queue[Dict[str, Any]]"] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> "asyncio.Queue[Dict[str, Any]]":
        queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[Dict[str, Any]]"):
        self._subscribers.discard(queue)

    def broadcast(self, event: Dict[str, Any]):
        if "timestamp" not in event:
            event = {**event, "timestamp": datetime.utcnow().isoformat() + "Z"}
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                json_log("event_dropped", type=event.get("type"), level=logging.DEBUG)


async def sse_stream(hub: EventHub, is_disconnected=None, ping_interval: float = PING_INTERVAL, subscription: Optional["asyncio.Queue[Dict[str, Any]]"] = None) -> AsyncIterator[str]:
    """Server-Sent Events framing for one subscriber, with a keep-alive comment while idle."""
    queue = subscription or hub.subscribe()
    try:
        yield "event: connected\ndata: {}\n\n"
        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=ping_interval)
            except asyncio.TimeoutError:
                yield ": ping\n\n"
                continue
            yield f"data: {json.dumps(event, default=str)}\n\n"
    finally:
        hub.unsubscribe(queue)
