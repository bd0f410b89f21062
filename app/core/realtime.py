"""
Real-time visitor hub.

Keeps, per website, the sessions seen within the last realtime window
(active visitors) and fans accepted events out to subscriber queues. A slow
subscriber loses events rather than holding up ingestion.

Ingestion only calls notify(). subscribe(), unsubscribe() and
active_visitors() are the read side for the dashboard's live view, which
runs outside this service.
"""

import asyncio
import time
import uuid
from collections import defaultdict

from app.config import get_settings

import structlog

logger = structlog.get_logger()

SUBSCRIBER_QUEUE_SIZE = 100


class RealtimeHub:
    def __init__(self, window_seconds: int = 300):
        self.window_seconds = window_seconds
        self._last_seen: dict[uuid.UUID, dict[uuid.UUID, float]] = defaultdict(dict)
        self._subscribers: dict[uuid.UUID, set[asyncio.Queue]] = defaultdict(set)

    def _prune(self, website_id: uuid.UUID, now: float):
        cutoff = now - self.window_seconds
        sessions = self._last_seen[website_id]
        for session_id in [s for s, seen in sessions.items() if seen < cutoff]:
            del sessions[session_id]

    async def notify(self, website_id: uuid.UUID, session_id: uuid.UUID, event: dict):
        now = time.monotonic()
        self._last_seen[website_id][session_id] = now
        self._prune(website_id, now)

        for queue in list(self._subscribers.get(website_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("realtime_subscriber_full", website_id=str(website_id))

    def active_visitors(self, website_id: uuid.UUID) -> int:
        self._prune(website_id, time.monotonic())
        return len(self._last_seen.get(website_id, {}))

    def subscribe(self, website_id: uuid.UUID) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers[website_id].add(queue)
        return queue

    def unsubscribe(self, website_id: uuid.UUID, queue: asyncio.Queue):
        self._subscribers.get(website_id, set()).discard(queue)


_hub: RealtimeHub | None = None


def get_hub() -> RealtimeHub:
    global _hub
    if _hub is None:
        _hub = RealtimeHub(get_settings().realtime_window_seconds)
    return _hub
