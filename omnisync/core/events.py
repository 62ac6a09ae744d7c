"""
Per-user progress event publisher.

Observers subscribe to their own channel and receive frames of the form
``{"type": ..., "data": ..., "timestamp": ...}``. Delivery is best-effort
and at-most-once: each subscriber has a bounded queue, and an event is
dropped for a subscriber whose queue is full, or entirely when the user has
no subscribers.

With ``REDIS_URL`` set, frames are fanned out through Redis pub/sub so the
worker process can reach observers connected to the API.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from uuid import UUID

from omnisync.core.config import settings
from omnisync.core.redis_client import get_async_redis_client

logger = logging.getLogger(__name__)

REDIS_CHANNEL = "omnisync:events"


def make_frame(event_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "type": event_type,
        "data": data or {},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def connection_frame(user_id: UUID | str) -> dict[str, Any]:
    """First frame on every stream; carries the client reconnect policy."""
    return make_frame(
        "connection",
        {
            "userId": str(user_id),
            "retry_ms": settings.EVENT_RETRY_BASE_MS,
            "retry": {
                "initialMs": settings.EVENT_RETRY_BASE_MS,
                "maxMs": settings.EVENT_RETRY_MAX_MS,
                "multiplier": 2,
            },
            "heartbeatSeconds": settings.EVENT_HEARTBEAT_SECONDS,
        },
    )


class EventBroker:
    """Registry of per-user subscriber queues."""

    def __init__(self, queue_size: int | None = None):
        self.queue_size = queue_size or settings.EVENT_QUEUE_SIZE
        # user_id -> set of subscriber queues
        self._channels: dict[str, set[asyncio.Queue]] = {}
        self._listener: asyncio.Task | None = None
        self.dropped = 0

    def subscribe(self, user_id: UUID | str) -> asyncio.Queue:
        """Register a subscriber, creating the user's channel if needed."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._channels.setdefault(str(user_id), set()).add(queue)
        return queue

    def unsubscribe(self, user_id: UUID | str, queue: asyncio.Queue) -> None:
        """Remove a subscriber; the channel goes away with its last subscriber."""
        key = str(user_id)
        subscribers = self._channels.get(key)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._channels[key]

    def subscriber_count(self, user_id: UUID | str) -> int:
        return len(self._channels.get(str(user_id), ()))

    def channel_count(self) -> int:
        return len(self._channels)

    def deliver(self, user_id: UUID | str, frame: dict[str, Any]) -> int:
        """Hand a frame to local subscribers. Returns how many received it."""
        subscribers = self._channels.get(str(user_id))
        if not subscribers:
            self.dropped += 1
            return 0
        delivered = 0
        for queue in list(subscribers):
            try:
                queue.put_nowait(frame)
                delivered += 1
            except asyncio.QueueFull:
                self.dropped += 1
        return delivered

    async def publish(self, user_id: UUID | str, event_type: str, data: dict[str, Any] | None = None) -> None:
        """Publish an event to every observer of ``user_id``."""
        frame = make_frame(event_type, data)
        client = get_async_redis_client()
        if client is not None:
            try:
                await client.publish(
                    REDIS_CHANNEL,
                    json.dumps({"user_id": str(user_id), "frame": frame}, default=str),
                )
                return
            except Exception as e:
                logger.warning("Redis publish failed, delivering locally: %s", type(e).__name__)
        self.deliver(user_id, frame)

    async def _listen(self, client) -> None:
        pubsub = client.pubsub()
        await pubsub.subscribe(REDIS_CHANNEL)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    envelope = json.loads(message["data"])
                    self.deliver(envelope["user_id"], envelope["frame"])
                except (KeyError, TypeError, ValueError):
                    logger.warning("Dropping malformed event envelope")
        finally:
            await pubsub.unsubscribe(REDIS_CHANNEL)
            await pubsub.close()

    def start(self) -> None:
        """Start the Redis listener when Redis is configured."""
        client = get_async_redis_client()
        if client is None or self._listener is not None:
            return
        self._listener = asyncio.create_task(self._listen(client))
        logger.info("Progress events fan-out via Redis")

    async def stop(self) -> None:
        if self._listener is None:
            return
        self._listener.cancel()
        try:
            await self._listener
        except asyncio.CancelledError:
            pass
        self._listener = None


async def stream_events(
    user_id: UUID | str,
    heartbeat_seconds: float | None = None,
    event_broker: EventBroker | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Yield frames for one observer until the consumer stops iterating.

    Emits a ``connection`` frame first and a ``heartbeat`` frame after every
    idle ``heartbeat_seconds``.
    """
    target = event_broker or broker
    interval = heartbeat_seconds or settings.EVENT_HEARTBEAT_SECONDS
    queue = target.subscribe(user_id)
    try:
        yield connection_frame(user_id)
        while True:
            try:
                frame = await asyncio.wait_for(queue.get(), timeout=interval)
            except asyncio.TimeoutError:
                frame = make_frame("heartbeat", {})
            yield frame
    finally:
        target.unsubscribe(user_id, queue)


def to_ndjson(frame: dict[str, Any]) -> str:
    return json.dumps(frame, default=str) + "\n"


# Singleton instance
broker = EventBroker()


async def publish(user_id: UUID | str, event_type: str, data: dict[str, Any] | None = None) -> None:
    await broker.publish(user_id, event_type, data)
