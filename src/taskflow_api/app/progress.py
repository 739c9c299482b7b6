"""Realtime progress channel.

Events are published to per-user channels and fanned out to whatever
subscribers are connected at that moment. Delivery is fire-and-forget: no
acknowledgement, no replay for late subscribers, and a full subscriber
buffer drops the event for that subscriber only.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Protocol

logger = logging.getLogger(__name__)

PROGRESS_EVENT_NAME = "task:progress"

Message = tuple[str, dict[str, Any]]


def channel_for_user(user_id: str) -> str:
    return f"user:{user_id}"


class ProgressPublisher(Protocol):
    async def publish(self, channel: str, event_name: str, payload: dict[str, Any]) -> int: ...


class ProgressHub:
    """In-process publish/subscribe hub backed by one asyncio.Queue per subscriber."""

    def __init__(self, *, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._channels: dict[str, set[asyncio.Queue[Message]]] = defaultdict(set)

    def subscribe(self, channel: str) -> asyncio.Queue[Message]:
        queue: asyncio.Queue[Message] = asyncio.Queue(maxsize=self.queue_size)
        self._channels[channel].add(queue)
        logger.debug("progress_hub event=subscribe channel=%s", channel)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue[Message]) -> None:
        subscribers = self._channels.get(channel)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._channels[channel]
        logger.debug("progress_hub event=unsubscribe channel=%s", channel)

    @asynccontextmanager
    async def subscription(self, channel: str) -> AsyncIterator[asyncio.Queue[Message]]:
        queue = self.subscribe(channel)
        try:
            yield queue
        finally:
            self.unsubscribe(channel, queue)

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    async def publish(self, channel: str, event_name: str, payload: dict[str, Any]) -> int:
        """Deliver to current subscribers; return how many received the event."""
        delivered = 0
        for queue in list(self._channels.get(channel, ())):
            try:
                queue.put_nowait((event_name, payload))
            except asyncio.QueueFull:
                logger.warning(
                    "progress_hub event=dropped channel=%s event_name=%s reason=queue_full",
                    channel,
                    event_name,
                )
                continue
            delivered += 1
        return delivered
