"""In-memory event channel for tests and single-process use."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Union

from ..contracts import StreamEvent, parse_event
from .base import BaseEventChannel, Subscription

logger = logging.getLogger(__name__)

_CLOSED = object()


class InMemorySubscription(Subscription):
    def __init__(self, channel: "InMemoryEventChannel", topic: str) -> None:
        self._channel = channel
        self._topic = topic
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._finished = False

    def _deliver(self, event: StreamEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    @property
    def closed(self) -> bool:
        return self._closed

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel._remove(self._topic, self)
        self._queue.put_nowait(_CLOSED)


class InMemoryEventChannel(BaseEventChannel):
    """Fan out published events to in-process subscribers."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[InMemorySubscription]] = defaultdict(list)

    async def publish(
        self, topic: str, event: Union[StreamEvent, Dict[str, Any], str]
    ) -> None:
        """Publish an event. Raw payloads are parsed and dropped if malformed."""
        if isinstance(event, (dict, str)):
            parsed = parse_event(event)
            if parsed is None:
                return
            event = parsed
        for subscription in list(self._subscribers.get(topic, ())):
            subscription._deliver(event)

    async def subscribe(self, topic: str) -> InMemorySubscription:
        subscription = InMemorySubscription(self, topic)
        self._subscribers[topic].append(subscription)
        logger.debug(f"Subscribed to {topic}")
        return subscription

    def _remove(self, topic: str, subscription: InMemorySubscription) -> None:
        subscribers = self._subscribers.get(topic)
        if subscribers and subscription in subscribers:
            subscribers.remove(subscription)
            if not subscribers:
                del self._subscribers[topic]
        logger.debug(f"Unsubscribed from {topic}")

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))
