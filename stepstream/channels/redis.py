"""Redis pub/sub event channel for cross-process streaming."""

from __future__ import annotations

import logging
from typing import Any, Optional

import redis.asyncio as redis

from ..contracts import StreamEvent, parse_event
from .base import BaseEventChannel, Subscription

logger = logging.getLogger(__name__)


def _channel_name(topic: str) -> str:
    return f"stepstream:{topic}"


class RedisSubscription(Subscription):
    """Iterate events from one Redis pub/sub channel."""

    def __init__(self, pubsub: Any, topic: str, poll_interval: float = 0.1) -> None:
        self._pubsub = pubsub
        self._topic = topic
        self._poll_interval = poll_interval
        self._closed = False
        self._finished = False
        self._reading = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        self._reading = True
        try:
            while True:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=0 if self._closed else self._poll_interval,
                )
                if message is not None:
                    event = parse_event(message["data"])
                    if event is not None:
                        return event
                    continue
                if self._closed:
                    await self._release()
                    raise StopAsyncIteration
        finally:
            self._reading = False

    async def _release(self) -> None:
        if self._finished:
            return
        self._finished = True
        await self._pubsub.unsubscribe(_channel_name(self._topic))
        await self._pubsub.aclose()
        logger.debug(f"Unsubscribed from {self._topic}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # an active reader drains what is buffered and releases the connection
        if not self._reading:
            await self._release()


class RedisEventChannel(BaseEventChannel):
    """Redis-based event channel for distributed streaming."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: StreamEvent) -> None:
        """Publish an event to the topic's pub/sub channel."""
        if not self._redis:
            await self.connect()
        await self._redis.publish(_channel_name(topic), event.to_json())

    async def subscribe(self, topic: str) -> RedisSubscription:
        """Subscribe to a topic. Returns once the subscription is registered."""
        if not self._redis:
            await self.connect()
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(_channel_name(topic))
        logger.debug(f"Subscribed to {topic}")
        return RedisSubscription(pubsub, topic)
