"""Base event channel interface for session streaming."""

from __future__ import annotations

import abc
from typing import AsyncIterator

from ..contracts import StreamEvent


def step_topic(step_id: int) -> str:
    """Channel topic carrying the events of one workflow step."""
    return f"step:{step_id}"


class Subscription(AsyncIterator[StreamEvent], metaclass=abc.ABCMeta):
    """Handle for one channel subscription.

    Iterating yields events in publish order. After :meth:`close` the
    iterator finishes once the events already delivered are consumed.
    """

    def __aiter__(self) -> "Subscription":
        return self

    @abc.abstractmethod
    async def __anext__(self) -> StreamEvent:
        raise NotImplementedError

    @property
    @abc.abstractmethod
    def closed(self) -> bool:
        """Whether :meth:`close` has been called."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Dispose the subscription. Safe to call more than once."""
        raise NotImplementedError


class BaseEventChannel(metaclass=abc.ABCMeta):
    """Abstract ordered, per-topic event channel."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, event: StreamEvent) -> None:
        """Send an event to every current subscriber of a topic."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(self, topic: str) -> Subscription:
        """Start receiving events published to ``topic`` from now on."""
        raise NotImplementedError
