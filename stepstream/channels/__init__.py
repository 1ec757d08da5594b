"""Event channel factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepStreamConfig, load_config
from .base import BaseEventChannel, Subscription, step_topic
from .inmemory import InMemoryEventChannel


def get_channel(
    backend: Optional[str] = None, config: Optional[StepStreamConfig] = None
) -> BaseEventChannel:
    """Factory function to get the configured event channel."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("STEPSTREAM_CHANNEL")
        or config.channel.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryEventChannel()
    elif backend == "redis":
        from .redis import RedisEventChannel

        redis_conf = config.channel.redis
        return RedisEventChannel(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported channel backend: {backend}")


__all__ = [
    "BaseEventChannel",
    "InMemoryEventChannel",
    "Subscription",
    "get_channel",
    "step_topic",
]
