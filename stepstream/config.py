from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis event channel."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class ChannelConfig(BaseModel):
    """Event channel configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class RetryConfig(BaseModel):
    """Retry budget and backoff for failed sessions."""

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    base_delay_seconds: float = Field(default=DEFAULT_RETRY_BASE_DELAY_SECONDS, ge=0)
    jitter_seconds: float = Field(default=0.0, ge=0)


class StepStreamConfig(BaseModel):
    """Top-level configuration model."""

    channel: ChannelConfig = ChannelConfig()
    database_url: Optional[str] = None
    retry: RetryConfig = RetryConfig()
    timeout_seconds: int = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)


def load_config(path: Optional[str] = None) -> StepStreamConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPSTREAM_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPSTREAM_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepStreamConfig(**data)
    else:
        config = StepStreamConfig()

    env_db_url = os.getenv("STEPSTREAM_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_channel = os.getenv("STEPSTREAM_CHANNEL")
    if env_channel:
        config.channel.backend = env_channel.lower()
    return config
