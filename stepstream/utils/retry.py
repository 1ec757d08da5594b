from __future__ import annotations

import asyncio
import random

_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "econnreset",
    "econnrefused",
    "rate limit",
    "429",
    "503",
    "temporarily unavailable",
)


def compute_backoff(attempt: int, base: float = 1.0, jitter: float = 0.0) -> float:
    """Compute exponential backoff with jitter.

    The first retry waits ``base`` seconds and each further one doubles it.
    """
    delay = base * 2 ** max(attempt - 1, 0)
    return delay + random.uniform(0, jitter) if jitter else delay


async def schedule_retry(attempt: int, base: float = 1.0, jitter: float = 0.0) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base, jitter)
    if delay > 0:
        await asyncio.sleep(delay)


def is_transient_error(error: BaseException | str) -> bool:
    """Whether an error looks like a temporary runtime or network fault."""
    if isinstance(error, (asyncio.TimeoutError, ConnectionError, TimeoutError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)
