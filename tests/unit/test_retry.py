import asyncio

import pytest

from stepstream.utils.retry import compute_backoff, is_transient_error, schedule_retry


def test_backoff_doubles_per_attempt():
    assert [compute_backoff(n, base=1.0) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
    assert compute_backoff(1, base=0) == 0


def test_backoff_jitter_is_bounded():
    for _ in range(20):
        delay = compute_backoff(2, base=0.5, jitter=0.25)
        assert 1.0 <= delay <= 1.25


@pytest.mark.asyncio
async def test_schedule_retry_sleeps_for_backoff(monkeypatch):
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    await schedule_retry(3, base=0.1)
    await schedule_retry(1, base=0)
    assert delays == [pytest.approx(0.4)]


@pytest.mark.parametrize(
    "error, expected",
    [
        (ConnectionError("reset"), True),
        (asyncio.TimeoutError(), True),
        (RuntimeError("Rate limit exceeded (429)"), True),
        (RuntimeError("ECONNRESET while streaming"), True),
        (ValueError("invalid schema"), False),
        ("network unreachable", True),
    ],
)
def test_is_transient_error(error, expected):
    assert is_transient_error(error) is expected
