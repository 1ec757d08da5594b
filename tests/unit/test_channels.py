"""Event channel tests."""

import asyncio
import uuid

import pytest

from stepstream.channels import get_channel, step_topic
from stepstream.channels.inmemory import InMemoryEventChannel
from stepstream.config import StepStreamConfig
from stepstream.contracts import TextDelta


@pytest.mark.asyncio
async def test_inmemory_channel_fans_out_in_order():
    channel = InMemoryEventChannel()
    first = await channel.subscribe("step:1")
    second = await channel.subscribe("step:1")

    for i in range(3):
        await channel.publish("step:1", TextDelta(session_id="s", delta=str(i)))
    await first.close()
    await second.close()

    assert [e.delta async for e in first] == ["0", "1", "2"]
    assert [e.delta async for e in second] == ["0", "1", "2"]
    assert channel.subscriber_count("step:1") == 0


@pytest.mark.asyncio
async def test_inmemory_channel_only_delivers_after_subscribe():
    channel = InMemoryEventChannel()
    await channel.publish("step:1", TextDelta(session_id="s", delta="early"))
    subscription = await channel.subscribe("step:1")
    await channel.publish("step:1", TextDelta(session_id="s", delta="late"))
    await channel.publish("step:2", TextDelta(session_id="s", delta="other topic"))
    await subscription.close()
    await channel.publish("step:1", TextDelta(session_id="s", delta="after close"))

    assert [e.delta async for e in subscription] == ["late"]


@pytest.mark.asyncio
async def test_inmemory_channel_drops_malformed_payloads():
    channel = InMemoryEventChannel()
    subscription = await channel.subscribe("t")
    await channel.publish("t", {"type": "text_delta", "sessionId": "s"})
    await channel.publish("t", "{not json")
    await channel.publish("t", {"type": "text_delta", "sessionId": "s", "delta": "ok"})
    await subscription.close()

    assert [e.delta async for e in subscription] == ["ok"]


@pytest.mark.asyncio
async def test_subscription_iteration_waits_for_events():
    channel = InMemoryEventChannel()
    subscription = await channel.subscribe("t")

    async def consume():
        return [e.delta async for e in subscription]

    task = asyncio.create_task(consume())
    await asyncio.sleep(0)
    await channel.publish("t", TextDelta(session_id="s", delta="a"))
    await subscription.close()
    await subscription.close()
    assert await task == ["a"]


def test_step_topic():
    assert step_topic(12) == "step:12"


def test_get_channel_defaults_to_inmemory(monkeypatch):
    monkeypatch.delenv("STEPSTREAM_CHANNEL", raising=False)
    assert isinstance(get_channel(config=StepStreamConfig()), InMemoryEventChannel)
    with pytest.raises(ValueError):
        get_channel("carrier-pigeon", config=StepStreamConfig())


@pytest.mark.asyncio
async def test_redis_channel_roundtrip():
    from stepstream.channels.redis import RedisEventChannel

    channel = RedisEventChannel()
    try:
        await channel.connect()
    except Exception:
        pytest.skip("Redis server not available")

    topic = f"step:{uuid.uuid4()}"
    try:
        subscription = await channel.subscribe(topic)
        await channel.publish(topic, TextDelta(session_id="s", delta="hello"))
        received = await asyncio.wait_for(subscription.__anext__(), timeout=5)
        assert received == TextDelta(session_id="s", delta="hello")
        await subscription.close()
        assert [e async for e in subscription] == []
    finally:
        await channel.disconnect()
