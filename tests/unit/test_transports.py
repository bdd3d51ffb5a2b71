"""Transport tests."""

import asyncio

import pytest

from waypoint.contracts import RunMessage, TraceCarrier
from waypoint.transports.inmemory import InMemoryTransport


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()
    carrier = TraceCarrier(baggage={"workflow": "renewal"})
    message = RunMessage(
        run_id="run-123",
        workflow_name="renewal",
        reason="resume",
        trace_carrier=carrier,
    )

    await transport.publish("runs", message)
    assert transport.pending("runs") == 1

    message_received = False
    async for raw_msg, received in transport.subscribe("runs"):
        assert received.run_id == "run-123"
        assert received.reason == "resume"
        assert received.trace_carrier.trace_id == carrier.trace_id
        await transport.ack(raw_msg)
        message_received = True
        break

    assert message_received
    assert transport.pending("runs") == 0


@pytest.mark.asyncio
async def test_inmemory_transport_preserves_order_and_lifespan():
    transport = InMemoryTransport()
    for i in range(3):
        await transport.publish("runs", RunMessage(run_id=f"r{i}", workflow_name="wf"))

    seen = []
    async for _, received in transport.subscribe("runs", lifespan=0.1):
        seen.append(received.run_id)
    assert seen == ["r0", "r1", "r2"]


@pytest.mark.asyncio
async def test_inmemory_transport_topics_are_isolated():
    transport = InMemoryTransport()
    await transport.publish("a", RunMessage(run_id="r-a", workflow_name="wf"))

    async def _first(topic):
        async for _, received in transport.subscribe(topic, lifespan=0.05):
            return received
        return None

    assert await asyncio.wait_for(_first("b"), 1) is None
    assert (await _first("a")).run_id == "r-a"


def test_redis_transport_defaults():
    from waypoint.transports.redis import RedisTransport

    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379
    assert transport._queue_name("runs") == "waypoint:runs"


@pytest.mark.asyncio
async def test_inmemory_nack_requeues_at_head():
    transport = InMemoryTransport()
    await transport.publish("runs", RunMessage(run_id="first", workflow_name="wf"))
    await transport.publish("runs", RunMessage(run_id="second", workflow_name="wf"))

    seen = []
    nacked = False
    async for raw, received in transport.subscribe("runs", lifespan=0.1):
        seen.append(received.run_id)
        if not nacked:
            nacked = True
            await transport.nack(raw)
        else:
            await transport.ack(raw)
    assert seen == ["first", "first", "second"]


@pytest.mark.asyncio
async def test_inmemory_nack_without_requeue_drops():
    transport = InMemoryTransport()
    await transport.publish("runs", RunMessage(run_id="r", workflow_name="wf"))
    async for raw, _ in transport.subscribe("runs", lifespan=0.05):
        await transport.nack(raw, requeue=False)
    assert transport.pending("runs") == 0


class FakeRedis:
    def __init__(self):
        self.lists = {}

    async def lpush(self, name, value):
        self.lists.setdefault(name, []).insert(0, value)

    async def rpush(self, name, value):
        self.lists.setdefault(name, []).append(value)

    async def brpop(self, name, timeout=0):
        items = self.lists.get(name)
        if not items:
            await asyncio.sleep(0.01)
            return None
        return name, items.pop()


@pytest.mark.asyncio
async def test_redis_transport_round_trip_and_nack():
    from waypoint.transports.redis import RedisTransport

    transport = RedisTransport(prefix="test")
    transport._redis = FakeRedis()
    await transport.publish("runs", RunMessage(run_id="r1", workflow_name="wf"))
    await transport.publish("runs", RunMessage(run_id="r2", workflow_name="wf"))
    transport._redis.lists["test:runs"].insert(0, "not json")

    seen = []
    async for raw, received in transport.subscribe("runs", lifespan=0.2):
        seen.append(received.run_id)
        if seen == ["r1"]:
            await transport.nack(raw)
        else:
            await transport.ack(raw)
    # the malformed entry is dropped
    assert seen == ["r1", "r1", "r2"]
