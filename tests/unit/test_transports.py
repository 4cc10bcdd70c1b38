"""Transport tests."""

import pytest

from flowcore.models import EventEnvelope, Payload
from flowcore.transports.inmemory import InMemoryTransport


def _envelope(event_name="Submit"):
    return EventEnvelope(
        tenant="acme",
        execution_id="exec-123",
        event_name=event_name,
        payload=Payload(data={"test": "data"}),
    )


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()

    await transport.publish("test_topic", _envelope())

    message_received = False
    async for raw_msg, received in transport.subscribe("test_topic"):
        assert received.execution_id == "exec-123"
        assert received.payload.data["test"] == "data"

        await transport.ack(raw_msg)
        message_received = True
        break

    assert message_received
    assert transport.pending("test_topic") == 0


@pytest.mark.asyncio
async def test_inmemory_transport_nack_requeues():
    transport = InMemoryTransport(poll_interval=0.01)
    await transport.publish("events", _envelope("Submit"))

    async for raw_msg, _ in transport.subscribe("events"):
        await transport.nack(raw_msg, requeue=True)
        break
    assert transport.pending("events") == 1

    async for raw_msg, envelope in transport.subscribe("events"):
        assert envelope.event_name == "Submit"
        await transport.nack(raw_msg, requeue=False)
        break
    assert transport.pending("events") == 0


@pytest.mark.asyncio
async def test_inmemory_transport_skips_malformed_messages():
    transport = InMemoryTransport(poll_interval=0.01)
    transport._queues["events"].append('{"tenant": "acme"}')
    await transport.publish("events", _envelope("Review"))

    async for raw_msg, envelope in transport.subscribe("events"):
        assert envelope.event_name == "Review"
        await transport.ack(raw_msg)
        break
    assert transport.pending("events") == 0


@pytest.mark.asyncio
async def test_subscribe_stops_after_lifespan():
    transport = InMemoryTransport(poll_interval=0.01)
    received = [m async for m in transport.subscribe("quiet", lifespan=0.05)]
    assert received == []


def test_envelope_json_roundtrip():
    envelope = _envelope()
    assert EventEnvelope.from_json(envelope.to_json()) == envelope


def test_redis_transport_defaults():
    from flowcore.transports.redis import RedisTransport

    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379
    assert RedisTransport.queue_name("flowcore.events") == "flowcore:flowcore.events"
