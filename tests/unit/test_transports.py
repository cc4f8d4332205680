"""Transport tests."""

import pytest

from datachoreo.contracts import RunNotice
from datachoreo.transports.inmemory import InMemoryTransport
from datachoreo.transports.redis import RedisTransport


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    transport = InMemoryTransport()
    await transport.publish("runs", RunNotice(run_id="r1", tenant_id="t", reason="triggered"))
    assert transport.pending("runs") == 1

    received = []
    async for raw_msg, notice in transport.subscribe("runs"):
        received.append(notice)
        await transport.ack(raw_msg)
        break

    assert received[0].run_id == "r1"
    assert received[0].reason == "triggered"
    assert transport.pending("runs") == 0


@pytest.mark.asyncio
async def test_inmemory_subscribe_respects_lifespan():
    transport = InMemoryTransport()
    received = [n async for _, n in transport.subscribe("runs", lifespan=0.1)]
    assert received == []


def test_notice_json_round_trip():
    notice = RunNotice(run_id="r1", tenant_id="t", metadata={"step": 2})
    assert RunNotice.from_json(notice.to_json()) == notice


def test_redis_transport_init():
    transport = RedisTransport(host="redis.internal", port=6380)
    assert transport.host == "redis.internal"
    assert transport.port == 6380
    assert transport._redis is None
