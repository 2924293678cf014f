import asyncio
import json

import pytest

from spark.domain.chat.bus import ChatBus


@pytest.mark.asyncio
async def test_own_echoes_and_malformed_payloads_are_dropped(fake_redis):
    bus = ChatBus(fake_redis, node_id="node-a")
    seen = []

    async def _handler(envelope):
        seen.append(envelope)

    bus.bind(_handler)
    await bus.handle_raw(bus.envelope("message:new", {}, conversation_id="c1").model_dump_json())
    await bus.handle_raw("{broken")
    await bus.handle_raw(json.dumps({"event": "message:new"}))
    await bus.handle_raw(json.dumps({"origin": "node-b", "event": "conversation:join"}))
    assert seen == []

    await bus.handle_raw(json.dumps({"origin": "node-b", "event": "message:new", "conversation_id": "c1"}).encode())
    assert [envelope.origin for envelope in seen] == ["node-b"]


@pytest.mark.asyncio
async def test_handler_failure_does_not_escape(fake_redis):
    bus = ChatBus(fake_redis, node_id="node-a")

    async def _handler(envelope):
        raise RuntimeError("boom")

    bus.bind(_handler)
    await bus.handle_raw(json.dumps({"origin": "node-b", "event": "user:online", "user_id": "u1"}))


@pytest.mark.asyncio
async def test_subscriptions_are_tracked_per_conversation(fake_redis):
    bus = ChatBus(fake_redis, node_id="node-a")
    await bus.subscribe("c1")
    await bus.subscribe("c1")
    assert bus.is_subscribed("c1")
    await bus.unsubscribe("c1")
    await bus.unsubscribe("c1")
    assert not bus.is_subscribed("c1")


@pytest.mark.asyncio
async def test_listener_delivers_published_envelopes(fake_redis):
    receiver = ChatBus(fake_redis, node_id="node-b", poll_timeout=0.05)
    sender = ChatBus(fake_redis, node_id="node-a")
    received = []

    async def _handler(envelope):
        received.append(envelope)

    receiver.bind(_handler)
    await receiver.subscribe("c1")
    await receiver.start()
    try:
        await asyncio.sleep(0.05)
        await sender.publish_conversation("c1", sender.envelope("message:new", {"n": 1}, conversation_id="c1", message_id="m1"))
        for _ in range(100):
            if received:
                break
            await asyncio.sleep(0.02)
    finally:
        await receiver.stop()
    assert [envelope.message_id for envelope in received] == ["m1"]
    assert received[0].data == {"n": 1}
