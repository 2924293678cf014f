import asyncio

import pytest

from spark.domain.chat.events import ChatError, ErrorCode
from spark.domain.chat.presence import PENDING_OFFLINE_KEY

CONV = "conv-ab"


@pytest.mark.asyncio
async def test_register_greets_the_connection(core, connect, wait_for):
    session, channel = await connect(core, "user-a")
    await wait_for(lambda: channel.events("connection:established"))
    greeting = channel.data("connection:established")[0]
    assert greeting["connection_id"] == session.connection_id
    assert greeting["user_id"] == "user-a"
    assert greeting["max_message_size"] == core.config.max_message_size
    assert core.registry.connection_count == 1


@pytest.mark.asyncio
async def test_connection_ceiling_per_user(build_core, connect):
    core = build_core(max_connections_per_user=2)
    await connect(core, "user-a")
    await connect(core, "user-a")
    with pytest.raises(ChatError) as exc:
        await connect(core, "user-a")
    assert exc.value.code is ErrorCode.MAX_CONNECTIONS
    assert len(core.registry.sessions_for_user("user-a")) == 2


@pytest.mark.asyncio
async def test_join_is_idempotent_and_subscribes_once(core, connect):
    session, _ = await connect(core, "user-a")
    assert await core.registry.join_conversation(session.connection_id, CONV, ("user-a", "user-b"))
    assert not await core.registry.join_conversation(session.connection_id, CONV, ("user-a", "user-b"))
    room = core.registry.room(CONV)
    assert room.member_connection_ids == {session.connection_id}
    assert core.bus.is_subscribed(CONV)


@pytest.mark.asyncio
async def test_join_requires_participation(core, connect):
    session, _ = await connect(core, "user-c")
    with pytest.raises(ChatError) as exc:
        await core.registry.join_conversation(session.connection_id, CONV, ("user-a", "user-b"))
    assert exc.value.code is ErrorCode.NOT_A_MEMBER
    assert core.registry.room(CONV) is None


@pytest.mark.asyncio
async def test_leave_without_join_is_not_a_member(core, connect):
    session, _ = await connect(core, "user-a")
    with pytest.raises(ChatError) as exc:
        await core.registry.leave_conversation(session.connection_id, CONV)
    assert exc.value.code is ErrorCode.NOT_A_MEMBER


@pytest.mark.asyncio
async def test_unregister_removes_every_index_and_unsubscribes(core, connect):
    session, _ = await connect(core, "user-a")
    await core.registry.join_conversation(session.connection_id, CONV, ("user-a", "user-b"))
    await session.close()
    await core.registry.unregister(session.connection_id)
    assert core.registry.get(session.connection_id) is None
    assert core.registry.room(CONV) is None
    assert not core.bus.is_subscribed(CONV)
    assert core.registry.sessions_for_user("user-a") == []
    assert await core.registry.unregister(session.connection_id) is None


@pytest.mark.asyncio
async def test_local_copy_is_queued_before_the_publish(core, connect, monkeypatch):
    session, _ = await connect(core, "user-a")
    await core.registry.join_conversation(session.connection_id, CONV, ("user-a", "user-b"))
    queued_at_publish = []

    async def _publish(conversation_id, envelope):
        queued_at_publish.append([frame.event for frame in session.queue._items])

    monkeypatch.setattr(core.bus, "publish_conversation", _publish)
    session.queue._items.clear()
    await core.registry.fan_out(CONV, "message:new", {"message": {"message_id": "m1"}}, message_id="m1", created_at_ms=1)
    assert queued_at_publish and "message:new" in queued_at_publish[0]


@pytest.mark.asyncio
async def test_remote_duplicate_is_dropped(core, connect, wait_for):
    session, channel = await connect(core, "user-b")
    await core.registry.join_conversation(session.connection_id, CONV, ("user-a", "user-b"))
    envelope = core.bus.envelope(
        "message:new",
        {"message": {"message_id": "m1"}},
        conversation_id=CONV,
        message_id="m1",
        created_at_ms=1,
    ).model_copy(update={"origin": "node-z"})
    await core.registry.handle_envelope(envelope)
    await core.registry.handle_envelope(envelope)
    await wait_for(lambda: channel.events("message:new"))
    assert len(channel.events("message:new")) == 1


@pytest.mark.asyncio
async def test_message_new_only_reaches_participants(core, connect):
    session, _ = await connect(core, "user-a")
    await core.registry.join_conversation(session.connection_id, CONV, ("user-a", "user-b"))
    core.registry.room(CONV).participant_user_ids = ("user-b",)
    assert core.registry.deliver_local(CONV, "message:new", {}, message_id="m1") == 0


@pytest.mark.asyncio
async def test_presence_goes_online_once_and_offline_after_grace(core, connect, wait_for):
    watcher, watcher_channel = await connect(core, "user-b")
    await core.registry.join_conversation(watcher.connection_id, CONV, ("user-a", "user-b"))

    first, _ = await connect(core, "user-a")
    second, _ = await connect(core, "user-a")
    await wait_for(lambda: watcher_channel.events("user:online"))
    assert watcher_channel.data("user:online") == [{"user_id": "user-a"}]

    await first.close()
    await second.close()
    await core.registry.unregister(first.connection_id)
    await core.registry.unregister(second.connection_id)
    await wait_for(lambda: watcher_channel.events("user:offline"))
    assert watcher_channel.data("user:offline") == [{"user_id": "user-a"}]
    assert (await core.presence.get_presence("user-a")).status == "offline"


@pytest.mark.asyncio
async def test_reconnect_within_grace_emits_nothing(build_core, connect, wait_for, fake_redis):
    core = build_core(offline_grace=0.3)
    watcher, watcher_channel = await connect(core, "user-b")
    await core.registry.join_conversation(watcher.connection_id, CONV, ("user-a", "user-b"))
    session, _ = await connect(core, "user-a")
    await wait_for(lambda: watcher_channel.events("user:online"))

    await session.close()
    await core.registry.unregister(session.connection_id)
    assert await fake_redis.zscore(PENDING_OFFLINE_KEY, "user-a") is not None
    await connect(core, "user-a")
    await asyncio.sleep(0.4)
    assert watcher_channel.events("user:offline") == []
    assert len(watcher_channel.events("user:online")) == 1


@pytest.mark.asyncio
async def test_status_update_skips_only_the_origin_connection(core, connect, send_frame, wait_for):
    origin, origin_channel = await connect(core, "user-a")
    other_device, other_channel = await connect(core, "user-a")
    peer, peer_channel = await connect(core, "user-b")
    for session in (origin, other_device, peer):
        await core.registry.join_conversation(session.connection_id, CONV, ("user-a", "user-b"))

    await send_frame(core, origin, "user:status", {"status": "away"})
    await wait_for(lambda: peer_channel.events("user:status_updated") and other_channel.events("user:status_updated"))
    assert peer_channel.data("user:status_updated") == [{"user_id": "user-a", "status": "away"}]
    assert origin_channel.events("user:status_updated") == []
    assert (await core.presence.get_presence("user-a")).status == "away"


@pytest.mark.asyncio
async def test_shutdown_notifies_and_closes_sessions(core, connect, wait_for):
    session, channel = await connect(core, "user-a")
    await core.registry.shutdown(drain_timeout=0.5)
    assert channel.data("server:shutdown") == [{"reconnect_after_ms": 1000}]
    assert channel.closed_with == (1001, "server_shutdown")
    assert session.closed.is_set()
