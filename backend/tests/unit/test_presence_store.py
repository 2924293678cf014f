import pytest

from spark.domain.chat.presence import PENDING_OFFLINE_KEY, PresenceStore


@pytest.mark.asyncio
async def test_session_counting_and_offline_finalization(fake_redis):
    store = PresenceStore(fake_redis)
    assert await store.add_session("u1") == (1, False)
    assert await store.add_session("u1") == (2, False)
    assert await store.remove_session("u1") == 1
    assert await store.remove_session("u1") == 0

    await store.schedule_offline("u1", 0)
    assert await store.due_offline() == ["u1"]
    assert await store.finalize_offline("u1")
    assert not await store.finalize_offline("u1")
    snapshot = await store.get_presence("u1")
    assert snapshot.status == "offline"
    assert snapshot.session_count == 0
    assert snapshot.last_seen_at is not None


@pytest.mark.asyncio
async def test_reconnect_inside_grace_cancels_pending_offline(fake_redis):
    store = PresenceStore(fake_redis)
    await store.add_session("u1")
    await store.remove_session("u1")
    await store.schedule_offline("u1", 30)
    count, cancelled = await store.add_session("u1")
    assert (count, cancelled) == (1, True)
    assert await fake_redis.zscore(PENDING_OFFLINE_KEY, "u1") is None
    assert not await store.finalize_offline("u1")


@pytest.mark.asyncio
async def test_remove_session_never_goes_negative(fake_redis):
    store = PresenceStore(fake_redis)
    assert await store.remove_session("ghost") == 0
    assert (await store.get_presence("ghost")).session_count == 0


@pytest.mark.asyncio
async def test_typing_marker_reports_only_transitions(fake_redis):
    store = PresenceStore(fake_redis)
    assert await store.set_typing("c1", "u1", 5)
    assert not await store.set_typing("c1", "u1", 5)
    assert await store.is_typing("c1", "u1")
    assert await store.clear_typing("c1", "u1")
    assert not await store.clear_typing("c1", "u1")
    assert not await store.is_typing("c1", "u1")


@pytest.mark.asyncio
async def test_expired_typing_is_claimed_once(fake_redis):
    store = PresenceStore(fake_redis)
    await store.set_typing("c1", "u1", 5)
    far_future = 10**13
    assert await store.claim_expired_typing(now_ms=far_future) == [("c1", "u1")]
    assert await store.claim_expired_typing(now_ms=far_future) == []
    assert not await store.is_typing("c1", "u1")


@pytest.mark.asyncio
async def test_read_marker_returns_previous_value_and_restores(fake_redis):
    store = PresenceStore(fake_redis)
    assert await store.set_read_marker("c1", "u1", "m1", 60) is None
    assert await store.set_read_marker("c1", "u1", "m2", 60) == "m1"
    await store.restore_read_marker("c1", "u1", "m1", 60)
    assert await store.get_read_marker("c1", "u1") == "m1"
    await store.restore_read_marker("c1", "u1", None, 60)
    assert await store.get_read_marker("c1", "u1") is None


@pytest.mark.asyncio
async def test_recent_set_dedups_per_node_and_is_pruned(fake_redis):
    store = PresenceStore(fake_redis, dedup_window=2)
    assert await store.remember_message("c1", "node-a", "m1", 1)
    assert not await store.remember_message("c1", "node-a", "m1", 1)
    assert await store.remember_message("c1", "node-b", "m1", 1)
    await store.remember_message("c1", "node-a", "m2", 2)
    await store.remember_message("c1", "node-a", "m3", 3)
    assert await fake_redis.zcard("chat:recent:c1:node-a") == 2
    assert await store.prune_recent_sets() == 0
