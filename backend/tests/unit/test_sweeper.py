import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from spark.domain.chat.ephemeral import EphemeralPhotoService
from spark.domain.chat.presence import PENDING_OFFLINE_KEY
from spark.domain.chat.sweeper import ChatSweeper, SweeperScheduler

CONV = "conv-ab"


class _Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def photos(photo_repository, repository, fake_redis, chat_config, clock):
    return EphemeralPhotoService(
        photos=photo_repository,
        messages=repository,
        redis=fake_redis,
        config=chat_config(),
        clock=clock,
    )


def _sweeper(core, photo_repository, photo_storage, clock, **overrides):
    return ChatSweeper(
        registry=core.registry,
        presence=core.presence,
        photos=photo_repository,
        storage=photo_storage,
        config=replace(core.config, **overrides),
        clock=clock,
    )


@pytest.mark.asyncio
async def test_expired_photos_are_marked_and_purged(core, photos, photo_repository, photo_storage, clock):
    photo_storage.put("photos/old.jpg")
    expired = await photos.register_upload(owner_user_id="user-a", thumbnail_ref="t", storage_ref="photos/old.jpg", duration_seconds=5)
    fresh = await photos.register_upload(owner_user_id="user-a", thumbnail_ref="t", storage_ref="photos/new.jpg", duration_seconds=600)
    clock.now += timedelta(seconds=10)

    sweeper = _sweeper(core, photo_repository, photo_storage, clock)
    report = await sweeper.run_ephemeral_once()
    assert (report.expired, report.purged, report.failed) == (1, 1, 0)
    assert photo_storage.deleted == ["photos/old.jpg"]
    assert "photos/old.jpg" not in photo_storage.objects
    assert (await photo_repository.get_photo(expired.photo_id)).purged_at == clock.now
    assert (await photo_repository.get_photo(fresh.photo_id)).state == "created"

    again = await sweeper.run_ephemeral_once()
    assert (again.expired, again.purged, again.failed) == (0, 0, 0)


@pytest.mark.asyncio
async def test_viewed_and_deleted_photos_are_purged(core, photos, photo_repository, photo_storage, clock):
    viewed = await photos.register_upload(owner_user_id="user-a", thumbnail_ref="t", storage_ref="photos/v.jpg")
    await photos.attach_to_message(viewed.photo_id, owner_user_id="user-a", conversation_id=CONV)
    grant = await photos.issue_access(viewed.photo_id, "user-b")
    await photos.redeem(viewed.photo_id, grant.access_key)
    deleted = await photos.register_upload(owner_user_id="user-a", thumbnail_ref="t", storage_ref="photos/d.jpg")
    await photos.delete_by_owner(deleted.photo_id, "user-a")

    report = await _sweeper(core, photo_repository, photo_storage, clock).run_ephemeral_once()
    assert report.purged == 2
    assert sorted(photo_storage.deleted) == ["photos/d.jpg", "photos/v.jpg"]


@pytest.mark.asyncio
async def test_storage_failures_are_retried_then_left_for_next_tick(core, photos, photo_repository, photo_storage, clock, caplog):
    caplog.set_level(logging.WARNING, logger="spark.domain.chat.sweeper")
    photo = await photos.register_upload(owner_user_id="user-a", thumbnail_ref="t", storage_ref="photos/flaky.jpg")
    await photos.delete_by_owner(photo.photo_id, "user-a")
    photo_storage.failures["photos/flaky.jpg"] = 3

    sweeper = _sweeper(core, photo_repository, photo_storage, clock, sweeper_max_retries=3)
    first = await sweeper.run_ephemeral_once()
    assert (first.purged, first.failed) == (0, 1)
    assert any(record.getMessage() == "sweeper.storage_delete_failed" for record in caplog.records)
    assert (await photo_repository.get_photo(photo.photo_id)).purged_at is None

    second = await sweeper.run_ephemeral_once()
    assert (second.purged, second.failed) == (1, 0)
    assert photo_storage.deleted == ["photos/flaky.jpg"]


@pytest.mark.asyncio
async def test_presence_sweep_finalizes_stranded_users(core, connect, fake_redis, wait_for, photo_repository, photo_storage, clock):
    watcher, watcher_channel = await connect(core, "user-b")
    await core.registry.join_conversation(watcher.connection_id, CONV, ("user-a", "user-b"))
    await core.presence.add_session("user-a")
    await core.presence.remove_session("user-a")
    await core.presence.schedule_offline("user-a", 0)

    sweeper = _sweeper(core, photo_repository, photo_storage, clock)
    assert await sweeper.run_presence_once() == 1
    assert await sweeper.run_presence_once() == 0
    assert await fake_redis.zscore(PENDING_OFFLINE_KEY, "user-a") is None
    await wait_for(lambda: watcher_channel.events("user:offline"))


@pytest.mark.asyncio
async def test_dedup_sweep_trims_recent_sets(build_core, fake_redis):
    core = build_core(dedup_window=2)
    for index in range(5):
        await fake_redis.zadd("chat:recent:c1:node-a", {f"m{index}": index})
    assert await core.sweeper.run_dedup_once() == 3
    assert await fake_redis.zrange("chat:recent:c1:node-a", 0, -1) == ["m3", "m4"]


@pytest.mark.asyncio
async def test_job_failures_are_contained(core, photo_storage, clock, caplog):
    class _BrokenPhotos:
        async def list_expired(self, now, limit):
            raise RuntimeError("db gone")

    caplog.set_level(logging.ERROR, logger="spark.domain.chat.sweeper")
    sweeper = _sweeper(core, _BrokenPhotos(), photo_storage, clock)
    report = await sweeper.run_ephemeral_once()
    assert (report.expired, report.purged, report.failed) == (0, 0, 0)
    assert any(record.getMessage() == "sweeper.job_crashed" for record in caplog.records)


@pytest.mark.asyncio
async def test_scheduler_installs_every_job(core):
    scheduler = SweeperScheduler()
    scheduler.install(core.sweeper, core.config)
    assert sorted(scheduler.job_ids()) == ["chat-dedup", "chat-ephemeral", "chat-presence", "chat-typing"]
    scheduler.start()
    try:
        assert scheduler.running
    finally:
        scheduler.shutdown()
    assert not scheduler.running
