"""Background sweeper: typing expiry, offline transitions, dedup pruning and photo purges."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from spark.obs import metrics as obs_metrics

from . import events
from .config import ChatConfig
from .models import EphemeralPhoto
from .photos import PhotoRepository
from .presence import PresenceStore
from .registry import SessionRegistry
from .resilience import TRANSIENT_ERRORS
from .storage import PhotoStorage, PhotoStorageError

_LOG = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class PurgeReport:
	expired: int = 0
	purged: int = 0
	failed: int = 0


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class ChatSweeper:
	"""Idempotent maintenance jobs; a failed item is left for the next tick."""

	def __init__(
		self,
		*,
		registry: SessionRegistry,
		presence: PresenceStore,
		photos: PhotoRepository,
		storage: PhotoStorage,
		config: ChatConfig,
		clock: Callable[[], datetime] = _utcnow,
	) -> None:
		self._registry = registry
		self._presence = presence
		self._photos = photos
		self._storage = storage
		self._config = config
		self._clock = clock

	async def _run(self, name: str, job: Callable[[], Awaitable[T]], default: T) -> T:
		started = time.perf_counter()
		try:
			result = await job()
		except TRANSIENT_ERRORS as exc:
			obs_metrics.record_job_run(name, result="failed", duration_seconds=time.perf_counter() - started)
			_LOG.warning("sweeper.job_failed", extra={"job": name, "error": type(exc).__name__})
			return default
		except Exception:
			obs_metrics.record_job_run(name, result="error", duration_seconds=time.perf_counter() - started)
			_LOG.exception("sweeper.job_crashed", extra={"job": name})
			return default
		obs_metrics.record_job_run(name, result="ok", duration_seconds=time.perf_counter() - started)
		return result

	async def run_typing_once(self) -> int:
		return await self._run("typing", self._expire_typing, 0)

	async def run_presence_once(self) -> int:
		return await self._run("presence", self._finalize_offline, 0)

	async def run_dedup_once(self) -> int:
		return await self._run("dedup", self._prune_dedup, 0)

	async def run_ephemeral_once(self) -> PurgeReport:
		return await self._run("ephemeral", self._purge_photos, PurgeReport())

	async def _expire_typing(self) -> int:
		claimed = await self._presence.claim_expired_typing(limit=self._config.sweeper_batch_size)
		for conversation_id, user_id in claimed:
			await self._registry.fan_out(
				conversation_id,
				events.TYPING_INDICATOR,
				{"conversation_id": conversation_id, "user_id": user_id, "is_typing": False},
			)
		return len(claimed)

	async def _finalize_offline(self) -> int:
		due = await self._presence.due_offline(limit=self._config.sweeper_batch_size)
		finalized = 0
		for user_id in due:
			if await self._registry.finalize_offline(user_id):
				finalized += 1
		return finalized

	async def _prune_dedup(self) -> int:
		return await self._presence.prune_recent_sets(batch=self._config.sweeper_batch_size)

	async def _purge_photos(self) -> PurgeReport:
		report = PurgeReport()
		now = self._clock()
		for photo in await self._photos.list_expired(now, self._config.sweeper_batch_size):
			if await self._photos.mark_expired(photo.photo_id):
				report.expired += 1
		for photo in await self._photos.list_pending_purge(self._config.sweeper_batch_size):
			if await self._delete_object(photo):
				await self._photos.mark_purged(photo.photo_id, self._clock())
				report.purged += 1
			else:
				report.failed += 1
		if report.expired or report.purged or report.failed:
			_LOG.info(
				"sweeper.ephemeral_purged",
				extra={"expired": report.expired, "purged": report.purged, "failed": report.failed},
			)
		return report

	async def _delete_object(self, photo: EphemeralPhoto) -> bool:
		last_error: Optional[BaseException] = None
		for _ in range(self._config.sweeper_max_retries):
			try:
				await self._storage.delete(photo.storage_ref)
				return True
			except (PhotoStorageError, *TRANSIENT_ERRORS) as exc:
				last_error = exc
		_LOG.warning(
			"sweeper.storage_delete_failed",
			extra={"photo_id": photo.photo_id, "attempts": self._config.sweeper_max_retries, "error": type(last_error).__name__},
		)
		return False


class SweeperScheduler:
	"""Thin wrapper around AsyncIOScheduler for the sweeper jobs."""

	def __init__(self) -> None:
		self._scheduler = AsyncIOScheduler(timezone="UTC")
		self._started = False

	@property
	def running(self) -> bool:
		return self._started

	def start(self) -> None:
		if not self._started:
			self._scheduler.start()
			self._started = True

	def shutdown(self) -> None:
		if self._started:
			self._scheduler.shutdown(wait=False)
			self._started = False

	def schedule_every(self, job_id: str, func: Callable[[], object], *, seconds: float) -> None:
		trigger = IntervalTrigger(seconds=seconds)
		self._scheduler.add_job(
			func,
			trigger=trigger,
			id=job_id,
			replace_existing=True,
			max_instances=1,
			coalesce=True,
		)

	def job_ids(self) -> list[str]:
		return [job.id for job in self._scheduler.get_jobs()]

	def install(self, sweeper: ChatSweeper, config: ChatConfig) -> None:
		self.schedule_every("chat-typing", sweeper.run_typing_once, seconds=config.typing_sweep_interval)
		self.schedule_every("chat-presence", sweeper.run_presence_once, seconds=config.sweeper_interval)
		self.schedule_every("chat-dedup", sweeper.run_dedup_once, seconds=config.sweeper_interval)
		self.schedule_every("chat-ephemeral", sweeper.run_ephemeral_once, seconds=config.sweeper_interval)
