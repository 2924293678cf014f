"""Ephemeral photo delivery: single-use access grants bounded by time and view count.

Lifecycle of a photo record::

    created --view--> viewed
       |  \\--expire--> expired
       \\--delete-by-owner--> deleted

All three right-hand states are terminal; the sweeper deletes the storage
object of any terminal photo. Grants live in Redis as
`ephemeral:grant:{photo_id}:{access_key}` and are consumed with GETDEL, and
`ephemeral:viewers:{photo_id}` lets `issue_access` turn away a viewer who
already looked; the photo repository's view log is what actually enforces it.
"""

from __future__ import annotations

import logging
import math
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

import ulid

from spark.obs import metrics as obs_metrics

from .config import ChatConfig
from .events import ChatError, ErrorCode
from .models import PHOTO_DELETED, AccessGrant, EphemeralPhoto, PhotoAccess
from .photos import PhotoRepository
from .repo import MessageRepository
from .resilience import best_effort, call_with_retry

_LOG = logging.getLogger(__name__)

GRANT_KEY = "ephemeral:grant:{photo_id}:{access_key}"
VIEWERS_KEY = "ephemeral:viewers:{photo_id}"

MAX_VIEWS_LIMIT = 10
MAX_DURATION_SECONDS = 24 * 3600


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class EphemeralPhotoService:
	def __init__(
		self,
		*,
		photos: PhotoRepository,
		messages: MessageRepository,
		redis,
		config: ChatConfig,
		clock: Callable[[], datetime] = _utcnow,
	) -> None:
		self._photos = photos
		self._messages = messages
		self._redis = redis
		self._config = config
		self._clock = clock

	@property
	def repository(self) -> PhotoRepository:
		return self._photos

	async def _call(self, operation: str, factory):
		return await call_with_retry(operation, factory, timeout=self._config.router_op_timeout)

	async def _load(self, photo_id: str) -> EphemeralPhoto:
		photo = await self._call("photos.get_photo", lambda: self._photos.get_photo(photo_id))
		if photo is None:
			raise ChatError(ErrorCode.GONE, "photo not found")
		return photo

	async def register_upload(
		self,
		*,
		owner_user_id: str,
		thumbnail_ref: str,
		storage_ref: str,
		max_views: int = 1,
		duration_seconds: int = 30,
		photo_id: Optional[str] = None,
	) -> EphemeralPhoto:
		"""Record an uploaded photo; called by the media ingestion pipeline."""
		if not 1 <= max_views <= MAX_VIEWS_LIMIT:
			raise ChatError(ErrorCode.INVALID_MESSAGE_FORMAT, f"max_views must be between 1 and {MAX_VIEWS_LIMIT}")
		if not 1 <= duration_seconds <= MAX_DURATION_SECONDS:
			raise ChatError(ErrorCode.INVALID_MESSAGE_FORMAT, "duration_seconds out of range")
		photo = EphemeralPhoto.new(
			photo_id=photo_id or str(ulid.new()),
			owner_user_id=owner_user_id,
			thumbnail_ref=thumbnail_ref,
			storage_ref=storage_ref,
			max_views=max_views,
			duration_seconds=duration_seconds,
			created_at=self._clock(),
		)
		created = await self._call("photos.create_photo", lambda: self._photos.create_photo(photo))
		_LOG.info("ephemeral.photo_registered", extra={"photo_id": created.photo_id, "user_id": owner_user_id})
		return created

	async def attach_to_message(self, photo_id: str, *, owner_user_id: str, conversation_id: str) -> EphemeralPhoto:
		"""Bind a photo to the conversation it is sent into; only its owner may send it."""
		photo = await self._load(photo_id)
		if photo.owner_user_id != owner_user_id:
			raise ChatError(ErrorCode.UNAUTHORIZED, "photo belongs to another user")
		if photo.is_terminal or photo.is_expired(self._clock()):
			raise ChatError(ErrorCode.GONE, "photo is no longer available")
		attached = await self._call(
			"photos.attach_to_conversation",
			lambda: self._photos.attach_to_conversation(photo_id, conversation_id),
		)
		if not attached:
			raise ChatError(ErrorCode.UNAUTHORIZED, "photo already sent to another conversation")
		photo.conversation_id = conversation_id
		return photo

	async def issue_access(self, photo_id: str, viewer_user_id: str) -> AccessGrant:
		photo = await self._load(photo_id)
		if photo.conversation_id is None:
			raise ChatError(ErrorCode.NOT_A_MEMBER)
		members = await self._call(
			"repository.get_conversation_members",
			lambda: self._messages.get_conversation_members(photo.conversation_id),
		)
		if not members or viewer_user_id not in members:
			raise ChatError(ErrorCode.NOT_A_MEMBER)
		if viewer_user_id == photo.owner_user_id:
			raise ChatError(ErrorCode.UNAUTHORIZED, "owners cannot redeem their own photo")
		now = self._clock()
		if photo.is_terminal or photo.is_expired(now) or photo.view_count >= photo.max_views:
			obs_metrics.inc_ephemeral_access("issue", "gone")
			raise ChatError(ErrorCode.GONE)
		viewers_key = VIEWERS_KEY.format(photo_id=photo_id)
		if await self._call("redis.sismember", lambda: self._redis.sismember(viewers_key, viewer_user_id)):
			obs_metrics.inc_ephemeral_access("issue", "gone")
			raise ChatError(ErrorCode.GONE, "photo already viewed")

		ttl = min(self._config.ephemeral_grant_ttl, max(1, math.ceil((photo.expires_at - now).total_seconds())))
		access_key = secrets.token_urlsafe(24)
		grant_key = GRANT_KEY.format(photo_id=photo_id, access_key=access_key)
		await self._call("redis.set", lambda: self._redis.set(grant_key, viewer_user_id, ex=ttl))
		obs_metrics.inc_ephemeral_access("issue", "ok")
		return AccessGrant(
			photo_id=photo_id,
			access_key=access_key,
			viewer_user_id=viewer_user_id,
			expires_at=now + timedelta(seconds=ttl),
		)

	async def redeem(self, photo_id: str, access_key: str, viewer_user_id: Optional[str] = None) -> PhotoAccess:
		"""Consume a grant and count one view; GONE once the photo is used up, expired or the key spent.

		The view count and the viewer log move together in the photo repository.
		If that write fails the grant is put back, so the viewer can try again
		without a view having been counted.
		"""
		grant_key = GRANT_KEY.format(photo_id=photo_id, access_key=access_key)
		holder = await self._call("redis.get", lambda: self._redis.get(grant_key))
		if holder is None:
			obs_metrics.inc_ephemeral_access("redeem", "gone")
			raise ChatError(ErrorCode.GONE, "access key is invalid or already used")
		holder = str(holder)
		if viewer_user_id is not None and holder != viewer_user_id:
			raise ChatError(ErrorCode.UNAUTHORIZED, "access key belongs to another user")
		ttl_ms, consumed = await self._call("redis.consume_grant", lambda: self._consume_grant(grant_key))
		if consumed is None:
			obs_metrics.inc_ephemeral_access("redeem", "gone")
			raise ChatError(ErrorCode.GONE, "access key is invalid or already used")

		now = self._clock()
		try:
			# One attempt: a write that timed out may still land, and a retry would then read as GONE.
			photo = await call_with_retry(
				"photos.record_view",
				lambda: self._photos.record_view(photo_id, holder, now),
				timeout=self._config.router_op_timeout,
				attempts=1,
			)
		except Exception:
			await self._restore_grant(grant_key, holder, ttl_ms)
			raise
		if photo is None:
			await self._expire_if_due(photo_id, now)
			obs_metrics.inc_ephemeral_access("redeem", "gone")
			raise ChatError(ErrorCode.GONE, "photo is used up, expired or already viewed")

		remaining = max(1, math.ceil((photo.expires_at - now).total_seconds()))
		await best_effort(
			"redis.register_viewer",
			lambda: self._register_viewer(VIEWERS_KEY.format(photo_id=photo_id), holder, remaining),
			timeout=self._config.router_op_timeout,
			default=None,
		)
		obs_metrics.inc_ephemeral_access("redeem", "ok")
		_LOG.info(
			"ephemeral.photo_viewed",
			extra={"photo_id": photo_id, "view_count": photo.view_count, "state": photo.state},
		)
		return PhotoAccess(
			photo_id=photo.photo_id,
			storage_ref=photo.storage_ref,
			view_count=photo.view_count,
			max_views=photo.max_views,
			duration_seconds=photo.duration_seconds,
		)

	async def _consume_grant(self, grant_key: str) -> Tuple[int, Optional[str]]:
		async with self._redis.pipeline(transaction=True) as pipe:
			pipe.pttl(grant_key)
			pipe.getdel(grant_key)
			ttl_ms, holder = await pipe.execute()
		return int(ttl_ms), holder

	async def _restore_grant(self, grant_key: str, holder: str, ttl_ms: int) -> None:
		if ttl_ms <= 0:
			ttl_ms = self._config.ephemeral_grant_ttl * 1000
		restored = await best_effort(
			"redis.restore_grant",
			lambda: self._redis.set(grant_key, holder, px=ttl_ms, nx=True),
			timeout=self._config.router_op_timeout,
			default=None,
		)
		_LOG.warning("ephemeral.grant_restored", extra={"restored": bool(restored)})

	async def _register_viewer(self, viewers_key: str, viewer_user_id: str, ttl_seconds: int) -> None:
		async with self._redis.pipeline(transaction=True) as pipe:
			pipe.sadd(viewers_key, viewer_user_id)
			pipe.expire(viewers_key, ttl_seconds)
			await pipe.execute()

	async def _expire_if_due(self, photo_id: str, now: datetime) -> None:
		photo = await self._photos.get_photo(photo_id)
		if photo is not None and not photo.is_terminal and photo.is_expired(now):
			await self._photos.mark_expired(photo_id)

	async def status(self, photo_id: str, requester_user_id: str) -> dict:
		photo = await self._load(photo_id)
		if requester_user_id != photo.owner_user_id:
			members = None
			if photo.conversation_id is not None:
				members = await self._call(
					"repository.get_conversation_members",
					lambda: self._messages.get_conversation_members(photo.conversation_id),
				)
			if not members or requester_user_id not in members:
				raise ChatError(ErrorCode.NOT_A_MEMBER)
		views = await self._call("photos.list_views", lambda: self._photos.list_views(photo_id))
		return photo.status_view(self._clock(), views)

	async def delete_by_owner(self, photo_id: str, owner_user_id: str) -> EphemeralPhoto:
		photo = await self._load(photo_id)
		if photo.owner_user_id != owner_user_id:
			raise ChatError(ErrorCode.UNAUTHORIZED, "only the owner can delete this photo")
		deleted = await self._call("photos.mark_deleted", lambda: self._photos.mark_deleted(photo_id))
		if not deleted:
			raise ChatError(ErrorCode.GONE, "photo is no longer available")
		_LOG.info("ephemeral.photo_deleted", extra={"photo_id": photo_id})
		photo.state = PHOTO_DELETED
		return photo
