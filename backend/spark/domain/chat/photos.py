"""Ephemeral photo records: the repository protocol and its Postgres and in-memory backends."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import asyncpg

from spark.infra.postgres import get_pool

from .models import PHOTO_CREATED, PHOTO_DELETED, PHOTO_EXPIRED, PHOTO_VIEWED, EphemeralPhoto, PhotoView
from .repo import _affected_rows


class PhotoRepository(Protocol):
	async def create_photo(self, photo: EphemeralPhoto) -> EphemeralPhoto:
		...

	async def get_photo(self, photo_id: str) -> Optional[EphemeralPhoto]:
		...

	async def attach_to_conversation(self, photo_id: str, conversation_id: str) -> bool:
		...

	async def record_view(self, photo_id: str, viewer_user_id: str, now: datetime) -> Optional[EphemeralPhoto]:
		"""Count one view by `viewer_user_id` and log it in one step.

		Returns None, with nothing written, when the photo is used up, expired,
		terminal or already viewed by that viewer.
		"""
		...

	async def list_views(self, photo_id: str) -> List[PhotoView]:
		...

	async def mark_expired(self, photo_id: str) -> bool:
		...

	async def mark_deleted(self, photo_id: str) -> bool:
		...

	async def list_expired(self, now: datetime, limit: int) -> List[EphemeralPhoto]:
		...

	async def list_pending_purge(self, limit: int) -> List[EphemeralPhoto]:
		...

	async def mark_purged(self, photo_id: str, now: datetime) -> None:
		...


class InMemoryPhotoRepository:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._photos: Dict[str, EphemeralPhoto] = {}
		self._views: Dict[str, Dict[str, datetime]] = {}

	async def create_photo(self, photo: EphemeralPhoto) -> EphemeralPhoto:
		async with self._lock:
			if photo.photo_id in self._photos:
				raise ValueError(f"photo {photo.photo_id} already exists")
			self._photos[photo.photo_id] = replace(photo)
			return replace(photo)

	async def get_photo(self, photo_id: str) -> Optional[EphemeralPhoto]:
		async with self._lock:
			photo = self._photos.get(photo_id)
			return replace(photo) if photo else None

	async def attach_to_conversation(self, photo_id: str, conversation_id: str) -> bool:
		async with self._lock:
			photo = self._photos.get(photo_id)
			if photo is None or photo.state != PHOTO_CREATED:
				return False
			if photo.conversation_id not in (None, conversation_id):
				return False
			photo.conversation_id = conversation_id
			return True

	async def record_view(self, photo_id: str, viewer_user_id: str, now: datetime) -> Optional[EphemeralPhoto]:
		async with self._lock:
			photo = self._photos.get(photo_id)
			if photo is None or photo.state != PHOTO_CREATED:
				return None
			if photo.view_count >= photo.max_views or photo.is_expired(now):
				return None
			views = self._views.setdefault(photo_id, {})
			if viewer_user_id in views:
				return None
			views[viewer_user_id] = now
			photo.view_count += 1
			if photo.view_count >= photo.max_views:
				photo.state = PHOTO_VIEWED
			return replace(photo)

	async def list_views(self, photo_id: str) -> List[PhotoView]:
		async with self._lock:
			views = self._views.get(photo_id, {})
			return [PhotoView(viewer_user_id=viewer, viewed_at=at) for viewer, at in sorted(views.items(), key=lambda item: item[1])]

	async def mark_expired(self, photo_id: str) -> bool:
		return await self._transition(photo_id, PHOTO_EXPIRED)

	async def mark_deleted(self, photo_id: str) -> bool:
		return await self._transition(photo_id, PHOTO_DELETED)

	async def _transition(self, photo_id: str, state: str) -> bool:
		async with self._lock:
			photo = self._photos.get(photo_id)
			if photo is None or photo.state != PHOTO_CREATED:
				return False
			photo.state = state
			return True

	async def list_expired(self, now: datetime, limit: int) -> List[EphemeralPhoto]:
		async with self._lock:
			expired = [p for p in self._photos.values() if p.state == PHOTO_CREATED and p.is_expired(now)]
			expired.sort(key=lambda p: p.expires_at)
			return [replace(p) for p in expired[:limit]]

	async def list_pending_purge(self, limit: int) -> List[EphemeralPhoto]:
		async with self._lock:
			pending = [p for p in self._photos.values() if p.is_terminal and p.purged_at is None]
			pending.sort(key=lambda p: p.created_at)
			return [replace(p) for p in pending[:limit]]

	async def mark_purged(self, photo_id: str, now: datetime) -> None:
		async with self._lock:
			photo = self._photos.get(photo_id)
			if photo is not None and photo.purged_at is None:
				photo.purged_at = now


_PHOTO_COLUMNS = (
	"photo_id, owner_user_id, conversation_id, thumbnail_ref, storage_ref, max_views, view_count, "
	"duration_seconds, state, created_at, expires_at, purged_at"
)


class PostgresPhotoRepository:
	"""asyncpg-backed photo records; every state change is one conditional UPDATE."""

	def __init__(self, pool: asyncpg.pool.Pool | None = None) -> None:
		self._pool = pool

	async def _acquire_pool(self) -> asyncpg.pool.Pool:
		if self._pool is None:
			self._pool = await get_pool()
		return self._pool

	async def create_photo(self, photo: EphemeralPhoto) -> EphemeralPhoto:
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO ephemeral_photos (
					photo_id, owner_user_id, conversation_id, thumbnail_ref, storage_ref,
					max_views, view_count, duration_seconds, state, created_at, expires_at
				) VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10,$11)
				""",
				photo.photo_id,
				photo.owner_user_id,
				photo.conversation_id,
				photo.thumbnail_ref,
				photo.storage_ref,
				photo.max_views,
				photo.view_count,
				photo.duration_seconds,
				photo.state,
				photo.created_at,
				photo.expires_at,
			)
		return photo

	async def get_photo(self, photo_id: str) -> Optional[EphemeralPhoto]:
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(f"SELECT {_PHOTO_COLUMNS} FROM ephemeral_photos WHERE photo_id = $1", photo_id)
		return _row_to_photo(row) if row else None

	async def attach_to_conversation(self, photo_id: str, conversation_id: str) -> bool:
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			status = await conn.execute(
				"""
				UPDATE ephemeral_photos
				SET conversation_id = $2
				WHERE photo_id = $1
					AND state = 'created'
					AND (conversation_id IS NULL OR conversation_id = $2)
				""",
				photo_id,
				conversation_id,
			)
		return _affected_rows(status) == 1

	async def record_view(self, photo_id: str, viewer_user_id: str, now: datetime) -> Optional[EphemeralPhoto]:
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				locked = await conn.fetchrow(
					"SELECT state, view_count, max_views, expires_at FROM ephemeral_photos WHERE photo_id = $1 FOR UPDATE",
					photo_id,
				)
				if locked is None or locked["state"] != PHOTO_CREATED:
					return None
				if locked["view_count"] >= locked["max_views"] or locked["expires_at"] <= now:
					return None
				logged = await conn.execute(
					"""
					INSERT INTO ephemeral_photo_views (photo_id, viewer_user_id, viewed_at)
					VALUES ($1, $2, $3)
					ON CONFLICT (photo_id, viewer_user_id) DO NOTHING
					""",
					photo_id,
					viewer_user_id,
					now,
				)
				if _affected_rows(logged) != 1:
					return None
				row = await conn.fetchrow(
					f"""
					UPDATE ephemeral_photos
					SET view_count = view_count + 1,
						state = CASE WHEN view_count + 1 >= max_views THEN 'viewed' ELSE state END
					WHERE photo_id = $1
					RETURNING {_PHOTO_COLUMNS}
					""",
					photo_id,
				)
		return _row_to_photo(row)

	async def list_views(self, photo_id: str) -> List[PhotoView]:
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT viewer_user_id, viewed_at
				FROM ephemeral_photo_views
				WHERE photo_id = $1
				ORDER BY viewed_at
				""",
				photo_id,
			)
		return [PhotoView(viewer_user_id=str(row["viewer_user_id"]), viewed_at=row["viewed_at"]) for row in rows]

	async def mark_expired(self, photo_id: str) -> bool:
		return await self._transition(photo_id, PHOTO_EXPIRED)

	async def mark_deleted(self, photo_id: str) -> bool:
		return await self._transition(photo_id, PHOTO_DELETED)

	async def _transition(self, photo_id: str, state: str) -> bool:
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			status = await conn.execute(
				"UPDATE ephemeral_photos SET state = $2 WHERE photo_id = $1 AND state = 'created'",
				photo_id,
				state,
			)
		return _affected_rows(status) == 1

	async def list_expired(self, now: datetime, limit: int) -> List[EphemeralPhoto]:
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_PHOTO_COLUMNS}
				FROM ephemeral_photos
				WHERE state = 'created' AND expires_at <= $1
				ORDER BY expires_at
				LIMIT $2
				""",
				now,
				limit,
			)
		return [_row_to_photo(row) for row in rows]

	async def list_pending_purge(self, limit: int) -> List[EphemeralPhoto]:
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_PHOTO_COLUMNS}
				FROM ephemeral_photos
				WHERE state <> 'created' AND purged_at IS NULL
				ORDER BY created_at
				LIMIT $1
				""",
				limit,
			)
		return [_row_to_photo(row) for row in rows]

	async def mark_purged(self, photo_id: str, now: datetime) -> None:
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				"UPDATE ephemeral_photos SET purged_at = $2 WHERE photo_id = $1 AND purged_at IS NULL",
				photo_id,
				now,
			)


def _row_to_photo(row: Any) -> EphemeralPhoto:
	return EphemeralPhoto(
		photo_id=str(row["photo_id"]),
		owner_user_id=str(row["owner_user_id"]),
		conversation_id=str(row["conversation_id"]) if row["conversation_id"] else None,
		thumbnail_ref=str(row["thumbnail_ref"]),
		storage_ref=str(row["storage_ref"]),
		max_views=int(row["max_views"]),
		view_count=int(row["view_count"]),
		duration_seconds=int(row["duration_seconds"]),
		state=str(row["state"]),
		created_at=row["created_at"],
		expires_at=row["expires_at"],
		purged_at=row["purged_at"],
	)
