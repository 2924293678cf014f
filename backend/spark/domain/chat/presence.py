"""Redis-backed presence keyspace: online state, typing markers, read markers and dedup sets."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from .models import PresenceSnapshot

ONLINE_KEY = "online:{user_id}"
TYPING_KEY = "typing:{conversation_id}:{user_id}"
READ_KEY = "read:{conversation_id}:{user_id}"
RECENT_KEY = "chat:recent:{conversation_id}:{node_id}"
RECENT_PATTERN = "chat:recent:*"
TYPING_ACTIVE_KEY = "chat:typing:active"
PENDING_OFFLINE_KEY = "chat:presence:pending_offline"

STATUS_ONLINE = "online"
STATUS_AWAY = "away"
STATUS_OFFLINE = "offline"


def _now_ms() -> int:
	return int(time.time() * 1000)


def _typing_member(conversation_id: str, user_id: str) -> str:
	return f"{conversation_id}|{user_id}"


class PresenceStore:
	"""Thin typed wrapper over the presence keys; every mutation is a single atomic command or MULTI."""

	def __init__(self, redis, *, dedup_window: int = 1024, recent_ttl_seconds: int = 3600) -> None:
		self._redis = redis
		self._dedup_window = dedup_window
		self._recent_ttl_seconds = recent_ttl_seconds

	# --- sessions and status ---

	async def add_session(self, user_id: str) -> Tuple[int, bool]:
		"""Count a new session; returns (session_count, cancelled_pending_offline)."""
		now_ms = _now_ms()
		key = ONLINE_KEY.format(user_id=user_id)
		async with self._redis.pipeline(transaction=True) as pipe:
			pipe.hincrby(key, "session_count", 1)
			pipe.hset(key, mapping={"status": STATUS_ONLINE, "last_seen_at": now_ms})
			pipe.zrem(PENDING_OFFLINE_KEY, user_id)
			count, _, cancelled = await pipe.execute()
		return int(count), bool(cancelled)

	async def remove_session(self, user_id: str) -> int:
		key = ONLINE_KEY.format(user_id=user_id)
		async with self._redis.pipeline(transaction=True) as pipe:
			pipe.hincrby(key, "session_count", -1)
			pipe.hset(key, "last_seen_at", _now_ms())
			count, _ = await pipe.execute()
		count = int(count)
		if count < 0:
			await self._redis.hset(key, "session_count", 0)
			count = 0
		return count

	async def schedule_offline(self, user_id: str, grace_seconds: float) -> None:
		deadline = _now_ms() + int(grace_seconds * 1000)
		await self._redis.zadd(PENDING_OFFLINE_KEY, {user_id: deadline})

	async def due_offline(self, *, now_ms: Optional[int] = None, limit: int = 100) -> List[str]:
		now_ms = _now_ms() if now_ms is None else now_ms
		members = await self._redis.zrangebyscore(PENDING_OFFLINE_KEY, "-inf", now_ms, start=0, num=limit)
		return [str(member) for member in members]

	async def finalize_offline(self, user_id: str) -> bool:
		"""Mark the user offline if still pending and sessionless; only one caller wins."""
		removed = await self._redis.zrem(PENDING_OFFLINE_KEY, user_id)
		if not removed:
			return False
		key = ONLINE_KEY.format(user_id=user_id)
		count = await self._redis.hget(key, "session_count")
		if count is not None and int(count) > 0:
			return False
		await self._redis.hset(key, mapping={"status": STATUS_OFFLINE, "last_seen_at": _now_ms(), "session_count": 0})
		return True

	async def set_status(self, user_id: str, status: str) -> None:
		await self._redis.hset(
			ONLINE_KEY.format(user_id=user_id),
			mapping={"status": status, "last_seen_at": _now_ms()},
		)

	async def get_presence(self, user_id: str) -> PresenceSnapshot:
		raw = await self._redis.hgetall(ONLINE_KEY.format(user_id=user_id))
		if not raw:
			return PresenceSnapshot(user_id=user_id)
		last_seen = raw.get("last_seen_at")
		return PresenceSnapshot(
			user_id=user_id,
			status=raw.get("status", STATUS_OFFLINE),
			last_seen_at=datetime.fromtimestamp(int(last_seen) / 1000, tz=timezone.utc) if last_seen else None,
			session_count=int(raw.get("session_count", 0)),
		)

	# --- typing markers ---

	async def set_typing(self, conversation_id: str, user_id: str, ttl_seconds: float) -> bool:
		"""Set or refresh a typing marker; True when no live marker existed before."""
		ttl_ms = max(1, int(ttl_seconds * 1000))
		key = TYPING_KEY.format(conversation_id=conversation_id, user_id=user_id)
		async with self._redis.pipeline(transaction=True) as pipe:
			pipe.exists(key)
			pipe.set(key, "1", px=ttl_ms)
			pipe.zadd(TYPING_ACTIVE_KEY, {_typing_member(conversation_id, user_id): _now_ms() + ttl_ms})
			existed, _, _ = await pipe.execute()
		return not bool(existed)

	async def clear_typing(self, conversation_id: str, user_id: str) -> bool:
		"""Remove a typing marker; True when a marker was present."""
		key = TYPING_KEY.format(conversation_id=conversation_id, user_id=user_id)
		async with self._redis.pipeline(transaction=True) as pipe:
			pipe.delete(key)
			pipe.zrem(TYPING_ACTIVE_KEY, _typing_member(conversation_id, user_id))
			deleted, removed = await pipe.execute()
		return bool(deleted) or bool(removed)

	async def is_typing(self, conversation_id: str, user_id: str) -> bool:
		return bool(await self._redis.exists(TYPING_KEY.format(conversation_id=conversation_id, user_id=user_id)))

	async def claim_expired_typing(self, *, now_ms: Optional[int] = None, limit: int = 100) -> List[Tuple[str, str]]:
		"""Remove and return markers whose deadline has passed; each is claimed by exactly one caller."""
		now_ms = _now_ms() if now_ms is None else now_ms
		members = await self._redis.zrangebyscore(TYPING_ACTIVE_KEY, "-inf", now_ms, start=0, num=limit)
		claimed: List[Tuple[str, str]] = []
		for member in members:
			if not await self._redis.zrem(TYPING_ACTIVE_KEY, member):
				continue
			conversation_id, _, user_id = str(member).rpartition("|")
			await self._redis.delete(TYPING_KEY.format(conversation_id=conversation_id, user_id=user_id))
			claimed.append((conversation_id, user_id))
		return claimed

	# --- read markers ---

	async def set_read_marker(self, conversation_id: str, user_id: str, up_to_message_id: str, ttl_seconds: int) -> Optional[str]:
		"""Store the marker and return the previous value."""
		previous = await self._redis.set(
			READ_KEY.format(conversation_id=conversation_id, user_id=user_id),
			up_to_message_id,
			ex=ttl_seconds,
			get=True,
		)
		return str(previous) if previous is not None else None

	async def get_read_marker(self, conversation_id: str, user_id: str) -> Optional[str]:
		value = await self._redis.get(READ_KEY.format(conversation_id=conversation_id, user_id=user_id))
		return str(value) if value is not None else None

	async def restore_read_marker(self, conversation_id: str, user_id: str, previous: Optional[str], ttl_seconds: int) -> None:
		key = READ_KEY.format(conversation_id=conversation_id, user_id=user_id)
		if previous is None:
			await self._redis.delete(key)
		else:
			await self._redis.set(key, previous, ex=ttl_seconds)

	# --- dedup sets ---

	async def remember_message(self, conversation_id: str, node_id: str, message_id: str, score_ms: int) -> bool:
		"""Record a message id in this node's recent set; False when it was already present."""
		key = RECENT_KEY.format(conversation_id=conversation_id, node_id=node_id)
		async with self._redis.pipeline(transaction=True) as pipe:
			pipe.zadd(key, {message_id: score_ms}, nx=True)
			pipe.zremrangebyrank(key, 0, -(self._dedup_window + 1))
			pipe.expire(key, self._recent_ttl_seconds)
			added, _, _ = await pipe.execute()
		return bool(added)

	async def prune_recent_sets(self, *, batch: int = 100) -> int:
		"""Trim every recent-id set to the dedup window; returns the number of ids removed."""
		removed = 0
		async for key in self._redis.scan_iter(match=RECENT_PATTERN, count=batch):
			removed += int(await self._redis.zremrangebyrank(key, 0, -(self._dedup_window + 1)))
		return removed
