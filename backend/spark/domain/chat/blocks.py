"""Read side of user blocks: the moderation service writes them, the chat core only checks them."""

from __future__ import annotations

import asyncio
from typing import Protocol, Set, Tuple

import asyncpg

from spark.infra.postgres import get_pool


class BlockList(Protocol):
	async def is_blocked(self, user_id: str, other_user_id: str) -> bool:
		"""True when either user has blocked the other."""
		...


class InMemoryBlockList:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._pairs: Set[Tuple[str, str]] = set()

	async def block(self, blocker_id: str, blocked_id: str) -> None:
		async with self._lock:
			self._pairs.add((blocker_id, blocked_id))

	async def unblock(self, blocker_id: str, blocked_id: str) -> None:
		async with self._lock:
			self._pairs.discard((blocker_id, blocked_id))

	async def is_blocked(self, user_id: str, other_user_id: str) -> bool:
		async with self._lock:
			return (user_id, other_user_id) in self._pairs or (other_user_id, user_id) in self._pairs


class PostgresBlockList:
	def __init__(self, pool: asyncpg.pool.Pool | None = None) -> None:
		self._pool = pool

	async def _acquire_pool(self) -> asyncpg.pool.Pool:
		if self._pool is None:
			self._pool = await get_pool()
		return self._pool

	async def is_blocked(self, user_id: str, other_user_id: str) -> bool:
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			return bool(
				await conn.fetchval(
					"""
					SELECT EXISTS (
						SELECT 1 FROM user_blocks
						WHERE (blocker_id = $1 AND blocked_id = $2)
							OR (blocker_id = $2 AND blocked_id = $1)
					)
					""",
					user_id,
					other_user_id,
				)
			)
