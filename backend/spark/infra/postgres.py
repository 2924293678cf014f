"""AsyncPG pool management for the chat core."""

from __future__ import annotations

import logging
from typing import Optional

import asyncpg

from spark.infra.schema import SCHEMA_STATEMENTS
from spark.settings import settings

_LOG = logging.getLogger(__name__)

_pool: Optional[asyncpg.pool.Pool] = None


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		_pool = await asyncpg.create_pool(
			dsn=settings.postgres_url,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
		)
		if settings.postgres_auto_schema:
			await apply_schema(_pool)
	return _pool


async def apply_schema(pool: asyncpg.pool.Pool) -> None:
	async with pool.acquire() as conn:
		async with conn.transaction():
			for statement in SCHEMA_STATEMENTS:
				await conn.execute(statement)
	_LOG.info("postgres.schema_applied", extra={"statements": len(SCHEMA_STATEMENTS)})


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		await init_pool()
	assert _pool is not None
	return _pool


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None
