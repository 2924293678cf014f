"""Redis connection management.

Provides a stable proxy object so imports like `from spark.infra.redis import redis_client`
always reference the same proxy instance. The underlying client can be swapped at
runtime (e.g., to fakeredis in tests) without breaking previously imported references.
Chat components receive the proxy through their constructors rather than importing it.
"""

from __future__ import annotations

import asyncio
import logging

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from spark.settings import settings

_LOG = logging.getLogger(__name__)


class RedisProxy:
	"""Lightweight proxy that forwards attribute access to an underlying Redis client."""

	def __init__(self, client: redis.Redis):
		self._client: redis.Redis = client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	async def wait_until_ready(self, *, attempts: int = 5, delay: float = 0.5) -> None:
		"""Ping until the server answers; raise the last error once attempts run out."""
		last_error: Exception = RedisConnectionError("redis did not answer a ping")
		for attempt in range(1, attempts + 1):
			try:
				await self._client.ping()
				return
			except (RedisError, OSError) as exc:
				last_error = exc
				_LOG.warning("redis.ping_failed", extra={"attempt": attempt, "error": str(exc)})
				await asyncio.sleep(delay)
		raise last_error

	# Fallback: delegate everything else to the underlying client
	def __getattr__(self, item):
		return getattr(self._client, item)


# Create proxy with the real client by default
_real_client = redis.from_url(settings.redis_url, decode_responses=True)
redis_client: RedisProxy = RedisProxy(_real_client)


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)
