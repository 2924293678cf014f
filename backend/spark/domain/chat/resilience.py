"""Timeout and retry wrappers for calls into Redis, Postgres and the content policy."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import asyncpg
from redis.exceptions import RedisError

from spark.obs import metrics as obs_metrics

from .events import ChatError, ErrorCode

_LOG = logging.getLogger(__name__)

T = TypeVar("T")

# Socket-level failures only; a PermissionError or FileNotFoundError is not transient.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
	asyncio.TimeoutError,
	RedisError,
	ConnectionError,
	asyncpg.PostgresConnectionError,
	asyncpg.InterfaceError,
)


async def call_with_retry(
	operation: str,
	factory: Callable[[], Awaitable[T]],
	*,
	timeout: float,
	attempts: int = 2,
) -> T:
	"""Run `factory()` under `timeout`, retrying transient failures with a fresh budget.

	Raises `ChatError(TIMEOUT)` once every attempt has failed.
	"""
	last_error: Optional[BaseException] = None
	for attempt in range(1, attempts + 1):
		try:
			return await asyncio.wait_for(factory(), timeout=timeout)
		except TRANSIENT_ERRORS as exc:
			last_error = exc
			obs_metrics.inc_external_failure(operation, attempt)
			_LOG.warning(
				"chat.external_call_failed",
				extra={"operation": operation, "attempt": attempt, "error": type(exc).__name__},
			)
	raise ChatError(ErrorCode.TIMEOUT, f"{operation} timed out") from last_error


async def best_effort(
	operation: str,
	factory: Callable[[], Awaitable[T]],
	*,
	timeout: float,
	default: T,
) -> T:
	"""Run `factory()` once; on a transient failure log it and return `default`."""
	try:
		return await asyncio.wait_for(factory(), timeout=timeout)
	except TRANSIENT_ERRORS as exc:
		obs_metrics.inc_external_failure(operation, 1)
		_LOG.warning(
			"chat.external_call_degraded",
			extra={"operation": operation, "error": type(exc).__name__},
		)
		return default
