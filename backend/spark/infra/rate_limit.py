"""Token-bucket rate limiting backed by Redis with an in-process fallback.

Each `(action, subject)` pair owns a bucket of `capacity` tokens that refills
at `capacity` per window. A hit takes one token. On top of the bucket, the
hits accepted over any trailing window may not exceed `capacity + burst`, so
a drained bucket can pick up a short burst of refilled tokens but never a
second full allowance inside the same minute.

The shared check is one Lua script, so the read, refill and take happen
atomically on the server. When Redis is slow or unreachable the same rule runs
against local buckets and a degradation event is logged.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Mapping

from redis.exceptions import RedisError

from spark.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

KEY_TEMPLATE = "rl:{action}:{subject}"
LOG_SUFFIX = ":log"


@dataclass(slots=True, frozen=True)
class RateRule:
	capacity: int
	window_seconds: float = 60.0
	burst: int = 0

	@property
	def refill_per_second(self) -> float:
		return self.capacity / self.window_seconds

	@property
	def window_ceiling(self) -> int:
		return self.capacity + self.burst


@dataclass(slots=True, frozen=True)
class RateDecision:
	allowed: bool
	remaining: int = 0
	retry_after_ms: int = 0
	degraded: bool = False


SEND_MESSAGE = "send_message"
START_TYPING = "start_typing"
JOIN_CONVERSATION = "join_conversation"
CONNECT = "connect"

DEFAULT_RULES: Mapping[str, RateRule] = {
	SEND_MESSAGE: RateRule(capacity=30, window_seconds=60.0, burst=5),
	START_TYPING: RateRule(capacity=20, window_seconds=60.0, burst=5),
	JOIN_CONVERSATION: RateRule(capacity=10, window_seconds=60.0, burst=3),
	CONNECT: RateRule(capacity=10, window_seconds=60.0, burst=2),
}

# KEYS: bucket hash, accepted-hit log
# ARGV: now_ms, capacity, window_ms, window ceiling, log member
# Returns {allowed, remaining tokens, retry_after_ms}
_TAKE_TOKEN = """
local now = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local ceiling = tonumber(ARGV[4])
local rate = capacity / window

local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1]) or capacity
local ts = tonumber(state[2]) or now
if now > ts then
	tokens = math.min(capacity, tokens + (now - ts) * rate)
	ts = now
end

redis.call('ZREMRANGEBYSCORE', KEYS[2], '-inf', now - window)
local accepted = redis.call('ZCARD', KEYS[2])

local wait = 0
if tokens < 1 then
	wait = math.ceil((1 - tokens) / rate)
end
if accepted >= ceiling then
	local oldest = redis.call('ZRANGE', KEYS[2], 0, 0, 'WITHSCORES')
	wait = math.max(wait, tonumber(oldest[2]) + window - now)
end

local allowed = 0
if wait <= 0 then
	allowed = 1
	tokens = tokens - 1
	redis.call('ZADD', KEYS[2], now, ARGV[5])
end
redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'ts', tostring(ts))
redis.call('PEXPIRE', KEYS[1], window + 1000)
redis.call('PEXPIRE', KEYS[2], window + 1000)
return {allowed, math.floor(tokens), math.max(wait, 0)}
"""


@dataclass(slots=True)
class _Bucket:
	tokens: float
	updated_at: float
	accepted: Deque[float] = field(default_factory=deque)


def _take(bucket: _Bucket, rule: RateRule, now: float) -> RateDecision:
	if now > bucket.updated_at:
		bucket.tokens = min(rule.capacity, bucket.tokens + (now - bucket.updated_at) * rule.refill_per_second)
		bucket.updated_at = now
	window_start = now - rule.window_seconds
	while bucket.accepted and bucket.accepted[0] <= window_start:
		bucket.accepted.popleft()
	wait = 0.0
	if bucket.tokens < 1:
		wait = (1 - bucket.tokens) / rule.refill_per_second
	if len(bucket.accepted) >= rule.window_ceiling:
		wait = max(wait, bucket.accepted[0] + rule.window_seconds - now)
	if wait > 0:
		return RateDecision(
			allowed=False,
			remaining=int(bucket.tokens),
			retry_after_ms=max(1, int(math.ceil(wait * 1000))),
			degraded=True,
		)
	bucket.tokens -= 1
	bucket.accepted.append(now)
	return RateDecision(allowed=True, remaining=int(bucket.tokens), degraded=True)


class LocalRateLimiter:
	"""Per-process buckets used when the shared store is unavailable."""

	def __init__(self, clock: Callable[[], float] = time.time, *, max_keys: int = 10000) -> None:
		self._clock = clock
		self._max_keys = max_keys
		self._buckets: Dict[str, _Bucket] = {}

	def hit(self, key: str, rule: RateRule) -> RateDecision:
		now = self._clock()
		bucket = self._buckets.get(key)
		if bucket is None:
			if len(self._buckets) >= self._max_keys:
				self._evict(now, rule.window_seconds)
			bucket = self._buckets.setdefault(key, _Bucket(tokens=float(rule.capacity), updated_at=now))
		return _take(bucket, rule, now)

	def _evict(self, now: float, window_seconds: float) -> None:
		# A bucket untouched for a whole window is full again and carries no log.
		stale = [key for key, bucket in self._buckets.items() if bucket.updated_at <= now - window_seconds]
		for key in stale:
			self._buckets.pop(key, None)
		if len(self._buckets) >= self._max_keys:
			self._buckets.clear()


class RateLimiter:
	"""Shared token-bucket limiter; every check is one script call."""

	def __init__(
		self,
		redis,
		*,
		rules: Mapping[str, RateRule] | None = None,
		store_timeout: float = 0.05,
		clock: Callable[[], float] = time.time,
		fallback: LocalRateLimiter | None = None,
	) -> None:
		self._redis = redis
		self._rules = dict(rules or DEFAULT_RULES)
		self._store_timeout = store_timeout
		self._clock = clock
		self._fallback = fallback or LocalRateLimiter(clock)

	def rule(self, action: str) -> RateRule:
		return self._rules[action]

	async def hit(self, action: str, subject: str) -> RateDecision:
		rule = self._rules[action]
		key = KEY_TEMPLATE.format(action=action, subject=subject)
		try:
			return await asyncio.wait_for(self._hit_store(key, rule), timeout=self._store_timeout)
		except (asyncio.TimeoutError, RedisError, ConnectionError) as exc:
			_LOG.warning(
				"rate_limit.degraded",
				extra={"action": action, "error": type(exc).__name__},
			)
			obs_metrics.inc_rate_limit_degraded(action)
			return self._fallback.hit(key, rule)

	async def _hit_store(self, key: str, rule: RateRule) -> RateDecision:
		now_ms = int(self._clock() * 1000)
		# Registered per call so a swapped client behind the proxy gets the script too.
		script = self._redis.register_script(_TAKE_TOKEN)
		allowed, remaining, retry_after_ms = await script(
			keys=[key, key + LOG_SUFFIX],
			args=[
				now_ms,
				rule.capacity,
				int(rule.window_seconds * 1000),
				rule.window_ceiling,
				f"{now_ms}:{uuid.uuid4().hex[:8]}",
			],
		)
		if int(allowed):
			return RateDecision(allowed=True, remaining=int(remaining))
		return RateDecision(allowed=False, remaining=int(remaining), retry_after_ms=max(1, int(retry_after_ms)))
