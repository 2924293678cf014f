"""JSON logging for the chat service.

Log lines carry the fields bound for the current HTTP request or socket
session (request id, user, client ip, connection) in addition to whatever a
call site passes through ``extra``. Values under sensitive keys never reach
the output; long strings and large collections are clipped.
"""

from __future__ import annotations

import json
import logging
import random
import re
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

from spark.settings import settings

_ROOT_LOGGER = "spark"

CONTEXT_FIELDS = ("request_id", "user_id", "client_ip", "connection_id")

_context: ContextVar[Mapping[str, str]] = ContextVar("spark_log_context", default={})

_REDACTED = re.compile(r"token|secret|authorization|password|access_key|storage_ref|content|body|email|phone", re.I)
_CLIP_CHARS = 256
_CLIP_ITEMS = 10

# Attributes every LogRecord has; anything else on a record came from `extra`.
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}


def bind_context(**fields: str | None) -> Token:
	"""Layer `fields` over the bound context until `reset_context` is called with the returned token."""
	unknown = set(fields) - set(CONTEXT_FIELDS)
	if unknown:
		raise TypeError(f"unknown log context fields: {sorted(unknown)}")
	merged = dict(_context.get())
	merged.update({key: value for key, value in fields.items() if value})
	return _context.set(merged)


def reset_context(token: Token) -> None:
	_context.reset(token)


def _clip(value: Any) -> Any:
	if value is None or isinstance(value, (bool, int, float)):
		return value
	if isinstance(value, str):
		return value if len(value) <= _CLIP_CHARS else value[:_CLIP_CHARS] + "..."
	if isinstance(value, Mapping):
		clipped = {str(key): _scrub(str(key), item) for key, item in list(value.items())[:_CLIP_ITEMS]}
		if len(value) > _CLIP_ITEMS:
			clipped["..."] = f"+{len(value) - _CLIP_ITEMS} keys"
		return clipped
	if isinstance(value, (list, tuple, set, frozenset)):
		items = [_clip(item) for item in list(value)[:_CLIP_ITEMS]]
		if len(value) > _CLIP_ITEMS:
			items.append("...")
		return items
	return _clip(str(value))


def _scrub(key: str, value: Any) -> Any:
	return "[redacted]" if _REDACTED.search(key) else _clip(value)


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per record."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		payload.update(_context.get())
		for key, value in record.__dict__.items():
			if key not in _RECORD_ATTRS and not key.startswith("_"):
				payload[key] = _scrub(key, value)
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Keep a `rate` share of INFO records; other levels always pass."""

	def __init__(self, rate: float) -> None:
		super().__init__()
		self.rate = max(0.0, min(1.0, rate))

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO or self.rate >= 1.0:
			return True
		return random.random() < self.rate


def configure_logging() -> logging.Logger:
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter(settings.obs_log_sampling_rate_info))
	root = logging.getLogger()
	root.handlers.clear()
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_ROOT_LOGGER)


def get_logger(name: str | None = None) -> logging.Logger:
	return logging.getLogger(name or _ROOT_LOGGER)
