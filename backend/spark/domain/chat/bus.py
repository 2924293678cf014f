"""Redis pub/sub bridge that carries chat events between processes."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from redis.exceptions import RedisError

from spark.obs import metrics as obs_metrics

from . import events

_LOG = logging.getLogger(__name__)

CONVERSATION_CHANNEL = "chat:conv:{conversation_id}"
PRESENCE_CHANNEL = "chat:presence"


class BusEnvelope(BaseModel):
	"""Event as published by one node for the others."""

	model_config = ConfigDict(extra="ignore")

	origin: str = Field(..., min_length=1)
	event: str = Field(..., min_length=1)
	data: Dict[str, Any] = Field(default_factory=dict)
	conversation_id: Optional[str] = None
	message_id: Optional[str] = None
	created_at_ms: Optional[int] = None
	user_id: Optional[str] = None
	exclude_connection: Optional[str] = None


EnvelopeHandler = Callable[[BusEnvelope], Awaitable[None]]


class ChatBus:
	"""Subscribes per conversation and hands decoded envelopes from other nodes to a handler.

	One pub/sub connection per process; the presence channel is always
	subscribed so the listener has a connection to read from.
	"""

	def __init__(self, redis, *, node_id: str, poll_timeout: float = 1.0) -> None:
		self._redis = redis
		self.node_id = node_id
		self._poll_timeout = poll_timeout
		self._pubsub = None
		self._handler: Optional[EnvelopeHandler] = None
		self._listener: Optional[asyncio.Task] = None
		self._channels: Set[str] = set()
		self._lock = asyncio.Lock()
		self._running = False

	@property
	def running(self) -> bool:
		return self._running

	def bind(self, handler: EnvelopeHandler) -> None:
		self._handler = handler

	async def start(self) -> None:
		if self._running:
			return
		self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
		await self._pubsub.subscribe(PRESENCE_CHANNEL, *sorted(self._channels))
		self._running = True
		self._listener = asyncio.create_task(self._listen(), name="chat-bus-listener")
		_LOG.info("chat.bus.started", extra={"node_id": self.node_id})

	async def stop(self) -> None:
		self._running = False
		if self._listener is not None:
			self._listener.cancel()
			await asyncio.gather(self._listener, return_exceptions=True)
			self._listener = None
		if self._pubsub is not None:
			try:
				await self._pubsub.aclose()
			except (RedisError, OSError) as exc:
				_LOG.info("chat.bus.close_failed", extra={"error": type(exc).__name__})
			self._pubsub = None

	async def subscribe(self, conversation_id: str) -> None:
		channel = CONVERSATION_CHANNEL.format(conversation_id=conversation_id)
		async with self._lock:
			if channel in self._channels:
				return
			self._channels.add(channel)
			if self._pubsub is not None:
				await self._pubsub.subscribe(channel)

	async def unsubscribe(self, conversation_id: str) -> None:
		channel = CONVERSATION_CHANNEL.format(conversation_id=conversation_id)
		async with self._lock:
			if channel not in self._channels:
				return
			self._channels.discard(channel)
			if self._pubsub is not None:
				await self._pubsub.unsubscribe(channel)

	def is_subscribed(self, conversation_id: str) -> bool:
		return CONVERSATION_CHANNEL.format(conversation_id=conversation_id) in self._channels

	async def publish_conversation(self, conversation_id: str, envelope: BusEnvelope) -> None:
		await self._publish(CONVERSATION_CHANNEL.format(conversation_id=conversation_id), envelope)

	async def publish_presence(self, envelope: BusEnvelope) -> None:
		await self._publish(PRESENCE_CHANNEL, envelope)

	def envelope(self, event: str, data: Dict[str, Any], **fields: Any) -> BusEnvelope:
		return BusEnvelope(origin=self.node_id, event=event, data=data, **fields)

	async def _publish(self, channel: str, envelope: BusEnvelope) -> None:
		try:
			await self._redis.publish(channel, envelope.model_dump_json(exclude_none=True))
		except (RedisError, OSError) as exc:
			# Local members already have the event; remote nodes miss this one.
			obs_metrics.inc_bus_event("publish_failed")
			_LOG.warning(
				"chat.bus.publish_failed",
				extra={"channel": channel, "event_name": envelope.event, "error": type(exc).__name__},
			)

	async def _listen(self) -> None:
		assert self._pubsub is not None
		while self._running:
			try:
				message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=self._poll_timeout)
			except asyncio.CancelledError:
				raise
			except (RedisError, OSError) as exc:
				_LOG.warning("chat.bus.read_failed", extra={"error": type(exc).__name__})
				await asyncio.sleep(self._poll_timeout)
				continue
			if not message or message.get("type") != "message":
				continue
			await self.handle_raw(message.get("data"))

	async def handle_raw(self, raw: Any) -> None:
		"""Decode one published payload and pass it on; malformed payloads are logged and dropped."""
		try:
			if isinstance(raw, bytes):
				raw = raw.decode("utf-8")
			envelope = BusEnvelope.model_validate(json.loads(raw))
		except (TypeError, ValueError, UnicodeDecodeError, ValidationError):
			obs_metrics.inc_bus_event("malformed")
			_LOG.warning("chat.bus.malformed_event", extra={"size": len(raw) if isinstance(raw, (str, bytes)) else 0})
			return
		if envelope.origin == self.node_id:
			obs_metrics.inc_bus_event("echo")
			return
		if envelope.event not in events.OUTBOUND_EVENTS:
			obs_metrics.inc_bus_event("unknown_event")
			_LOG.warning("chat.bus.unknown_event", extra={"event_name": envelope.event[:64]})
			return
		if self._handler is None:
			return
		try:
			await self._handler(envelope)
			obs_metrics.inc_bus_event("delivered")
		except Exception:
			obs_metrics.inc_bus_event("handler_failed")
			_LOG.exception("chat.bus.handler_failed", extra={"event_name": envelope.event})
