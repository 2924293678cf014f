"""Live client sessions and their bounded outbound queues."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional, Protocol, Set

from spark.obs import metrics as obs_metrics

from . import events
from .events import ChatError, ErrorCode

_LOG = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_MESSAGE_TOO_BIG = 1009


class Channel(Protocol):
	"""Framed duplex transport the session writes to (a Starlette WebSocket in production)."""

	async def send_text(self, data: str) -> None:
		...

	async def close(self, code: int = CLOSE_NORMAL, reason: Optional[str] = None) -> None:
		...


@dataclass(slots=True)
class OutboundFrame:
	event: str
	text: str
	conversation_id: Optional[str] = None

	@classmethod
	def build(cls, event: str, data: Dict[str, Any], *, conversation_id: Optional[str] = None) -> "OutboundFrame":
		return cls(event=event, text=events.encode_frame(event, data), conversation_id=conversation_id)

	@property
	def critical(self) -> bool:
		return self.event not in events.NON_CRITICAL_EVENTS


class WriteQueue:
	"""Bounded FIFO with a single consumer; full queues shed non-critical frames first."""

	def __init__(self, maxsize: int) -> None:
		self._maxsize = maxsize
		self._items: Deque[OutboundFrame] = deque()
		self._ready = asyncio.Event()
		self._closed = False

	def __len__(self) -> int:
		return len(self._items)

	@property
	def closed(self) -> bool:
		return self._closed

	def put(self, frame: OutboundFrame) -> bool:
		"""Append a frame; False when the queue is full and nothing could be shed."""
		if self._closed:
			return False
		if len(self._items) >= self._maxsize and not self._shed(frame.conversation_id):
			return False
		self._items.append(frame)
		self._ready.set()
		return True

	def _shed(self, conversation_id: Optional[str]) -> bool:
		for index, queued in enumerate(self._items):
			if not queued.critical and queued.conversation_id == conversation_id:
				del self._items[index]
				obs_metrics.inc_dropped_frame(queued.event)
				return True
		return False

	async def get(self) -> Optional[OutboundFrame]:
		"""Wait for the next frame; None once the queue is closed and empty."""
		while not self._items:
			if self._closed:
				return None
			self._ready.clear()
			await self._ready.wait()
		return self._items.popleft()

	def close(self) -> None:
		self._closed = True
		self._ready.set()


class Session:
	"""One authenticated duplex connection.

	The registry owns sessions; rooms refer to them by `connection_id` only.
	A writer task drains the queue to the channel, and `closed` is the shared
	signal that ends the reader, writer and liveness tasks.
	"""

	def __init__(
		self,
		channel: Channel,
		*,
		connection_id: str,
		user_id: str,
		session_id: str,
		device_id: str,
		roles: tuple[str, ...] = (),
		queue_size: int = 256,
		write_wait: float = 10.0,
		dedup_window: int = 1024,
	) -> None:
		self.channel = channel
		self.connection_id = connection_id
		self.user_id = user_id
		self.session_id = session_id
		self.device_id = device_id
		self.roles = roles
		self.connected_at = datetime.now(timezone.utc)
		self.joined_conversations: Set[str] = set()
		self.last_pong_at = time.monotonic()
		self.queue = WriteQueue(queue_size)
		self.closed = asyncio.Event()
		self.close_code: Optional[int] = None
		self.close_reason: Optional[str] = None
		self._write_wait = write_wait
		self._dedup_window = dedup_window
		self._delivered: "OrderedDict[str, None]" = OrderedDict()
		self._writer: Optional[asyncio.Task] = None
		self._close_task: Optional[asyncio.Task] = None
		self._closing = False

	def __repr__(self) -> str:  # pragma: no cover - debugging aid
		return f"Session(connection_id={self.connection_id!r}, user_id={self.user_id!r})"

	def start(self) -> asyncio.Task:
		if self._writer is None:
			self._writer = asyncio.create_task(self._run_writer(), name=f"chat-writer-{self.connection_id}")
		return self._writer

	def touch(self) -> None:
		self.last_pong_at = time.monotonic()

	def idle_for(self) -> float:
		return time.monotonic() - self.last_pong_at

	def claim_message(self, message_id: str) -> bool:
		"""Record a delivered message id; False when this connection already got it."""
		if message_id in self._delivered:
			return False
		self._delivered[message_id] = None
		while len(self._delivered) > self._dedup_window:
			self._delivered.popitem(last=False)
		return True

	@property
	def closing(self) -> bool:
		return self._closing

	def enqueue(self, frame: OutboundFrame) -> bool:
		if self._closing:
			return False
		if self.queue.put(frame):
			obs_metrics.inc_chat_outbound(frame.event)
			return True
		_LOG.warning(
			"chat.session.slow_consumer",
			extra={"connection_id": self.connection_id, "queued": len(self.queue), "event_name": frame.event},
		)
		self._schedule_close(CLOSE_POLICY_VIOLATION, ErrorCode.SLOW_CONSUMER.value)
		return False

	def send(self, event: str, data: Dict[str, Any], *, conversation_id: Optional[str] = None) -> bool:
		return self.enqueue(OutboundFrame.build(event, data, conversation_id=conversation_id))

	def send_error(self, error: ChatError) -> bool:
		obs_metrics.inc_chat_error(error.code.value)
		return self.enqueue(OutboundFrame(event=events.ERROR, text=events.error_frame(error)))

	async def _run_writer(self) -> None:
		while True:
			frame = await self.queue.get()
			if frame is None:
				return
			try:
				await asyncio.wait_for(self.channel.send_text(frame.text), timeout=self._write_wait)
			except asyncio.TimeoutError:
				_LOG.warning("chat.session.write_timeout", extra={"connection_id": self.connection_id})
				self._schedule_close(CLOSE_POLICY_VIOLATION, ErrorCode.SLOW_CONSUMER.value)
				return
			except Exception as exc:
				_LOG.info(
					"chat.session.write_failed",
					extra={"connection_id": self.connection_id, "error": type(exc).__name__},
				)
				self._schedule_close(CLOSE_GOING_AWAY, "write_failed", send_close=False)
				return

	def _schedule_close(self, code: int, reason: str, *, send_close: bool = True) -> None:
		if self._closing or self._close_task is not None:
			return
		self._close_task = asyncio.get_running_loop().create_task(
			self.close(code, reason, send_close=send_close),
			name=f"chat-close-{self.connection_id}",
		)

	async def close(
		self,
		code: int = CLOSE_NORMAL,
		reason: Optional[str] = None,
		*,
		drain_timeout: Optional[float] = None,
		send_close: bool = True,
	) -> None:
		"""Close the session once; with `drain_timeout` queued frames may flush first.

		`closed` is set only after the channel close completes, so waiters never
		observe a half-closed session.
		"""
		if self._closing:
			return
		self._closing = True
		self.close_code = code
		self.close_reason = reason
		self.queue.close()
		try:
			writer = self._writer
			if writer is not None and not writer.done() and writer is not asyncio.current_task():
				if drain_timeout:
					await asyncio.wait({writer}, timeout=drain_timeout)
				if not writer.done():
					writer.cancel()
			if send_close:
				try:
					await asyncio.wait_for(self.channel.close(code, reason), timeout=self._write_wait)
				except Exception as exc:
					_LOG.info(
						"chat.session.close_failed",
						extra={"connection_id": self.connection_id, "error": type(exc).__name__},
					)
		finally:
			self.closed.set()
