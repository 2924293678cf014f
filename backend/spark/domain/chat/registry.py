"""Process-local session registry: connection, user and conversation indices plus fan-out."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from spark.obs import metrics as obs_metrics

from . import events
from .bus import BusEnvelope, ChatBus
from .config import ChatConfig
from .events import ChatError, ErrorCode
from .presence import STATUS_OFFLINE, STATUS_ONLINE, PresenceStore
from .resilience import TRANSIENT_ERRORS, best_effort
from .session import CLOSE_GOING_AWAY, Session

_LOG = logging.getLogger(__name__)

_ROOM_EVENTS = frozenset(
	{
		events.MESSAGE_NEW,
		events.MESSAGE_DELETED,
		events.MESSAGE_READ_RECEIPT,
		events.TYPING_INDICATOR,
	}
)
_PRESENCE_EVENTS = frozenset({events.USER_ONLINE, events.USER_OFFLINE, events.USER_STATUS_UPDATED})


@dataclass(slots=True)
class Room:
	"""Connections of this process currently joined to one conversation."""

	conversation_id: str
	participant_user_ids: Tuple[str, ...]
	member_connection_ids: Set[str] = field(default_factory=set)


class SessionRegistry:
	"""Single owner of live sessions; rooms hold connection ids, never sessions.

	Index mutations run under one asyncio lock. Delivery paths snapshot member
	ids without awaiting, so they never hold the lock while enqueueing.
	"""

	def __init__(self, *, presence: PresenceStore, bus: ChatBus, config: ChatConfig) -> None:
		self._presence = presence
		self._bus = bus
		self._config = config
		self._by_connection: Dict[str, Session] = {}
		self._by_user: Dict[str, Set[str]] = {}
		self._rooms: Dict[str, Room] = {}
		self._lock = asyncio.Lock()
		self._offline_tasks: Dict[str, asyncio.Task] = {}
		bus.bind(self.handle_envelope)

	# --- lookups ---

	def get(self, connection_id: str) -> Optional[Session]:
		return self._by_connection.get(connection_id)

	def sessions(self) -> List[Session]:
		return list(self._by_connection.values())

	def sessions_for_user(self, user_id: str) -> List[Session]:
		return [self._by_connection[cid] for cid in self._by_user.get(user_id, ()) if cid in self._by_connection]

	def room(self, conversation_id: str) -> Optional[Room]:
		return self._rooms.get(conversation_id)

	def is_member(self, connection_id: str, conversation_id: str) -> bool:
		room = self._rooms.get(conversation_id)
		return room is not None and connection_id in room.member_connection_ids

	@property
	def connection_count(self) -> int:
		return len(self._by_connection)

	# --- lifecycle ---

	async def register(self, session: Session) -> None:
		"""Index a session, count it in presence and greet it; MAX_CONNECTIONS past the per-user ceiling."""
		async with self._lock:
			connections = self._by_user.setdefault(session.user_id, set())
			if len(connections) >= self._config.max_connections_per_user:
				if not connections:
					self._by_user.pop(session.user_id, None)
				raise ChatError(ErrorCode.MAX_CONNECTIONS)
			connections.add(session.connection_id)
			self._by_connection[session.connection_id] = session

		pending = self._offline_tasks.pop(session.user_id, None)
		if pending is not None:
			pending.cancel()

		obs_metrics.socket_connected()
		session.send(
			events.CONNECTION_ESTABLISHED,
			{
				"connection_id": session.connection_id,
				"user_id": session.user_id,
				"server_time": datetime.now(timezone.utc).isoformat(),
				"max_message_size": self._config.max_message_size,
				"ping_interval": self._config.ping_interval,
			},
		)

		count, cancelled = await best_effort(
			"presence.add_session",
			lambda: self._presence.add_session(session.user_id),
			timeout=self._config.router_op_timeout,
			default=(0, False),
		)
		_LOG.info(
			"chat.session.registered",
			extra={"connection_id": session.connection_id, "user_id": session.user_id, "session_count": count},
		)
		if count == 1 and not cancelled:
			obs_metrics.inc_presence_transition(STATUS_ONLINE)
			await self.broadcast_presence(events.USER_ONLINE, session.user_id, {"user_id": session.user_id})

	async def unregister(self, connection_id: str, *, reason: str = "closed") -> Optional[Session]:
		"""Drop a session from every index; the last session of a user starts the offline grace."""
		emptied: List[str] = []
		async with self._lock:
			session = self._by_connection.pop(connection_id, None)
			if session is None:
				return None
			connections = self._by_user.get(session.user_id)
			if connections is not None:
				connections.discard(connection_id)
				if not connections:
					self._by_user.pop(session.user_id, None)
			for conversation_id in list(session.joined_conversations):
				room = self._rooms.get(conversation_id)
				if room is None:
					continue
				room.member_connection_ids.discard(connection_id)
				if not room.member_connection_ids:
					self._rooms.pop(conversation_id, None)
					emptied.append(conversation_id)
			session.joined_conversations.clear()
			local_left = len(self._by_user.get(session.user_id, ()))

		for conversation_id in emptied:
			await self._unsubscribe(conversation_id)
		obs_metrics.socket_disconnected(reason)

		count = await best_effort(
			"presence.remove_session",
			lambda: self._presence.remove_session(session.user_id),
			timeout=self._config.router_op_timeout,
			default=local_left,
		)
		_LOG.info(
			"chat.session.unregistered",
			extra={"connection_id": connection_id, "user_id": session.user_id, "reason": reason, "session_count": count},
		)
		if count == 0 and local_left == 0:
			await self._schedule_offline(session.user_id)
		return session

	async def _schedule_offline(self, user_id: str) -> None:
		await best_effort(
			"presence.schedule_offline",
			lambda: self._presence.schedule_offline(user_id, self._config.offline_grace),
			timeout=self._config.router_op_timeout,
			default=None,
		)
		previous = self._offline_tasks.pop(user_id, None)
		if previous is not None:
			previous.cancel()
		self._offline_tasks[user_id] = asyncio.create_task(self._offline_after_grace(user_id), name=f"chat-offline-{user_id}")

	async def _offline_after_grace(self, user_id: str) -> None:
		try:
			await asyncio.sleep(self._config.offline_grace)
			await self.finalize_offline(user_id)
		finally:
			if self._offline_tasks.get(user_id) is asyncio.current_task():
				self._offline_tasks.pop(user_id, None)

	async def finalize_offline(self, user_id: str) -> bool:
		"""Emit `user:offline` if this caller wins the pending-offline entry; the sweeper calls this too."""
		if self._by_user.get(user_id):
			return False
		won = await best_effort(
			"presence.finalize_offline",
			lambda: self._presence.finalize_offline(user_id),
			timeout=self._config.router_op_timeout,
			default=False,
		)
		if not won:
			return False
		obs_metrics.inc_presence_transition(STATUS_OFFLINE)
		await self.broadcast_presence(events.USER_OFFLINE, user_id, {"user_id": user_id})
		return True

	# --- rooms ---

	async def join_conversation(self, connection_id: str, conversation_id: str, participants: Sequence[str]) -> bool:
		"""Add a connection to a room; False when it was already a member.

		`participants` comes from the message repository; the caller must be one of them.
		"""
		session = self._by_connection.get(connection_id)
		if session is None or session.user_id not in participants:
			raise ChatError(ErrorCode.NOT_A_MEMBER)
		async with self._lock:
			room = self._rooms.get(conversation_id)
			if room is None:
				room = Room(conversation_id=conversation_id, participant_user_ids=tuple(participants))
				self._rooms[conversation_id] = room
			else:
				room.participant_user_ids = tuple(participants)
			first_local = not room.member_connection_ids
			joined = connection_id not in room.member_connection_ids
			room.member_connection_ids.add(connection_id)
			session.joined_conversations.add(conversation_id)
		if first_local:
			await self._bus.subscribe(conversation_id)
		return joined

	async def leave_conversation(self, connection_id: str, conversation_id: str) -> None:
		session = self._by_connection.get(connection_id)
		async with self._lock:
			room = self._rooms.get(conversation_id)
			if session is None or room is None or connection_id not in room.member_connection_ids:
				raise ChatError(ErrorCode.NOT_A_MEMBER)
			room.member_connection_ids.discard(connection_id)
			session.joined_conversations.discard(conversation_id)
			emptied = not room.member_connection_ids
			if emptied:
				self._rooms.pop(conversation_id, None)
		if emptied:
			await self._unsubscribe(conversation_id)

	async def _unsubscribe(self, conversation_id: str) -> None:
		if conversation_id in self._rooms:
			return
		try:
			await self._bus.unsubscribe(conversation_id)
		except TRANSIENT_ERRORS as exc:
			_LOG.warning("chat.bus.unsubscribe_failed", extra={"conversation_id": conversation_id, "error": type(exc).__name__})

	# --- delivery ---

	async def fan_out(
		self,
		conversation_id: str,
		event: str,
		data: Dict[str, Any],
		*,
		except_connection: Optional[str] = None,
		message_id: Optional[str] = None,
		created_at_ms: Optional[int] = None,
	) -> int:
		"""Deliver a room event to local members, then publish it for other processes.

		Returns the number of local connections the event was queued for.
		"""
		if message_id is not None:
			await best_effort(
				"presence.remember_message",
				lambda: self._presence.remember_message(conversation_id, self._bus.node_id, message_id, created_at_ms or 0),
				timeout=self._config.router_op_timeout,
				default=True,
			)
		# Local queues are filled before the publish so that no remote echo can
		# reach a member of this process ahead of its local copy.
		delivered = self.deliver_local(
			conversation_id,
			event,
			data,
			except_connection=except_connection,
			message_id=message_id,
		)
		await self._bus.publish_conversation(
			conversation_id,
			self._bus.envelope(
				event,
				data,
				conversation_id=conversation_id,
				message_id=message_id,
				created_at_ms=created_at_ms,
				exclude_connection=except_connection,
			),
		)
		return delivered

	def deliver_local(
		self,
		conversation_id: str,
		event: str,
		data: Dict[str, Any],
		*,
		except_connection: Optional[str] = None,
		message_id: Optional[str] = None,
	) -> int:
		room = self._rooms.get(conversation_id)
		if room is None:
			return 0
		participants = room.participant_user_ids
		delivered = 0
		for connection_id in list(room.member_connection_ids):
			if connection_id == except_connection:
				continue
			session = self._by_connection.get(connection_id)
			if session is None or session.closing:
				continue
			if event == events.MESSAGE_NEW:
				if session.user_id not in participants:
					continue
				if message_id is not None and not session.claim_message(message_id):
					continue
			if session.send(event, data, conversation_id=conversation_id):
				delivered += 1
		return delivered

	async def handle_envelope(self, envelope: BusEnvelope) -> None:
		"""Deliver an event published by another process."""
		if envelope.event in _ROOM_EVENTS and envelope.conversation_id:
			if envelope.message_id is not None:
				fresh = await best_effort(
					"presence.remember_message",
					lambda: self._presence.remember_message(
						envelope.conversation_id,
						self._bus.node_id,
						envelope.message_id,
						envelope.created_at_ms or 0,
					),
					timeout=self._config.router_op_timeout,
					default=True,
				)
				if not fresh:
					obs_metrics.inc_bus_event("duplicate")
					return
			self.deliver_local(
				envelope.conversation_id,
				envelope.event,
				envelope.data,
				except_connection=envelope.exclude_connection,
				message_id=envelope.message_id,
			)
		elif envelope.event in _PRESENCE_EVENTS and envelope.user_id:
			self.deliver_presence(
				envelope.event,
				envelope.user_id,
				envelope.data,
				exclude_connection=envelope.exclude_connection,
			)
		elif envelope.event == events.SERVER_SHUTDOWN:
			return
		else:
			obs_metrics.inc_bus_event("unroutable")
			_LOG.info("chat.bus.unroutable_event", extra={"event_name": envelope.event})

	def deliver_presence(
		self,
		event: str,
		user_id: str,
		data: Dict[str, Any],
		*,
		exclude_connection: Optional[str] = None,
	) -> int:
		"""Send a presence event to every local connection joined to a room that includes `user_id`.

		Online and offline transitions skip the user's own connections; status
		updates reach them too, except the connection that made the change.
		"""
		include_self = event == events.USER_STATUS_UPDATED
		targets: Set[str] = set()
		for room in list(self._rooms.values()):
			if user_id not in room.participant_user_ids:
				continue
			targets.update(room.member_connection_ids)
		delivered = 0
		for connection_id in targets:
			if connection_id == exclude_connection:
				continue
			session = self._by_connection.get(connection_id)
			if session is None or session.closing:
				continue
			if session.user_id == user_id and not include_self:
				continue
			if session.send(event, data):
				delivered += 1
		return delivered

	async def broadcast_presence(
		self,
		event: str,
		user_id: str,
		data: Dict[str, Any],
		*,
		exclude_connection: Optional[str] = None,
	) -> int:
		delivered = self.deliver_presence(event, user_id, data, exclude_connection=exclude_connection)
		await self._bus.publish_presence(
			self._bus.envelope(event, data, user_id=user_id, exclude_connection=exclude_connection)
		)
		return delivered

	# --- shutdown ---

	async def shutdown(self, *, drain_timeout: float) -> None:
		"""Tell every session the server is going away and close them within `drain_timeout`."""
		for task in list(self._offline_tasks.values()):
			task.cancel()
		await asyncio.gather(*self._offline_tasks.values(), return_exceptions=True)
		self._offline_tasks.clear()
		sessions = self.sessions()
		for session in sessions:
			session.send(events.SERVER_SHUTDOWN, {"reconnect_after_ms": 1000})
		if sessions:
			await asyncio.gather(
				*(
					session.close(CLOSE_GOING_AWAY, "server_shutdown", drain_timeout=drain_timeout)
					for session in sessions
				),
				return_exceptions=True,
			)
		_LOG.info("chat.registry.shutdown", extra={"sessions": len(sessions)})
