"""Event router: validates inbound chat events, applies them and emits the outbound events.

Socket frames arrive through `dispatch`; the REST fallback calls the same
operations (`send_message`, `mark_read`, `delete_message`) with an `Actor`
that has no connection id.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from spark.infra import rate_limit
from spark.infra.rate_limit import RateLimiter
from spark.obs import metrics as obs_metrics

from . import events
from .blocks import BlockList
from .config import ChatConfig
from .ephemeral import EphemeralPhotoService
from .events import ChatError, ErrorCode
from .models import Actor, Message
from .policy import VERDICT_ALLOW, ContentPolicy, PolicyDecision
from .presence import STATUS_AWAY, STATUS_ONLINE, PresenceStore
from .registry import SessionRegistry
from .repo import MessageIdFactory, MessageNotFoundError, MessageOwnershipError, MessageRepository
from .resilience import best_effort, call_with_retry
from .session import CLOSE_MESSAGE_TOO_BIG, Session

_LOG = logging.getLogger(__name__)

Handler = Callable[[Session, Any], Awaitable[None]]

EPHEMERAL_PHOTO = "ephemeral_photo"


class _ConversationLocks:
	"""One lock per conversation, dropped when nobody holds or waits on it."""

	def __init__(self) -> None:
		self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

	@asynccontextmanager
	async def hold(self, conversation_id: str) -> AsyncIterator[None]:
		lock, users = self._locks.get(conversation_id, (None, 0))
		if lock is None:
			lock = asyncio.Lock()
		self._locks[conversation_id] = (lock, users + 1)
		try:
			async with lock:
				yield
		finally:
			lock, users = self._locks[conversation_id]
			if users <= 1:
				self._locks.pop(conversation_id, None)
			else:
				self._locks[conversation_id] = (lock, users - 1)


class EventRouter:
	def __init__(
		self,
		*,
		registry: SessionRegistry,
		repository: MessageRepository,
		presence: PresenceStore,
		limiter: RateLimiter,
		policy: ContentPolicy,
		photos: EphemeralPhotoService,
		config: ChatConfig,
		blocks: BlockList,
		id_factory: Optional[MessageIdFactory] = None,
	) -> None:
		self._registry = registry
		self._repository = repository
		self._blocks = blocks
		self._message_ids = id_factory or MessageIdFactory()
		self._presence = presence
		self._limiter = limiter
		self._policy = policy
		self._photos = photos
		self._config = config
		self._conversation_locks = _ConversationLocks()
		self._handlers: Dict[str, Handler] = {
			events.CONVERSATION_JOIN: self._on_join,
			events.CONVERSATION_LEAVE: self._on_leave,
			events.MESSAGE_SEND: self._on_send,
			events.MESSAGE_DELETE: self._on_delete,
			events.MESSAGE_READ: self._on_read,
			events.TYPING_START: self._on_typing_start,
			events.TYPING_STOP: self._on_typing_stop,
			events.USER_STATUS: self._on_status,
			events.PING: self._on_ping,
		}

	# --- socket entry point ---

	async def dispatch(self, session: Session, raw: str | bytes) -> None:
		"""Handle one inbound frame; every failure becomes an `error` event or a log line."""
		session.touch()
		size = len(raw.encode("utf-8")) if isinstance(raw, str) else len(raw)
		if size > self._config.max_message_size:
			session.send_error(ChatError(ErrorCode.MESSAGE_TOO_LARGE))
			await session.close(
				CLOSE_MESSAGE_TOO_BIG,
				ErrorCode.MESSAGE_TOO_LARGE.value,
				drain_timeout=self._config.write_wait,
			)
			return
		try:
			frame = events.parse_inbound(raw)
		except ChatError as exc:
			session.send_error(exc)
			return
		obs_metrics.inc_chat_inbound(frame.event)
		handler = self._handlers[frame.event]
		try:
			await handler(session, frame)
		except ChatError as exc:
			session.send_error(exc)
		except Exception:
			obs_metrics.inc_handler_failure(frame.event)
			_LOG.exception(
				"chat.router.handler_failed",
				extra={"event_name": frame.event, "connection_id": session.connection_id},
			)

	@staticmethod
	def _actor(session: Session) -> Actor:
		return Actor(user_id=session.user_id, roles=session.roles, connection_id=session.connection_id)

	async def _on_join(self, session: Session, frame: events.JoinFrame) -> None:
		await self.join(self._actor(session), frame.data.conversation_id)

	async def _on_leave(self, session: Session, frame: events.LeaveFrame) -> None:
		await self.leave(self._actor(session), frame.data.conversation_id)

	async def _on_send(self, session: Session, frame: events.SendFrame) -> None:
		data = frame.data
		await self.send_message(
			self._actor(session),
			data.conversation_id,
			content=data.content,
			type=data.type,
			metadata=data.metadata,
		)

	async def _on_delete(self, session: Session, frame: events.DeleteFrame) -> None:
		await self.delete_message(self._actor(session), frame.data.conversation_id, frame.data.message_id)

	async def _on_read(self, session: Session, frame: events.ReadFrame) -> None:
		await self.mark_read(self._actor(session), frame.data.conversation_id, frame.data.up_to_message_id)

	async def _on_typing_start(self, session: Session, frame: events.TypingStartFrame) -> None:
		await self.typing_start(self._actor(session), frame.data.conversation_id)

	async def _on_typing_stop(self, session: Session, frame: events.TypingStopFrame) -> None:
		await self.typing_stop(self._actor(session), frame.data.conversation_id)

	async def _on_status(self, session: Session, frame: events.StatusFrame) -> None:
		await self.update_status(self._actor(session), frame.data.status)

	async def _on_ping(self, session: Session, frame: events.PingFrame) -> None:
		session.send(events.PONG, {"server_time": datetime.now(timezone.utc).isoformat()})

	# --- helpers ---

	async def _call(self, operation: str, factory):
		return await call_with_retry(operation, factory, timeout=self._config.router_op_timeout)

	async def _members(self, actor: Actor, conversation_id: str) -> Tuple[str, ...]:
		members = await self._call(
			"repository.get_conversation_members",
			lambda: self._repository.get_conversation_members(conversation_id),
		)
		if not members or actor.user_id not in members:
			raise ChatError(ErrorCode.NOT_A_MEMBER)
		return tuple(members)

	async def _require_unblocked(self, actor: Actor, conversation_id: str, members: Tuple[str, ...]) -> None:
		for other in members:
			if other == actor.user_id:
				continue
			blocked = await self._call(
				"blocks.is_blocked",
				lambda other=other: self._blocks.is_blocked(actor.user_id, other),
			)
			if blocked:
				_LOG.info("chat.conversation.blocked", extra={"conversation_id": conversation_id, "user_id": actor.user_id})
				raise ChatError(ErrorCode.UNAUTHORIZED, "conversation is blocked")

	def _require_room(self, actor: Actor, conversation_id: str) -> None:
		if actor.connection_id is None or not self._registry.is_member(actor.connection_id, conversation_id):
			raise ChatError(ErrorCode.NOT_A_MEMBER, "join the conversation first")

	async def _check_rate(self, action: str, actor: Actor) -> None:
		decision = await self._limiter.hit(action, actor.user_id)
		if not decision.allowed:
			obs_metrics.inc_rate_limited(action)
			raise ChatError(ErrorCode.RATE_LIMITED, retry_after_ms=decision.retry_after_ms)

	# --- operations ---

	async def join(self, actor: Actor, conversation_id: str) -> None:
		await self._check_rate(rate_limit.JOIN_CONVERSATION, actor)
		members = await self._members(actor, conversation_id)
		await self._require_unblocked(actor, conversation_id, members)
		if actor.connection_id is None:
			raise ChatError(ErrorCode.UNAUTHORIZED, "join requires a live connection")
		joined = await self._registry.join_conversation(actor.connection_id, conversation_id, members)
		session = self._registry.get(actor.connection_id)
		if session is not None:
			session.send(events.CONVERSATION_JOINED, {"conversation_id": conversation_id}, conversation_id=conversation_id)
		_LOG.info(
			"chat.conversation.joined",
			extra={"conversation_id": conversation_id, "connection_id": actor.connection_id, "new_member": joined},
		)

	async def leave(self, actor: Actor, conversation_id: str) -> None:
		if actor.connection_id is None:
			raise ChatError(ErrorCode.NOT_A_MEMBER)
		await self._registry.leave_conversation(actor.connection_id, conversation_id)
		session = self._registry.get(actor.connection_id)
		if session is not None:
			session.send(events.CONVERSATION_LEFT, {"conversation_id": conversation_id}, conversation_id=conversation_id)

	async def send_message(
		self,
		actor: Actor,
		conversation_id: str,
		*,
		content: str = "",
		type: str = "text",
		metadata: Optional[Dict[str, Any]] = None,
	) -> Message:
		"""Persist a message and fan it out to the room, sender included."""
		metadata = dict(metadata or {})
		if type == "text":
			if not content.strip():
				raise ChatError(ErrorCode.INVALID_MESSAGE_FORMAT, "text messages need content")
			if len(content) > self._config.message_max_chars:
				raise ChatError(
					ErrorCode.MESSAGE_TOO_LARGE,
					f"text is limited to {self._config.message_max_chars} characters",
				)
		elif len(content) > self._config.message_max_chars:
			raise ChatError(ErrorCode.MESSAGE_TOO_LARGE)
		photo_id = metadata.get("photo_id") if type == EPHEMERAL_PHOTO else None
		if type == EPHEMERAL_PHOTO and not isinstance(photo_id, str):
			raise ChatError(ErrorCode.INVALID_MESSAGE_FORMAT, "ephemeral photos need metadata.photo_id")

		members = await self._members(actor, conversation_id)
		await self._require_unblocked(actor, conversation_id, members)
		await self._check_rate(rate_limit.SEND_MESSAGE, actor)

		decision = PolicyDecision(verdict=VERDICT_ALLOW)
		if content:
			decision = await self._call("policy.classify", lambda: self._policy.classify(content))
		obs_metrics.inc_policy_verdict(decision.verdict)
		if decision.blocked:
			_LOG.info(
				"chat.message.blocked",
				extra={"conversation_id": conversation_id, "risk_score": decision.risk_score, "reasons": list(decision.reasons)},
			)
			raise ChatError(ErrorCode.CONTENT_BLOCKED)
		urls: List[str] = self._policy.extract_urls(content) if content else []
		if urls:
			metadata["urls"] = urls

		if photo_id is not None:
			photo = await self._photos.attach_to_message(
				photo_id,
				owner_user_id=actor.user_id,
				conversation_id=conversation_id,
			)
			metadata = {**{k: v for k, v in metadata.items() if k != "storage_ref"}, **photo.public_view()}

		async with self._conversation_locks.hold(conversation_id):
			# Retries reuse the id so a write that landed late is not stored twice.
			message_id, created_at = self._message_ids.next()
			message = await self._call(
				"repository.insert_message",
				lambda: self._repository.insert_message(
					conversation_id,
					actor.user_id,
					message_id=message_id,
					created_at=created_at,
					type=type,
					content=content,
					metadata=metadata,
					flagged=decision.flagged,
				),
			)
			await self._registry.fan_out(
				conversation_id,
				events.MESSAGE_NEW,
				{"message": message.to_dict()},
				message_id=message.message_id,
				created_at_ms=message.created_at_ms,
			)
		_LOG.info(
			"chat.message.sent",
			extra={
				"conversation_id": conversation_id,
				"message_id": message.message_id,
				"message_type": type,
				"flagged": message.flagged,
				"members": len(members),
			},
		)

		cleared = await best_effort(
			"presence.clear_typing",
			lambda: self._presence.clear_typing(conversation_id, actor.user_id),
			timeout=self._config.router_op_timeout,
			default=False,
		)
		if cleared:
			await self._emit_typing(actor, conversation_id, False)
		return message

	async def delete_message(self, actor: Actor, conversation_id: str, message_id: str) -> Message:
		await self._members(actor, conversation_id)
		try:
			message = await self._call(
				"repository.soft_delete_message",
				lambda: self._repository.soft_delete_message(
					conversation_id,
					message_id,
					requested_by=actor.user_id,
					allow_any=actor.is_admin,
				),
			)
		except MessageNotFoundError as exc:
			raise ChatError(ErrorCode.GONE, "message not found or already deleted") from exc
		except MessageOwnershipError as exc:
			raise ChatError(ErrorCode.UNAUTHORIZED, "only the sender can delete this message") from exc

		if message.type == EPHEMERAL_PHOTO and message.sender_user_id == actor.user_id:
			photo_id = message.metadata.get("photo_id")
			if photo_id:
				try:
					await self._photos.delete_by_owner(str(photo_id), actor.user_id)
				except ChatError as exc:
					_LOG.info("chat.message.photo_not_deleted", extra={"photo_id": photo_id, "code": exc.code.value})

		await self._registry.fan_out(
			conversation_id,
			events.MESSAGE_DELETED,
			{"conversation_id": conversation_id, "message_id": message_id},
		)
		return message

	async def mark_read(self, actor: Actor, conversation_id: str, up_to_message_id: str) -> bool:
		"""Persist a read marker; False when the same marker was already recorded."""
		if actor.connection_id is not None:
			self._require_room(actor, conversation_id)
		else:
			await self._members(actor, conversation_id)

		ttl = self._config.read_marker_ttl
		previous = await self._call(
			"presence.set_read_marker",
			lambda: self._presence.set_read_marker(conversation_id, actor.user_id, up_to_message_id, ttl),
		)
		if previous == up_to_message_id:
			return False
		try:
			await self._call(
				"repository.mark_read",
				lambda: self._repository.mark_read(conversation_id, actor.user_id, up_to_message_id),
			)
		except ChatError:
			await best_effort(
				"presence.restore_read_marker",
				lambda: self._presence.restore_read_marker(conversation_id, actor.user_id, previous, ttl),
				timeout=self._config.router_op_timeout,
				default=None,
			)
			raise

		await self._registry.fan_out(
			conversation_id,
			events.MESSAGE_READ_RECEIPT,
			{"conversation_id": conversation_id, "user_id": actor.user_id, "up_to_message_id": up_to_message_id},
			except_connection=actor.connection_id,
		)
		return True

	async def typing_start(self, actor: Actor, conversation_id: str) -> None:
		self._require_room(actor, conversation_id)
		await self._check_rate(rate_limit.START_TYPING, actor)
		started = await self._call(
			"presence.set_typing",
			lambda: self._presence.set_typing(conversation_id, actor.user_id, self._config.typing_ttl),
		)
		if started:
			await self._emit_typing(actor, conversation_id, True)

	async def typing_stop(self, actor: Actor, conversation_id: str) -> None:
		self._require_room(actor, conversation_id)
		cleared = await self._call(
			"presence.clear_typing",
			lambda: self._presence.clear_typing(conversation_id, actor.user_id),
		)
		if cleared:
			await self._emit_typing(actor, conversation_id, False)

	async def _emit_typing(self, actor: Actor, conversation_id: str, is_typing: bool) -> None:
		await self._registry.fan_out(
			conversation_id,
			events.TYPING_INDICATOR,
			{"conversation_id": conversation_id, "user_id": actor.user_id, "is_typing": is_typing},
			except_connection=actor.connection_id,
		)

	async def update_status(self, actor: Actor, status: str) -> None:
		if status not in (STATUS_ONLINE, STATUS_AWAY):
			raise ChatError(ErrorCode.INVALID_MESSAGE_FORMAT, "status must be online or away")
		await self._call("presence.set_status", lambda: self._presence.set_status(actor.user_id, status))
		await self._registry.broadcast_presence(
			events.USER_STATUS_UPDATED,
			actor.user_id,
			{"user_id": actor.user_id, "status": status},
			exclude_connection=actor.connection_id,
		)

	async def history(
		self,
		actor: Actor,
		conversation_id: str,
		*,
		cursor: Optional[str] = None,
		limit: int = 50,
	) -> List[Message]:
		await self._members(actor, conversation_id)
		return await self._call(
			"repository.list_messages",
			lambda: self._repository.list_messages(conversation_id, cursor, limit),
		)
