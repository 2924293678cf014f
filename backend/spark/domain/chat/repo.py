"""Message repository: the five persistence calls the chat core depends on."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

import asyncpg
import ulid

from spark.infra.postgres import get_pool

from .models import Message


class MessageRepositoryError(Exception):
	"""Base for domain failures a repository reports; never retried."""


class MessageNotFoundError(MessageRepositoryError):
	"""Message is missing from the conversation or already soft-deleted."""


class MessageOwnershipError(MessageRepositoryError):
	"""Caller is neither the sender nor allowed to delete any message."""


class MessageRepository(Protocol):
	async def get_conversation_members(self, conversation_id: str) -> Optional[Tuple[str, ...]]:
		...

	async def insert_message(
		self,
		conversation_id: str,
		sender_user_id: str,
		*,
		message_id: str,
		created_at: datetime,
		type: str,
		content: str,
		metadata: Dict[str, Any],
		flagged: bool = False,
	) -> Message:
		...

	async def mark_read(self, conversation_id: str, user_id: str, up_to_message_id: str) -> int:
		...

	async def soft_delete_message(
		self,
		conversation_id: str,
		message_id: str,
		*,
		requested_by: str,
		allow_any: bool = False,
	) -> Message:
		...

	async def list_messages(self, conversation_id: str, cursor: Optional[str], limit: int) -> List[Message]:
		...


class MessageIdFactory:
	"""Time-ordered ULIDs that never go backwards within this process."""

	def __init__(self) -> None:
		self._last_id = 0
		self._last_created: Optional[datetime] = None

	def next(self) -> Tuple[str, datetime]:
		created_at = datetime.now(timezone.utc)
		if self._last_created is not None and created_at < self._last_created:
			created_at = self._last_created
		value = ulid.new()
		if value.int <= self._last_id:
			value = ulid.from_int(self._last_id + 1)
		self._last_id = value.int
		self._last_created = created_at
		return str(value), created_at


class InMemoryChatRepository:
	"""Repository used in tests and `chat_store=memory` runs."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._conversations: dict[str, Tuple[str, str]] = {}
		self._messages: dict[str, List[Message]] = {}
		self._read_markers: dict[tuple[str, str], str] = {}

	def add_conversation(self, conversation_id: str, user_a: str, user_b: str) -> None:
		self._conversations[conversation_id] = (user_a, user_b)
		self._messages.setdefault(conversation_id, [])

	def read_marker(self, conversation_id: str, user_id: str) -> Optional[str]:
		return self._read_markers.get((conversation_id, user_id))

	async def get_conversation_members(self, conversation_id: str) -> Optional[Tuple[str, ...]]:
		return self._conversations.get(conversation_id)

	async def insert_message(
		self,
		conversation_id: str,
		sender_user_id: str,
		*,
		message_id: str,
		created_at: datetime,
		type: str,
		content: str,
		metadata: Dict[str, Any],
		flagged: bool = False,
	) -> Message:
		async with self._lock:
			stored = self._messages.setdefault(conversation_id, [])
			for existing in stored:
				if existing.message_id == message_id:
					return existing
			message = Message(
				message_id=message_id,
				conversation_id=conversation_id,
				sender_user_id=sender_user_id,
				type=type,
				content=content,
				metadata=dict(metadata),
				created_at=created_at,
				flagged=flagged,
			)
			stored.append(message)
			return message

	async def mark_read(self, conversation_id: str, user_id: str, up_to_message_id: str) -> int:
		async with self._lock:
			updated = 0
			for message in self._messages.get(conversation_id, []):
				if message.sender_user_id == user_id or message.is_read:
					continue
				if message.message_id <= up_to_message_id:
					message.is_read = True
					updated += 1
			key = (conversation_id, user_id)
			previous = self._read_markers.get(key)
			if previous is None or up_to_message_id > previous:
				self._read_markers[key] = up_to_message_id
			return updated

	async def soft_delete_message(
		self,
		conversation_id: str,
		message_id: str,
		*,
		requested_by: str,
		allow_any: bool = False,
	) -> Message:
		async with self._lock:
			for message in self._messages.get(conversation_id, []):
				if message.message_id != message_id:
					continue
				if message.is_deleted:
					raise MessageNotFoundError(message_id)
				if not allow_any and message.sender_user_id != requested_by:
					raise MessageOwnershipError(message_id)
				message.is_deleted = True
				return message
			raise MessageNotFoundError(message_id)

	async def list_messages(self, conversation_id: str, cursor: Optional[str], limit: int) -> List[Message]:
		async with self._lock:
			messages = [m for m in self._messages.get(conversation_id, []) if not m.is_deleted]
			messages.sort(key=lambda m: m.message_id, reverse=True)
			if cursor:
				messages = [m for m in messages if m.message_id < cursor]
			return messages[:limit]


_MESSAGE_COLUMNS = "message_id, conversation_id, sender_id, type, content, metadata, flagged, is_read, is_deleted, created_at"


class PostgresChatRepository:
	"""Repository backed by asyncpg."""

	def __init__(self, pool: asyncpg.pool.Pool | None = None) -> None:
		self._pool = pool

	async def _acquire_pool(self) -> asyncpg.pool.Pool:
		if self._pool is None:
			self._pool = await get_pool()
		return self._pool

	async def get_conversation_members(self, conversation_id: str) -> Optional[Tuple[str, ...]]:
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"SELECT user_a, user_b FROM chat_conversations WHERE conversation_id = $1",
				conversation_id,
			)
		if not row:
			return None
		return (str(row["user_a"]), str(row["user_b"]))

	async def insert_message(
		self,
		conversation_id: str,
		sender_user_id: str,
		*,
		message_id: str,
		created_at: datetime,
		type: str,
		content: str,
		metadata: Dict[str, Any],
		flagged: bool = False,
	) -> Message:
		"""Insert once per `message_id`; a repeated call returns the row already stored."""
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				f"""
				WITH inserted AS (
					INSERT INTO chat_messages (
					message_id,
					conversation_id,
					sender_id,
					type,
					content,
					metadata,
					flagged,
					created_at
					) VALUES ($1,$2,$3,$4,$5,$6::jsonb,$7,$8)
					ON CONFLICT (message_id) DO NOTHING
					RETURNING {_MESSAGE_COLUMNS}
				)
				SELECT {_MESSAGE_COLUMNS} FROM inserted
				UNION ALL
				SELECT {_MESSAGE_COLUMNS} FROM chat_messages WHERE message_id = $1
				LIMIT 1
				""",
				message_id,
				conversation_id,
				sender_user_id,
				type,
				content,
				json.dumps(metadata),
				flagged,
				created_at,
			)
		return _row_to_message(row)

	async def mark_read(self, conversation_id: str, user_id: str, up_to_message_id: str) -> int:
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				status = await conn.execute(
					"""
					UPDATE chat_messages
					SET is_read = TRUE
					WHERE conversation_id = $1
						AND sender_id <> $2
						AND message_id <= $3
						AND is_read = FALSE
					""",
					conversation_id,
					user_id,
					up_to_message_id,
				)
				await conn.execute(
					"""
					INSERT INTO chat_read_markers (conversation_id, user_id, up_to_message_id)
					VALUES ($1, $2, $3)
					ON CONFLICT (conversation_id, user_id)
					DO UPDATE SET
						up_to_message_id = GREATEST(chat_read_markers.up_to_message_id, EXCLUDED.up_to_message_id),
						updated_at = now()
					""",
					conversation_id,
					user_id,
					up_to_message_id,
				)
		return _affected_rows(status)

	async def soft_delete_message(
		self,
		conversation_id: str,
		message_id: str,
		*,
		requested_by: str,
		allow_any: bool = False,
	) -> Message:
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				f"""
				UPDATE chat_messages
				SET is_deleted = TRUE, deleted_at = now()
				WHERE conversation_id = $1
					AND message_id = $2
					AND is_deleted = FALSE
					AND ($3 OR sender_id = $4)
				RETURNING {_MESSAGE_COLUMNS}
				""",
				conversation_id,
				message_id,
				allow_any,
				requested_by,
			)
			if row:
				return _row_to_message(row)
			existing = await conn.fetchrow(
				"SELECT sender_id, is_deleted FROM chat_messages WHERE conversation_id = $1 AND message_id = $2",
				conversation_id,
				message_id,
			)
		if not existing or existing["is_deleted"]:
			raise MessageNotFoundError(message_id)
		raise MessageOwnershipError(message_id)

	async def list_messages(self, conversation_id: str, cursor: Optional[str], limit: int) -> List[Message]:
		params: List[object] = [conversation_id]
		where_clause = ""
		if cursor:
			params.append(cursor)
			where_clause = " AND message_id < $2"
		params.append(limit)
		query = (
			f"""
			SELECT {_MESSAGE_COLUMNS}
			FROM chat_messages
			WHERE conversation_id = $1 AND is_deleted = FALSE
			"""
			+ where_clause
			+ f" ORDER BY message_id DESC LIMIT ${len(params)}"
		)
		pool = await self._acquire_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(query, *params)
		return [_row_to_message(row) for row in rows]


def _affected_rows(status: str) -> int:
	try:
		return int(str(status).rsplit(" ", 1)[-1])
	except ValueError:
		return 0


def _row_to_message(row: Any) -> Message:
	metadata_raw = row["metadata"]
	if isinstance(metadata_raw, str):
		metadata = json.loads(metadata_raw) if metadata_raw else {}
	else:
		metadata = dict(metadata_raw or {})
	return Message(
		message_id=str(row["message_id"]),
		conversation_id=str(row["conversation_id"]),
		sender_user_id=str(row["sender_id"]),
		type=str(row["type"]),
		content=row["content"] or "",
		metadata=metadata,
		created_at=row["created_at"],
		flagged=bool(row["flagged"]),
		is_read=bool(row["is_read"]),
		is_deleted=bool(row["is_deleted"]),
	)
