"""Domain models for the chat core."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Sequence, Tuple

PHOTO_CREATED = "created"
PHOTO_VIEWED = "viewed"
PHOTO_EXPIRED = "expired"
PHOTO_DELETED = "deleted"
TERMINAL_PHOTO_STATES = frozenset({PHOTO_VIEWED, PHOTO_EXPIRED, PHOTO_DELETED})


@dataclass(slots=True, frozen=True)
class Actor:
	"""The caller of a chat operation, from a socket session or a REST request."""

	user_id: str
	roles: Tuple[str, ...] = ()
	connection_id: Optional[str] = None

	@property
	def is_admin(self) -> bool:
		return "admin" in self.roles


@dataclass(slots=True)
class Message:
	message_id: str
	conversation_id: str
	sender_user_id: str
	type: str
	content: str
	metadata: Dict[str, Any]
	created_at: datetime
	flagged: bool = False
	is_read: bool = False
	is_deleted: bool = False

	def to_dict(self) -> dict:
		return {
			"message_id": self.message_id,
			"conversation_id": self.conversation_id,
			"sender_user_id": self.sender_user_id,
			"type": self.type,
			"content": self.content,
			"metadata": dict(self.metadata),
			"created_at": self.created_at.isoformat(),
			"flagged": self.flagged,
			"is_read": self.is_read,
			"is_deleted": self.is_deleted,
		}

	@property
	def created_at_ms(self) -> int:
		return int(self.created_at.timestamp() * 1000)


@dataclass(slots=True)
class EphemeralPhoto:
	photo_id: str
	owner_user_id: str
	thumbnail_ref: str
	storage_ref: str
	max_views: int
	duration_seconds: int
	created_at: datetime
	expires_at: datetime
	view_count: int = 0
	state: str = PHOTO_CREATED
	conversation_id: Optional[str] = None
	purged_at: Optional[datetime] = None

	@classmethod
	def new(
		cls,
		*,
		photo_id: str,
		owner_user_id: str,
		thumbnail_ref: str,
		storage_ref: str,
		max_views: int,
		duration_seconds: int,
		created_at: datetime,
	) -> "EphemeralPhoto":
		return cls(
			photo_id=photo_id,
			owner_user_id=owner_user_id,
			thumbnail_ref=thumbnail_ref,
			storage_ref=storage_ref,
			max_views=max_views,
			duration_seconds=duration_seconds,
			created_at=created_at,
			expires_at=created_at + timedelta(seconds=duration_seconds),
		)

	def is_expired(self, now: datetime) -> bool:
		return now >= self.expires_at

	@property
	def is_terminal(self) -> bool:
		return self.state in TERMINAL_PHOTO_STATES

	def public_view(self) -> dict:
		"""Attachment fields safe to fan out; never carries the storage reference."""
		return {
			"photo_id": self.photo_id,
			"thumbnail_ref": self.thumbnail_ref,
			"duration_seconds": self.duration_seconds,
			"max_views": self.max_views,
			"expires_at": self.expires_at.isoformat(),
		}

	def status_view(self, now: datetime, views: Sequence["PhotoView"] = ()) -> dict:
		state = self.state
		if state == PHOTO_CREATED and self.is_expired(now):
			state = PHOTO_EXPIRED
		return {
			**self.public_view(),
			"state": state,
			"view_count": self.view_count,
			"conversation_id": self.conversation_id,
			"views": [view.to_dict() for view in views],
		}


@dataclass(slots=True, frozen=True)
class PhotoView:
	"""One counted redemption of an ephemeral photo."""

	viewer_user_id: str
	viewed_at: datetime

	def to_dict(self) -> dict:
		return {"viewer_user_id": self.viewer_user_id, "viewed_at": self.viewed_at.isoformat()}


@dataclass(slots=True, frozen=True)
class AccessGrant:
	photo_id: str
	access_key: str
	viewer_user_id: str
	expires_at: datetime


@dataclass(slots=True, frozen=True)
class PhotoAccess:
	photo_id: str
	storage_ref: str
	view_count: int
	max_views: int
	duration_seconds: int

	def to_dict(self) -> dict:
		return {
			"photo_id": self.photo_id,
			"photo_ref": self.storage_ref,
			"view_count": self.view_count,
			"max_views": self.max_views,
			"duration_seconds": self.duration_seconds,
		}


@dataclass(slots=True)
class PresenceSnapshot:
	user_id: str
	status: str = "offline"
	last_seen_at: Optional[datetime] = None
	session_count: int = 0
