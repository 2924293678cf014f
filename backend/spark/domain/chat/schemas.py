"""Pydantic schemas for the chat REST fallback and ephemeral photo endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .events import ClientMessageType
from .models import AccessGrant, Message, PhotoAccess


class SendMessageRequest(BaseModel):
	content: str = ""
	type: ClientMessageType = "text"
	metadata: Optional[Dict[str, Any]] = None


class ReadRequest(BaseModel):
	up_to_message_id: str = Field(..., min_length=1, max_length=64)


class EphemeralPhotoMessageRequest(BaseModel):
	photo_id: str = Field(..., min_length=1, max_length=64)


class RedeemRequest(BaseModel):
	access_key: str = Field(..., min_length=1, max_length=128)


class MessageView(BaseModel):
	message_id: str = Field(..., examples=["01HZY5AJ6HT7PM1F8M3X2W8Z9V"])
	conversation_id: str
	sender_user_id: str
	type: str
	content: str
	metadata: Dict[str, Any] = Field(default_factory=dict)
	created_at: datetime
	flagged: bool = False
	is_read: bool = False
	is_deleted: bool = False

	@classmethod
	def from_model(cls, message: Message) -> "MessageView":
		return cls(
			message_id=message.message_id,
			conversation_id=message.conversation_id,
			sender_user_id=message.sender_user_id,
			type=message.type,
			content=message.content,
			metadata=dict(message.metadata),
			created_at=message.created_at,
			flagged=message.flagged,
			is_read=message.is_read,
			is_deleted=message.is_deleted,
		)


class MessageEnvelope(BaseModel):
	message: MessageView


class MessageListResponse(BaseModel):
	items: List[MessageView]
	next_cursor: Optional[str] = None


class ReadResponse(BaseModel):
	conversation_id: str
	up_to_message_id: str
	updated: bool


class AccessGrantResponse(BaseModel):
	photo_id: str
	access_key: str
	expires_at: datetime

	@classmethod
	def from_model(cls, grant: AccessGrant) -> "AccessGrantResponse":
		return cls(photo_id=grant.photo_id, access_key=grant.access_key, expires_at=grant.expires_at)


class PhotoAccessResponse(BaseModel):
	photo_id: str
	photo_ref: str
	view_count: int
	max_views: int
	duration_seconds: int

	@classmethod
	def from_model(cls, access: PhotoAccess) -> "PhotoAccessResponse":
		return cls(**access.to_dict())


class PhotoViewResponse(BaseModel):
	viewer_user_id: str
	viewed_at: datetime


class PhotoStatusResponse(BaseModel):
	photo_id: str
	thumbnail_ref: str
	duration_seconds: int
	max_views: int
	expires_at: datetime
	state: str
	view_count: int
	conversation_id: Optional[str] = None
	views: List[PhotoViewResponse] = Field(default_factory=list)
