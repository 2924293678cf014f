"""Wire schema for the chat socket: inbound frames, outbound events and error codes.

Every frame is a JSON object `{"event": "<type>", "data": {...}}`. Inbound
frames are parsed into one discriminated union so the router can dispatch on
the tag through a static handler table.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class ErrorCode(str, Enum):
	UNAUTHORIZED = "UNAUTHORIZED"
	MAX_CONNECTIONS = "MAX_CONNECTIONS"
	MESSAGE_TOO_LARGE = "MESSAGE_TOO_LARGE"
	INVALID_MESSAGE_FORMAT = "INVALID_MESSAGE_FORMAT"
	UNSUPPORTED_EVENT = "UNSUPPORTED_EVENT"
	NOT_A_MEMBER = "NOT_A_MEMBER"
	CONTENT_BLOCKED = "CONTENT_BLOCKED"
	RATE_LIMITED = "RATE_LIMITED"
	TIMEOUT = "TIMEOUT"
	SLOW_CONSUMER = "SLOW_CONSUMER"
	GONE = "GONE"


_DEFAULT_MESSAGES = {
	ErrorCode.UNAUTHORIZED: "not allowed to perform this action",
	ErrorCode.MAX_CONNECTIONS: "too many concurrent connections",
	ErrorCode.MESSAGE_TOO_LARGE: "message exceeds the size limit",
	ErrorCode.INVALID_MESSAGE_FORMAT: "frame could not be parsed",
	ErrorCode.UNSUPPORTED_EVENT: "event type is not supported",
	ErrorCode.NOT_A_MEMBER: "not a member of this conversation",
	ErrorCode.CONTENT_BLOCKED: "message was blocked by content policy",
	ErrorCode.RATE_LIMITED: "rate limit exceeded",
	ErrorCode.TIMEOUT: "operation timed out",
	ErrorCode.SLOW_CONSUMER: "connection could not keep up",
	ErrorCode.GONE: "resource is no longer available",
}


class ChatError(Exception):
	"""Domain failure reported to the sender as an `error` event or HTTP status."""

	def __init__(self, code: ErrorCode, message: str | None = None, *, retry_after_ms: int | None = None) -> None:
		self.code = code
		self.message = message or _DEFAULT_MESSAGES[code]
		self.retry_after_ms = retry_after_ms
		super().__init__(f"{code.value}: {self.message}")

	def to_payload(self) -> Dict[str, Any]:
		payload: Dict[str, Any] = {"code": self.code.value, "message": self.message}
		if self.retry_after_ms is not None:
			payload["retry_after_ms"] = self.retry_after_ms
		return payload


# Inbound event names
CONVERSATION_JOIN = "conversation:join"
CONVERSATION_LEAVE = "conversation:leave"
MESSAGE_SEND = "message:send"
MESSAGE_DELETE = "message:delete"
MESSAGE_READ = "message:read"
TYPING_START = "typing:start"
TYPING_STOP = "typing:stop"
USER_STATUS = "user:status"
PING = "ping"

INBOUND_EVENTS = frozenset(
	{
		CONVERSATION_JOIN,
		CONVERSATION_LEAVE,
		MESSAGE_SEND,
		MESSAGE_DELETE,
		MESSAGE_READ,
		TYPING_START,
		TYPING_STOP,
		USER_STATUS,
		PING,
	}
)

# Outbound event names
CONNECTION_ESTABLISHED = "connection:established"
CONVERSATION_JOINED = "conversation:joined"
CONVERSATION_LEFT = "conversation:left"
MESSAGE_NEW = "message:new"
MESSAGE_DELETED = "message:deleted"
MESSAGE_READ_RECEIPT = "message:read"
TYPING_INDICATOR = "typing:indicator"
USER_STATUS_UPDATED = "user:status_updated"
USER_ONLINE = "user:online"
USER_OFFLINE = "user:offline"
PONG = "pong"
SERVER_SHUTDOWN = "server:shutdown"
ERROR = "error"

OUTBOUND_EVENTS = frozenset(
	{
		CONNECTION_ESTABLISHED,
		CONVERSATION_JOINED,
		CONVERSATION_LEFT,
		MESSAGE_NEW,
		MESSAGE_DELETED,
		MESSAGE_READ_RECEIPT,
		TYPING_INDICATOR,
		USER_STATUS_UPDATED,
		USER_ONLINE,
		USER_OFFLINE,
		PONG,
		SERVER_SHUTDOWN,
		ERROR,
	}
)

# Frames that may be dropped from a full write queue before the session is evicted
NON_CRITICAL_EVENTS = frozenset({TYPING_INDICATOR, MESSAGE_READ_RECEIPT})

MessageType = Literal["text", "photo", "ephemeral_photo", "location", "system"]
ClientMessageType = Literal["text", "photo", "ephemeral_photo", "location"]


class _Payload(BaseModel):
	model_config = ConfigDict(extra="ignore")


class ConversationRef(_Payload):
	conversation_id: str = Field(..., min_length=1, max_length=128)


class SendMessagePayload(ConversationRef):
	content: str = ""
	type: ClientMessageType = "text"
	metadata: Optional[Dict[str, Any]] = None


class DeleteMessagePayload(ConversationRef):
	message_id: str = Field(..., min_length=1, max_length=64)


class ReadPayload(ConversationRef):
	up_to_message_id: str = Field(..., min_length=1, max_length=64)


class StatusPayload(_Payload):
	status: Literal["online", "away"]


class _Frame(BaseModel):
	model_config = ConfigDict(extra="ignore")


class JoinFrame(_Frame):
	event: Literal["conversation:join"]
	data: ConversationRef


class LeaveFrame(_Frame):
	event: Literal["conversation:leave"]
	data: ConversationRef


class SendFrame(_Frame):
	event: Literal["message:send"]
	data: SendMessagePayload


class DeleteFrame(_Frame):
	event: Literal["message:delete"]
	data: DeleteMessagePayload


class ReadFrame(_Frame):
	event: Literal["message:read"]
	data: ReadPayload


class TypingStartFrame(_Frame):
	event: Literal["typing:start"]
	data: ConversationRef


class TypingStopFrame(_Frame):
	event: Literal["typing:stop"]
	data: ConversationRef


class StatusFrame(_Frame):
	event: Literal["user:status"]
	data: StatusPayload


class PingFrame(_Frame):
	event: Literal["ping"]
	data: Dict[str, Any] = Field(default_factory=dict)


InboundFrame = Annotated[
	Union[
		JoinFrame,
		LeaveFrame,
		SendFrame,
		DeleteFrame,
		ReadFrame,
		TypingStartFrame,
		TypingStopFrame,
		StatusFrame,
		PingFrame,
	],
	Field(discriminator="event"),
]

_INBOUND_ADAPTER: TypeAdapter[InboundFrame] = TypeAdapter(InboundFrame)


def parse_inbound(raw: str | bytes) -> InboundFrame:
	"""Decode one inbound frame or raise `ChatError` with the protocol error code."""
	try:
		decoded = json.loads(raw)
	except (TypeError, ValueError, UnicodeDecodeError):
		raise ChatError(ErrorCode.INVALID_MESSAGE_FORMAT) from None
	if not isinstance(decoded, dict) or not isinstance(decoded.get("event"), str):
		raise ChatError(ErrorCode.INVALID_MESSAGE_FORMAT)
	event = decoded["event"]
	if event not in INBOUND_EVENTS:
		raise ChatError(ErrorCode.UNSUPPORTED_EVENT, f"unsupported event: {event[:64]}")
	if decoded.get("data") is None and event == PING:
		decoded["data"] = {}
	try:
		return _INBOUND_ADAPTER.validate_python(decoded)
	except ValidationError as exc:
		first = exc.errors()[0] if exc.errors() else {}
		location = ".".join(str(part) for part in first.get("loc", ()))
		raise ChatError(ErrorCode.INVALID_MESSAGE_FORMAT, f"invalid field: {location}" if location else None) from None


def encode_frame(event: str, data: Dict[str, Any]) -> str:
	return json.dumps({"event": event, "data": data}, separators=(",", ":"), default=str)


def error_frame(error: ChatError) -> str:
	return encode_frame(ERROR, error.to_payload())
