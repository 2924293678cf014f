"""HTTP fallback for the chat socket: send, read, delete and history."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from spark.domain.chat.core import ChatCore
from spark.domain.chat.models import Actor
from spark.domain.chat.schemas import (
	EphemeralPhotoMessageRequest,
	MessageEnvelope,
	MessageListResponse,
	MessageView,
	ReadRequest,
	ReadResponse,
	SendMessageRequest,
)

from .deps import current_actor, get_chat_core

router = APIRouter(prefix="/chats", tags=["chat"])


@router.post("/{conversation_id}/messages", response_model=MessageEnvelope, status_code=status.HTTP_201_CREATED)
async def send_message_endpoint(
	conversation_id: str,
	payload: SendMessageRequest,
	actor: Actor = Depends(current_actor),
	core: ChatCore = Depends(get_chat_core),
) -> MessageEnvelope:
	message = await core.router.send_message(
		actor,
		conversation_id,
		content=payload.content,
		type=payload.type,
		metadata=payload.metadata,
	)
	return MessageEnvelope(message=MessageView.from_model(message))


@router.get("/{conversation_id}/messages", response_model=MessageListResponse)
async def list_messages_endpoint(
	conversation_id: str,
	cursor: Optional[str] = Query(default=None, max_length=64),
	limit: int = Query(default=50, ge=1, le=200),
	actor: Actor = Depends(current_actor),
	core: ChatCore = Depends(get_chat_core),
) -> MessageListResponse:
	messages = await core.router.history(actor, conversation_id, cursor=cursor, limit=limit)
	next_cursor = messages[-1].message_id if len(messages) == limit else None
	return MessageListResponse(items=[MessageView.from_model(m) for m in messages], next_cursor=next_cursor)


@router.post("/{conversation_id}/read", response_model=ReadResponse)
async def mark_read_endpoint(
	conversation_id: str,
	payload: ReadRequest,
	actor: Actor = Depends(current_actor),
	core: ChatCore = Depends(get_chat_core),
) -> ReadResponse:
	updated = await core.router.mark_read(actor, conversation_id, payload.up_to_message_id)
	return ReadResponse(conversation_id=conversation_id, up_to_message_id=payload.up_to_message_id, updated=updated)


@router.delete("/{conversation_id}/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message_endpoint(
	conversation_id: str,
	message_id: str,
	actor: Actor = Depends(current_actor),
	core: ChatCore = Depends(get_chat_core),
) -> Response:
	await core.router.delete_message(actor, conversation_id, message_id)
	return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
	"/{conversation_id}/ephemeral-photos",
	response_model=MessageEnvelope,
	status_code=status.HTTP_201_CREATED,
)
async def send_ephemeral_photo_endpoint(
	conversation_id: str,
	payload: EphemeralPhotoMessageRequest,
	actor: Actor = Depends(current_actor),
	core: ChatCore = Depends(get_chat_core),
) -> MessageEnvelope:
	message = await core.router.send_message(
		actor,
		conversation_id,
		type="ephemeral_photo",
		metadata={"photo_id": payload.photo_id},
	)
	return MessageEnvelope(message=MessageView.from_model(message))
