"""Ephemeral photo access: issue a single-use key, redeem it, check status, delete."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from spark.domain.chat.core import ChatCore
from spark.domain.chat.models import Actor
from spark.domain.chat.schemas import AccessGrantResponse, PhotoAccessResponse, PhotoStatusResponse, RedeemRequest

from .deps import current_actor, get_chat_core

router = APIRouter(prefix="/ephemeral-photos", tags=["ephemeral-photos"])


@router.post("/{photo_id}/access", response_model=AccessGrantResponse, status_code=status.HTTP_201_CREATED)
async def issue_access_endpoint(
	photo_id: str,
	actor: Actor = Depends(current_actor),
	core: ChatCore = Depends(get_chat_core),
) -> AccessGrantResponse:
	grant = await core.photos.issue_access(photo_id, actor.user_id)
	return AccessGrantResponse.from_model(grant)


@router.post("/{photo_id}/view", response_model=PhotoAccessResponse)
async def redeem_endpoint(
	photo_id: str,
	payload: RedeemRequest,
	actor: Actor = Depends(current_actor),
	core: ChatCore = Depends(get_chat_core),
) -> PhotoAccessResponse:
	access = await core.photos.redeem(photo_id, payload.access_key, viewer_user_id=actor.user_id)
	return PhotoAccessResponse.from_model(access)


@router.get("/{photo_id}", response_model=PhotoStatusResponse)
async def photo_status_endpoint(
	photo_id: str,
	actor: Actor = Depends(current_actor),
	core: ChatCore = Depends(get_chat_core),
) -> PhotoStatusResponse:
	return PhotoStatusResponse(**await core.photos.status(photo_id, actor.user_id))


@router.delete("/{photo_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_photo_endpoint(
	photo_id: str,
	actor: Actor = Depends(current_actor),
	core: ChatCore = Depends(get_chat_core),
) -> Response:
	await core.photos.delete_by_owner(photo_id, actor.user_id)
	return Response(status_code=status.HTTP_204_NO_CONTENT)
