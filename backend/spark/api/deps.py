"""Shared FastAPI dependencies for the chat REST surface."""

from __future__ import annotations

from fastapi import Depends, Request

from spark.domain.chat.core import ChatCore
from spark.domain.chat.models import Actor
from spark.infra.auth import TokenClaims, get_current_user


def get_chat_core(request: Request) -> ChatCore:
	return request.app.state.chat_core


async def current_actor(claims: TokenClaims = Depends(get_current_user)) -> Actor:
	return Actor(user_id=claims.user_id, roles=claims.roles)
