"""WebSocket transport for the chat core at `GET /ws`.

The handshake is checked before the upgrade is accepted: origin allow-list,
per-IP connect rate, then the bearer token. Refusals go out as plain HTTP
responses when the server supports denial responses.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Dict, Optional

import ulid
from fastapi import APIRouter, WebSocket
from fastapi.responses import JSONResponse

from spark.domain.chat.config import ChatConfig
from spark.domain.chat.core import ChatCore
from spark.domain.chat.events import ChatError
from spark.domain.chat.router import EventRouter
from spark.domain.chat.session import (
	CLOSE_GOING_AWAY,
	CLOSE_NORMAL,
	CLOSE_POLICY_VIOLATION,
	Session,
)
from spark.infra import rate_limit
from spark.infra.auth import InvalidCredentials, authenticate
from spark.obs import logging as obs_logging
from spark.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

router = APIRouter()

TOKEN_QUERY_PARAM = "token"


def _extract_token(websocket: WebSocket) -> Optional[str]:
	header = websocket.headers.get("authorization")
	if header:
		scheme, _, credentials = header.partition(" ")
		if scheme.lower() == "bearer" and credentials.strip():
			return credentials.strip()
	token = websocket.query_params.get(TOKEN_QUERY_PARAM)
	return token.strip() if token else None


def _client_ip(websocket: WebSocket) -> str:
	forwarded = websocket.headers.get("x-forwarded-for")
	if forwarded:
		return forwarded.split(",")[0].strip()
	return websocket.client.host if websocket.client else "unknown"


async def _deny(
	websocket: WebSocket,
	status_code: int,
	reason: str,
	*,
	headers: Optional[Dict[str, str]] = None,
) -> None:
	obs_metrics.socket_rejected(reason)
	_LOG.info("chat.handshake.rejected", extra={"reason": reason, "status": status_code})
	if "websocket.http.response" in websocket.scope.get("extensions", {}):
		await websocket.send_denial_response(
			JSONResponse({"detail": reason}, status_code=status_code, headers=headers)
		)
	else:
		await websocket.close(code=CLOSE_POLICY_VIOLATION, reason=reason)


async def _read_frames(websocket: WebSocket, session: Session, router_: EventRouter) -> None:
	while not session.closing:
		message = await websocket.receive()
		if message["type"] == "websocket.disconnect":
			return
		raw = message.get("text")
		if raw is None:
			raw = message.get("bytes") or b""
		await router_.dispatch(session, raw)


async def _watch_liveness(session: Session, config: ChatConfig) -> None:
	"""Close the session when no frame has arrived within `pong_wait`."""
	check_every = max(0.05, min(config.ping_interval, config.pong_wait) / 2)
	while not session.closing:
		await asyncio.sleep(check_every)
		if session.idle_for() > config.pong_wait:
			_LOG.info("chat.session.pong_timeout", extra={"connection_id": session.connection_id})
			await session.close(CLOSE_GOING_AWAY, "pong_timeout")
			return


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket) -> None:
	core: ChatCore = websocket.app.state.chat_core
	config = core.config

	if not core.accepting:
		await _deny(websocket, 503, "shutting_down")
		return
	origin = websocket.headers.get("origin")
	if config.allowed_origins and origin not in config.allowed_origins:
		await _deny(websocket, 403, "origin_not_allowed")
		return
	client_ip = _client_ip(websocket)
	decision = await core.limiter.hit(rate_limit.CONNECT, client_ip)
	if not decision.allowed:
		obs_metrics.inc_rate_limited(rate_limit.CONNECT)
		retry_after = str(max(1, math.ceil(decision.retry_after_ms / 1000)))
		await _deny(websocket, 429, "rate_limited", headers={"Retry-After": retry_after})
		return
	token = _extract_token(websocket)
	if not token:
		await _deny(websocket, 401, "missing_token")
		return
	try:
		claims = await authenticate(core.verifier, token)
	except InvalidCredentials as exc:
		await _deny(websocket, 401, exc.reason)
		return

	await websocket.accept()
	session = Session(
		websocket,
		connection_id=str(ulid.new()),
		user_id=claims.user_id,
		session_id=claims.session_id,
		device_id=claims.device_id,
		roles=claims.roles,
		queue_size=config.write_queue_size,
		write_wait=config.write_wait,
		dedup_window=config.dedup_window,
	)
	session.start()
	try:
		await core.registry.register(session)
	except ChatError as exc:
		obs_metrics.socket_rejected(exc.code.value)
		session.send_error(exc)
		await session.close(CLOSE_POLICY_VIOLATION, exc.code.value, drain_timeout=config.write_wait)
		return

	log_token = obs_logging.bind_context(
		user_id=claims.user_id,
		client_ip=client_ip,
		connection_id=session.connection_id,
	)
	_LOG.info("chat.session.opened", extra={"device_id": claims.device_id})
	reader = asyncio.create_task(_read_frames(websocket, session, core.router), name=f"chat-reader-{session.connection_id}")
	liveness = asyncio.create_task(_watch_liveness(session, config), name=f"chat-liveness-{session.connection_id}")
	closed = asyncio.create_task(session.closed.wait())
	reason = "client_closed"
	try:
		done, _ = await asyncio.wait({reader, closed}, return_when=asyncio.FIRST_COMPLETED)
		if reader in done and reader.exception() is not None:
			reason = "read_failed"
			_LOG.info(
				"chat.session.read_failed",
				extra={"error": type(reader.exception()).__name__},
			)
	finally:
		for task in (reader, liveness, closed):
			task.cancel()
		await asyncio.gather(reader, liveness, closed, return_exceptions=True)
		if session.close_reason is not None:
			reason = session.close_reason
		else:
			await session.close(CLOSE_NORMAL, reason, send_close=False)
		await core.registry.unregister(session.connection_id, reason=reason)
		_LOG.info("chat.session.closed", extra={"reason": reason, "close_code": session.close_code})
		obs_logging.reset_context(log_token)
