"""Authentication helpers for the chat socket and REST endpoints.

Bearer credentials resolve to `TokenClaims` through a `TokenVerifier`. The
default verifier checks HS256 access JWTs and consults Redis for revoked
sessions; development builds also accept the synthetic `uid:..;sid:..` form.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol, Tuple

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import InvalidTokenError

from spark.infra import jwt as jwt_helper
from spark.settings import settings

_LOG = logging.getLogger(__name__)

REVOKED_SESSION_KEY = "revoked:session:{session_id}"


class InvalidCredentials(Exception):
	"""Raised when a bearer credential cannot be resolved to a live session."""

	def __init__(self, reason: str) -> None:
		super().__init__(reason)
		self.reason = reason


@dataclass(slots=True, frozen=True)
class TokenClaims:
	user_id: str
	session_id: str
	device_id: str
	expires_at: Optional[datetime] = None
	roles: Tuple[str, ...] = ()

	def has_role(self, role: str) -> bool:
		return role in self.roles


class TokenVerifier(Protocol):
	async def verify(self, token: str) -> TokenClaims:
		...

	async def is_revoked(self, session_id: str) -> bool:
		...


def _roles_from_claim(raw: object) -> Tuple[str, ...]:
	if isinstance(raw, (list, tuple)):
		return tuple(str(r).strip() for r in raw if str(r).strip())
	if isinstance(raw, str):
		return tuple(part.strip() for part in raw.split(",") if part.strip())
	return ()


def _parse_legacy_token(token: str) -> Dict[str, str]:
	parts: Dict[str, str] = {}
	for chunk in token.split(";"):
		chunk = chunk.strip()
		if not chunk or ":" not in chunk:
			continue
		key, value = chunk.split(":", 1)
		parts[key.strip().lower()] = value.strip()
	return parts


class JwtTokenVerifier:
	"""Verify HS256 access tokens and check session revocation in Redis."""

	def __init__(self, redis, *, allow_legacy: bool | None = None) -> None:
		self._redis = redis
		self._allow_legacy = settings.is_dev() if allow_legacy is None else allow_legacy

	async def verify(self, token: str) -> TokenClaims:
		token = (token or "").strip()
		if not token:
			raise InvalidCredentials("empty_token")
		if token.count(".") == 2:
			try:
				payload = jwt_helper.decode_access(token)
			except InvalidTokenError as exc:
				raise InvalidCredentials("invalid_token") from exc
			exp = payload.get("exp")
			return TokenClaims(
				user_id=str(payload["sub"]).strip(),
				session_id=str(payload["sid"]).strip(),
				device_id=str(payload.get("did") or payload.get("device_id") or "unknown"),
				expires_at=datetime.fromtimestamp(int(exp), tz=timezone.utc) if exp is not None else None,
				roles=_roles_from_claim(payload.get("roles") or payload.get("role")),
			)
		if not self._allow_legacy:
			raise InvalidCredentials("invalid_token")
		parts = _parse_legacy_token(token)
		uid = parts.get("uid") or parts.get("user_id")
		session = parts.get("sid") or parts.get("session_id")
		if not uid or not session:
			raise InvalidCredentials("invalid_token")
		return TokenClaims(
			user_id=uid,
			session_id=session,
			device_id=parts.get("did") or parts.get("device") or "unknown",
			roles=_roles_from_claim(parts.get("roles", "")),
		)

	async def is_revoked(self, session_id: str) -> bool:
		return bool(await self._redis.exists(REVOKED_SESSION_KEY.format(session_id=session_id)))

	async def revoke(self, session_id: str, *, ttl_seconds: int = jwt_helper.DEFAULT_TTL_SECONDS) -> None:
		await self._redis.set(REVOKED_SESSION_KEY.format(session_id=session_id), "1", ex=ttl_seconds)


async def authenticate(verifier: TokenVerifier, token: str) -> TokenClaims:
	"""Resolve a bearer token and reject revoked sessions."""
	claims = await verifier.verify(token)
	if await verifier.is_revoked(claims.session_id):
		raise InvalidCredentials("session_revoked")
	return claims


_bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
	request: Request,
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> TokenClaims:
	"""Resolve the authenticated caller from the `Authorization: Bearer` header."""
	if not credentials or credentials.scheme.lower() != "bearer":
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")
	verifier: TokenVerifier = request.app.state.chat_core.verifier
	try:
		return await authenticate(verifier, credentials.credentials)
	except InvalidCredentials as exc:
		_LOG.info("auth.rejected", extra={"reason": exc.reason})
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.reason) from None
