"""HS256 access tokens shared with the account service.

The account service mints the tokens; the chat core only checks them. Minting
lives here too so tests and local tooling can issue tokens the verifier accepts.
"""

from __future__ import annotations

import time
from typing import Any, Mapping

import jwt
from jwt import InvalidTokenError

from spark.settings import settings

ALGORITHM = "HS256"
ISSUER = "spark-api"
AUDIENCE = "spark-app"
LEEWAY_SECONDS = 5
DEFAULT_TTL_SECONDS = 900

_REGISTERED = ("exp", "iat", "iss", "aud")
_SESSION_CLAIMS = ("sub", "sid")


def encode_access(payload: Mapping[str, Any], *, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> str:
    issued_at = int(time.time())
    claims = {"iss": ISSUER, "aud": AUDIENCE, "iat": issued_at, "exp": issued_at + ttl_seconds, **payload}
    return jwt.encode(claims, settings.secret_key, algorithm=ALGORITHM)


def decode_access(token: str) -> dict[str, Any]:
    """Return the claims of a valid token; raises `jwt.InvalidTokenError` otherwise."""
    claims = jwt.decode(
        token,
        settings.secret_key,
        algorithms=[ALGORITHM],
        audience=AUDIENCE,
        issuer=ISSUER,
        leeway=LEEWAY_SECONDS,
        options={"require": list(_REGISTERED)},
    )
    missing = [name for name in _SESSION_CLAIMS if not claims.get(name)]
    if missing:
        raise InvalidTokenError(f"missing_claim:{','.join(missing)}")
    return claims
