"""Signed session tokens.

Tokens are HS256 JWTs signed with ``settings.jwt_secret``. The secret is read
once per process through the cached settings; rotating it (by redeploying with
a new value) invalidates every outstanding token. That is the intended
fail-safe, so there is no multi-key verification window.

Each token carries a random ``jti``. The ``jti`` is what gets revoked on
sign-out, which keeps per-session state out of the signing path.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import jwt

from cinevault.core.config import get_settings
from cinevault.core.errors import (
    MalformedTokenError,
    TokenConfigError,
    TokenExpiredError,
    TokenInvalidError,
)


_REQUIRED_CLAIMS = ("sub", "role", "jti", "iat", "exp")


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    expires_at: datetime


@dataclass(frozen=True)
class SessionClaims:
    identity_id: str
    role: str
    token_id: str
    epoch: int
    issued_at: datetime
    expires_at: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def require_signing_secret() -> str:
    secret = get_settings().jwt_secret
    if not secret:
        raise TokenConfigError("JWT_SECRET is not configured")
    return secret


def issue_token(
    identity_id: str,
    role: str,
    ttl: timedelta,
    *,
    epoch: int = 0,
    now: datetime | None = None,
) -> IssuedToken:
    settings = get_settings()
    issued_at = now or _utc_now()
    # JWT timestamps are whole seconds; truncate so expires_at matches the exp claim.
    issued_at = issued_at.replace(microsecond=0)
    expires_at = issued_at + ttl
    token_id = uuid4().hex
    payload = {
        "sub": identity_id,
        "role": role,
        "jti": token_id,
        "epoch": epoch,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(payload, require_signing_secret(), algorithm=settings.jwt_algorithm)
    return IssuedToken(token=token, token_id=token_id, expires_at=expires_at)


def decode_token(token: str, *, now: datetime | None = None) -> SessionClaims:
    """Verify a token and return its claims.

    Raises TokenInvalidError for bad signatures or undecodable input,
    TokenExpiredError once exp has passed, and MalformedTokenError when the
    signature is valid but required claims are missing or mistyped.
    """
    settings = get_settings()
    secret = require_signing_secret()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            secret,
            algorithms=[settings.jwt_algorithm],
            # Expiry is checked below against the caller's clock; iat/sub typing is ours to judge.
            options={
                "verify_exp": False,
                "verify_iat": False,
                "verify_sub": False,
                "verify_jti": False,
            },
        )
    except jwt.InvalidTokenError as exc:
        raise TokenInvalidError(f"Invalid token: {exc}") from exc

    claims = _parse_claims(payload)
    current = now or _utc_now()
    if claims.expires_at.timestamp() <= current.timestamp() - settings.jwt_leeway_seconds:
        raise TokenExpiredError()
    return claims


def _parse_claims(payload: dict[str, Any]) -> SessionClaims:
    missing = [claim for claim in _REQUIRED_CLAIMS if payload.get(claim) in (None, "")]
    if missing:
        raise MalformedTokenError(f"Token is missing claims: {', '.join(missing)}")
    subject = payload["sub"]
    role = payload["role"]
    token_id = payload["jti"]
    epoch = payload.get("epoch", 0)
    if not isinstance(subject, str) or not isinstance(role, str) or not isinstance(token_id, str):
        raise MalformedTokenError("Token claims sub, role and jti must be strings")
    if isinstance(epoch, bool) or not isinstance(epoch, int):
        raise MalformedTokenError("Token claim epoch must be an integer")
    try:
        issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
        expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError) as exc:
        raise MalformedTokenError("Token claims iat and exp must be numeric timestamps") from exc
    return SessionClaims(
        identity_id=subject,
        role=role,
        token_id=token_id,
        epoch=epoch,
        issued_at=issued_at,
        expires_at=expires_at,
    )
