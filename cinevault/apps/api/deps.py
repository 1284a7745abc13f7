from __future__ import annotations

from datetime import datetime
import logging
from typing import AsyncGenerator

from fastapi import Depends, Header, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.core.errors import (
    ForbiddenError,
    MalformedTokenError,
    MissingTokenError,
    StaleIdentityError,
    TokenInvalidError,
    TokenRevokedError,
    UnauthenticatedError,
)
from cinevault.persistence.db import get_session
from cinevault.services.auth.revocation import is_revoked
from cinevault.services.auth.tokens import decode_token
from cinevault.services.capabilities import Capabilities, resolve_capabilities
from cinevault.services.identity import get_identity


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # The authenticated identity and the token instance it presented.
    identity_id: str
    role: str
    token_id: str
    epoch: int
    expires_at: datetime


def parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise MissingTokenError()
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise TokenInvalidError("Missing or invalid bearer token")
    return parts[1]


def optional_bearer_token(authorization: str | None = Header(default=None)) -> str | None:
    # Sign-out accepts dead or missing tokens, so it reads the header without validating.
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def get_current_principal(
    request: Request,
    authorization: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Authenticate the request from its bearer token.

    Checks, in order: token present and well formed, signature and expiry,
    claims shape, revocation, identity still exists, token epoch current.
    """
    try:
        token = parse_bearer_token(authorization)
        claims = decode_token(token)
        if await is_revoked(db, claims.token_id, claims.identity_id):
            raise TokenRevokedError()
        user = await get_identity(db, claims.identity_id)
        if user is None:
            raise StaleIdentityError()
        if claims.epoch < user.token_epoch:
            raise TokenRevokedError()
    except (UnauthenticatedError, MalformedTokenError) as exc:
        logger.info("auth_rejected reason=%s path=%s", exc.code, request.url.path)
        raise
    principal = Principal(
        identity_id=user.id,
        role=user.role,
        token_id=claims.token_id,
        epoch=claims.epoch,
        expires_at=claims.expires_at,
    )
    request.state.principal = principal
    return principal


async def get_capabilities(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> Capabilities:
    return await resolve_capabilities(db, principal)


async def require_supervisor(capabilities: Capabilities = Depends(get_capabilities)) -> Capabilities:
    if not capabilities.is_supervisor:
        raise ForbiddenError("Supervisor role required")
    return capabilities
