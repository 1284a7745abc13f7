from __future__ import annotations

from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Literal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.core.config import get_settings
from cinevault.core.errors import (
    IdentityConflictError,
    InvalidCredentialsError,
    MalformedTokenError,
    UnauthenticatedError,
)
from cinevault.domain.models import User
from cinevault.services.auth.passwords import hash_password, needs_rehash, verify_password
from cinevault.services.auth.revocation import is_revoked, revoke
from cinevault.services.auth.tokens import IssuedToken, decode_token, issue_token
from cinevault.services.identity import bind_push_token, find_identity_by_email, get_identity
from cinevault.services.locks import push_token_lock


logger = logging.getLogger(__name__)

SignOutStatus = Literal["signed_out", "already_signed_out"]


@dataclass(frozen=True)
class SignInResult:
    token: IssuedToken
    identity: User


@dataclass(frozen=True)
class SignOutResult:
    status: SignOutStatus
    token_id: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def issue_session_token(user: User, *, now: datetime | None = None) -> IssuedToken:
    settings = get_settings()
    return issue_token(
        user.id,
        user.role,
        timedelta(minutes=settings.access_token_ttl_minutes),
        epoch=user.token_epoch,
        now=now,
    )


async def sign_in(
    session: AsyncSession,
    *,
    email: str | None,
    password: str | None,
    push_token: str | None = None,
    now: datetime | None = None,
) -> SignInResult:
    """Check credentials, bind the push endpoint and issue a token.

    Unknown email, wrong password and blank input all raise the same
    InvalidCredentialsError. Earlier tokens for the identity stay valid.
    """
    user = await find_identity_by_email(session, email or "")
    password_ok = verify_password(password or "", user.password_hash if user else None)
    if user is None or not password or not password_ok:
        logger.info("sign_in_rejected")
        raise InvalidCredentialsError()

    if needs_rehash(user.password_hash):
        user.password_hash = hash_password(password)

    cleaned_push_token = (push_token or "").strip() or None
    async with AsyncExitStack() as stack:
        if cleaned_push_token is not None:
            await stack.enter_async_context(push_token_lock(cleaned_push_token))
        try:
            if cleaned_push_token is not None:
                await bind_push_token(session, user, cleaned_push_token)
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise IdentityConflictError("Push token is being registered concurrently; retry") from exc

    token = issue_session_token(user, now=now)
    logger.info("sign_in_succeeded user_id=%s jti=%s", user.id, token.token_id)
    return SignInResult(token=token, identity=user)


async def sign_out(
    session: AsyncSession,
    token: str | None,
    *,
    now: datetime | None = None,
) -> SignOutResult:
    """Revoke the presented token; safe to call on a dead session.

    Absent, undecodable, expired or already revoked tokens report
    ``already_signed_out`` instead of raising.
    """
    current = now or _utc_now()
    if not token:
        return SignOutResult(status="already_signed_out")
    try:
        claims = decode_token(token, now=current)
    except (UnauthenticatedError, MalformedTokenError) as exc:
        logger.info("sign_out_noop reason=%s", exc.code)
        return SignOutResult(status="already_signed_out")

    user = await get_identity(session, claims.identity_id)
    if user is None or claims.epoch < user.token_epoch:
        return SignOutResult(status="already_signed_out", token_id=claims.token_id)
    if await is_revoked(session, claims.token_id, user.id, now=current):
        return SignOutResult(status="already_signed_out", token_id=claims.token_id)

    # Keep the record for as long as decode_token still accepts the token.
    accepted_until = claims.expires_at + timedelta(seconds=get_settings().jwt_leeway_seconds)
    created = await revoke(session, claims.token_id, user.id, accepted_until)
    user.push_token = None
    await session.commit()
    if not created:
        return SignOutResult(status="already_signed_out", token_id=claims.token_id)
    logger.info("sign_out_succeeded user_id=%s jti=%s", user.id, claims.token_id)
    return SignOutResult(status="signed_out", token_id=claims.token_id)


async def sign_out_everywhere(session: AsyncSession, identity_id: str) -> int:
    # Epoch bump invalidates every token issued so far for this identity.
    user = await get_identity(session, identity_id)
    if user is None:
        return 0
    # Increment in SQL so concurrent bumps never collapse into one.
    user.token_epoch = User.token_epoch + 1
    user.push_token = None
    await session.commit()
    await session.refresh(user)
    logger.info("sign_out_everywhere user_id=%s epoch=%s", user.id, user.token_epoch)
    return user.token_epoch
