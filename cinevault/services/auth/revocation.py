from __future__ import annotations

from datetime import datetime, timezone
import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.domain.models import RevokedToken
from cinevault.persistence.db import insert_ignore


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def is_revoked(
    session: AsyncSession,
    token_id: str,
    identity_id: str,
    *,
    now: datetime | None = None,
) -> bool:
    # Expired records are inert: report them as absent and reclaim them on sight.
    current = now or _utc_now()
    result = await session.execute(
        select(RevokedToken).where(
            RevokedToken.jti == token_id,
            RevokedToken.user_id == identity_id,
        )
    )
    record = result.scalar_one_or_none()
    if record is None:
        return False
    if record.expires_at > current:
        return True
    await session.execute(
        delete(RevokedToken).where(
            RevokedToken.jti == token_id,
            RevokedToken.expires_at <= current,
        )
    )
    await session.commit()
    logger.debug("revocation_record_reclaimed jti=%s", token_id)
    return False


async def revoke(
    session: AsyncSession,
    token_id: str,
    identity_id: str,
    expires_at: datetime,
) -> bool:
    """Record a revoked token id; returns False when it was already revoked.

    Caller owns the transaction. The jti primary key resolves concurrent
    revocations of the same token, so double submits both succeed.
    """
    created = await insert_ignore(
        session,
        RevokedToken,
        {
            "jti": token_id,
            "user_id": identity_id,
            "expires_at": expires_at,
            "revoked_at": _utc_now(),
        },
    )
    if not created:
        logger.info("revocation_duplicate jti=%s user_id=%s", token_id, identity_id)
    return created


async def sweep_expired(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Periodic companion to the lazy reclaim in is_revoked.
    result = await session.execute(
        delete(RevokedToken).where(RevokedToken.expires_at <= (now or _utc_now()))
    )
    await session.commit()
    return result.rowcount or 0
