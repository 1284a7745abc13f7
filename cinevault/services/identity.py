from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.core.config import get_settings
from cinevault.core.errors import IdentityConflictError, NotFoundError, ValidationError
from cinevault.domain.models import (
    PLAN_FREE,
    ROLE_STANDARD,
    ROLES,
    STATUS_ACTIVE,
    Subscription,
    User,
)
from cinevault.services.auth.passwords import hash_password
from cinevault.services.locks import push_token_lock


logger = logging.getLogger(__name__)

_E164 = re.compile(r"^\+[1-9]\d{1,14}$")


@dataclass(frozen=True)
class RegistrationRequest:
    email: str
    password: str
    first_name: str
    last_name: str
    mobile_number: str
    role: str = ROLE_STANDARD


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def normalize_mobile_number(mobile_number: str | None) -> str:
    # Accept common separators but store strict E.164.
    cleaned = re.sub(r"[\s\-().]", "", mobile_number or "")
    if not _E164.match(cleaned):
        raise ValidationError("mobile_number must be in E.164 format, e.g. +14155550123")
    return cleaned


def _validate_registration(request: RegistrationRequest) -> tuple[str, str, str]:
    settings = get_settings()
    email = normalize_email(request.email)
    if not email:
        raise ValidationError("email is required")
    if len(request.password or "") < settings.password_min_length:
        raise ValidationError(f"password must be at least {settings.password_min_length} characters")
    if not request.first_name.strip() or not request.last_name.strip():
        raise ValidationError("first_name and last_name are required")
    role = request.role.strip().lower()
    if role not in ROLES:
        raise ValidationError(f"Unsupported role: {request.role}")
    return email, normalize_mobile_number(request.mobile_number), role


def new_free_subscription(identity_id: str, *, now: datetime) -> Subscription:
    # The baseline row every identity owns: free, active, no end date, no billing refs.
    return Subscription(
        id=uuid4().hex,
        user_id=identity_id,
        plan=PLAN_FREE,
        status=STATUS_ACTIVE,
        start_date=now,
        end_date=None,
        billing_customer_ref=None,
        billing_subscription_ref=None,
    )


async def register_identity(
    session: AsyncSession,
    request: RegistrationRequest,
    *,
    now: datetime | None = None,
) -> User:
    """Create an identity and its free subscription in one transaction."""
    email, mobile_number, role = _validate_registration(request)
    current = now or _utc_now()
    existing = await session.execute(
        select(User.id).where(
            (func.lower(User.email) == email) | (User.mobile_number == mobile_number)
        )
    )
    if existing.first() is not None:
        raise IdentityConflictError()
    user = User(
        id=uuid4().hex,
        email=email,
        password_hash=hash_password(request.password),
        first_name=request.first_name.strip(),
        last_name=request.last_name.strip(),
        role=role,
        mobile_number=mobile_number,
        push_token=None,
        token_epoch=0,
    )
    session.add(user)
    try:
        await session.flush()
        session.add(new_free_subscription(user.id, now=current))
        await session.commit()
    except IntegrityError as exc:
        # Concurrent registrations with the same email/mobile lose here.
        await session.rollback()
        raise IdentityConflictError() from exc
    logger.info("identity_registered user_id=%s role=%s", user.id, role)
    return user


async def get_identity(session: AsyncSession, identity_id: str) -> User | None:
    return await session.get(User, identity_id)


async def find_identity_by_email(session: AsyncSession, email: str) -> User | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    result = await session.execute(select(User).where(User.email == normalized))
    return result.scalar_one_or_none()


async def bind_push_token(session: AsyncSession, user: User, push_token: str) -> None:
    """Point push_token at ``user``, clearing any previous owner first.

    Both writes happen in the caller's transaction; clearing the old owner is
    flushed before the new owner is set so the unique constraint never sees
    two owners. Caller must hold ``push_token_lock(push_token)``.
    """
    if user.push_token == push_token:
        return
    result = await session.execute(
        update(User)
        .where(User.push_token == push_token, User.id != user.id)
        .values(push_token=None, updated_at=_utc_now())
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount:
        logger.info("push_token_reassigned new_owner=%s", user.id)
    user.push_token = push_token
    await session.flush()


async def update_push_token(
    session: AsyncSession,
    identity_id: str,
    push_token: str | None,
) -> User:
    # Self-service endpoint registration; None clears the binding.
    user = await get_identity(session, identity_id)
    if user is None:
        raise NotFoundError("Identity not found")
    cleaned = (push_token or "").strip() or None
    if cleaned is None:
        user.push_token = None
        await session.commit()
        return user
    async with push_token_lock(cleaned):
        try:
            await bind_push_token(session, user, cleaned)
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise IdentityConflictError("Push token is being registered concurrently; retry") from exc
    return user


async def update_profile(
    session: AsyncSession,
    identity_id: str,
    *,
    first_name: str | None = None,
    last_name: str | None = None,
    mobile_number: str | None = None,
) -> User:
    """Apply self-service profile changes; ``None`` leaves a field as is.

    Email, role and password are not editable here. A mobile number that
    another identity owns raises IdentityConflictError.
    """
    user = await get_identity(session, identity_id)
    if user is None:
        raise NotFoundError("Identity not found")
    for field_name, value in (("first_name", first_name), ("last_name", last_name)):
        if value is None:
            continue
        if not value.strip():
            raise ValidationError(f"{field_name} cannot be blank")
        setattr(user, field_name, value.strip())
    if mobile_number is not None:
        normalized = normalize_mobile_number(mobile_number)
        if normalized != user.mobile_number:
            taken = await session.execute(
                select(User.id).where(User.mobile_number == normalized, User.id != user.id)
            )
            if taken.first() is not None:
                raise IdentityConflictError("Mobile number is already registered")
            user.mobile_number = normalized
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise IdentityConflictError("Mobile number is already registered") from exc
    logger.info("identity_profile_updated user_id=%s", user.id)
    return user
