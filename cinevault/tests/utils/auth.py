from __future__ import annotations

from itertools import count
from uuid import uuid4

from httpx import ASGITransport, AsyncClient

from cinevault.apps.api.main import create_app
from cinevault.domain.models import ROLE_STANDARD, User
from cinevault.persistence.db import SessionLocal
from cinevault.services.auth.sessions import issue_session_token
from cinevault.services.identity import RegistrationRequest, register_identity


DEFAULT_PASSWORD = "correct-horse-battery"

_mobile_suffix = count(1000000)


def unique_email() -> str:
    return f"user-{uuid4().hex[:10]}@example.com"


def unique_mobile() -> str:
    return f"+1415{next(_mobile_suffix)}"


async def create_test_identity(
    *,
    email: str | None = None,
    password: str = DEFAULT_PASSWORD,
    role: str = ROLE_STANDARD,
    mobile_number: str | None = None,
) -> User:
    # Register through the service so the free subscription row exists too.
    async with SessionLocal() as session:
        return await register_identity(
            session,
            RegistrationRequest(
                email=email or unique_email(),
                password=password,
                first_name="Test",
                last_name="User",
                mobile_number=mobile_number or unique_mobile(),
                role=role,
            ),
        )


async def create_authenticated_identity(*, role: str = ROLE_STANDARD) -> tuple[User, dict[str, str]]:
    user = await create_test_identity(role=role)
    issued = issue_session_token(user)
    return user, {"Authorization": f"Bearer {issued.token}"}


def api_client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")
