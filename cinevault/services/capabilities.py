from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.domain.models import PLAN_FREE, ROLE_SUPERVISOR, STATUS_ACTIVE
from cinevault.services.subscriptions import can_access_premium, get_subscription

if TYPE_CHECKING:
    from cinevault.apps.api.deps import Principal


@dataclass(frozen=True)
class Capabilities:
    identity_id: str
    role: str
    is_supervisor: bool
    can_access_premium: bool
    plan: str
    status: str


async def resolve_capabilities(
    session: AsyncSession,
    principal: Principal,
    *,
    now: datetime | None = None,
) -> Capabilities:
    """Derive what the principal may do from role and entitlement.

    Routes never inspect roles or subscription rows themselves; they consume
    this result through the API dependencies.
    """
    current = now or datetime.now(timezone.utc)
    subscription = await get_subscription(session, principal.identity_id)
    is_supervisor = principal.role == ROLE_SUPERVISOR
    return Capabilities(
        identity_id=principal.identity_id,
        role=principal.role,
        is_supervisor=is_supervisor,
        # Supervisors curate the catalog, premium titles included.
        can_access_premium=is_supervisor or can_access_premium(subscription, now=current),
        plan=subscription.plan if subscription else PLAN_FREE,
        status=subscription.status if subscription else STATUS_ACTIVE,
    )
