from __future__ import annotations

import logging
from typing import Literal

from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.services.auth.revocation import sweep_expired
from cinevault.services.idempotency import prune_webhook_events as _prune_webhook_events


logger = logging.getLogger(__name__)

MaintenanceTask = Literal["prune_revoked_tokens", "prune_webhook_events"]


async def prune_revoked_tokens(session: AsyncSession) -> int:
    # Expired revocations can no longer match a live token.
    deleted = await sweep_expired(session)
    logger.info("maintenance_prune_revoked_tokens deleted=%s", deleted)
    return deleted


async def prune_webhook_events(session: AsyncSession) -> int:
    deleted = await _prune_webhook_events(session)
    logger.info("maintenance_prune_webhook_events deleted=%s", deleted)
    return deleted


async def run_maintenance_task(session: AsyncSession, task: MaintenanceTask) -> int:
    if task == "prune_revoked_tokens":
        return await prune_revoked_tokens(session)
    if task == "prune_webhook_events":
        return await prune_webhook_events(session)
    raise ValueError(f"Unsupported maintenance task: {task}")
