from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from cinevault.core.config import get_settings
from cinevault.core.logging import configure_logging
from cinevault.persistence.db import SessionLocal
from cinevault.services.maintenance import MaintenanceTask, run_maintenance_task


logger = logging.getLogger(__name__)


async def run_task(ctx, task: MaintenanceTask) -> int:
    # Also enqueueable on demand, e.g. after a mass sign-out.
    async with SessionLocal() as session:
        deleted = await run_maintenance_task(session, task)
    logger.info("maintenance_task_done task=%s deleted=%s", task, deleted)
    return deleted


async def prune_revoked_tokens_job(ctx) -> int:
    return await run_task(ctx, "prune_revoked_tokens")


async def prune_webhook_events_job(ctx) -> int:
    return await run_task(ctx, "prune_webhook_events")


def _sweep_minutes(interval: int) -> set[int]:
    step = min(max(1, interval), 60)
    return set(range(0, 60, step))


async def _startup(ctx) -> None:
    configure_logging()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.maintenance_queue_name
    functions = [run_task]
    cron_jobs = [
        cron(prune_revoked_tokens_job, minute=_sweep_minutes(settings.revocation_sweep_minute_interval)),
        cron(prune_webhook_events_job, minute={5}),
    ]
    on_startup = _startup
