from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.core.config import get_settings
from cinevault.domain.models import ProcessedWebhookEvent
from cinevault.persistence.db import insert_ignore


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def claim_webhook_event(
    session: AsyncSession,
    event_id: str,
    event_type: str,
    *,
    now: datetime | None = None,
) -> bool:
    """Claim a gateway event id inside the caller's transaction.

    Returns False when the id was already processed. The claim only becomes
    durable when the caller commits, so a failed transition leaves the event
    unclaimed and the gateway's redelivery is processed normally.
    """
    claimed = await insert_ignore(
        session,
        ProcessedWebhookEvent,
        {"event_id": event_id, "event_type": event_type, "received_at": now or _utc_now()},
    )
    if not claimed:
        logger.info("webhook_event_duplicate event_id=%s type=%s", event_id, event_type)
    return claimed


async def prune_webhook_events(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    retention_hours: int | None = None,
) -> int:
    # Drop processed ids once they are older than the gateway's redelivery window.
    hours = retention_hours if retention_hours is not None else get_settings().webhook_event_retention_hours
    cutoff = (now or _utc_now()) - timedelta(hours=hours)
    result = await session.execute(
        delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.received_at < cutoff)
    )
    await session.commit()
    return result.rowcount or 0
