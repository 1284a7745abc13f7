from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Iterable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.core.errors import CinevaultError
from cinevault.domain.models import SentNotification, User
from cinevault.persistence.db import SessionLocal, insert_ignore
from cinevault.providers.notify.base import PushGateway, WhatsAppGateway
from cinevault.providers.notify.factory import get_push_gateway, get_whatsapp_gateway
from cinevault.services.notifications.effects import Effect
from cinevault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _claim(session: AsyncSession, effect: Effect) -> bool:
    # The unique key on (user, kind, channel, reference) makes each delivery at-most-once.
    claimed = await insert_ignore(
        session,
        SentNotification,
        {
            "user_id": effect.identity_id,
            "kind": effect.kind,
            "channel": effect.channel,
            "reference": effect.reference,
            "status": "sent",
            "sent_at": _utc_now(),
        },
    )
    await session.commit()
    return claimed


async def _mark_failed(session: AsyncSession, effect: Effect) -> None:
    await session.execute(
        update(SentNotification)
        .where(
            SentNotification.user_id == effect.identity_id,
            SentNotification.kind == effect.kind,
            SentNotification.channel == effect.channel,
            SentNotification.reference == effect.reference,
        )
        .values(status="failed")
    )
    await session.commit()


async def deliver_effect(
    session: AsyncSession,
    effect: Effect,
    *,
    push_gateway: PushGateway | None,
    whatsapp_gateway: WhatsAppGateway | None,
) -> str:
    """Deliver one effect; returns the outcome for logging and tests.

    Outcomes: ``sent``, ``duplicate``, ``no_endpoint``, ``disabled`` or
    ``failed``. Gateway errors are recorded on the claim row and not raised.
    """
    gateway = push_gateway if effect.channel == "push" else whatsapp_gateway
    if gateway is None:
        return "disabled"
    user = await session.get(User, effect.identity_id)
    if user is None:
        return "no_endpoint"
    endpoint = user.push_token if effect.channel == "push" else user.mobile_number
    if not endpoint:
        return "no_endpoint"
    if not await _claim(session, effect):
        return "duplicate"
    try:
        if effect.channel == "push":
            await gateway.send(endpoint, effect.title, effect.body, effect.data)
        else:
            await gateway.send(endpoint, effect.body)
    except CinevaultError as exc:
        await _mark_failed(session, effect)
        increment_counter(f"notifications_failed_total.{effect.channel}")
        logger.warning(
            "notification_failed kind=%s user_id=%s channel=%s code=%s",
            effect.kind,
            effect.identity_id,
            effect.channel,
            exc.code,
        )
        return "failed"
    increment_counter(f"notifications_sent_total.{effect.channel}")
    logger.info(
        "notification_sent kind=%s user_id=%s channel=%s",
        effect.kind,
        effect.identity_id,
        effect.channel,
    )
    return "sent"


async def dispatch_effects(
    effects: Iterable[Effect],
    *,
    push_gateway: PushGateway | None = None,
    whatsapp_gateway: WhatsAppGateway | None = None,
) -> dict[str, int]:
    # Best effort: a failed delivery never propagates to the transition that asked for it.
    pending = list(effects)
    outcomes: dict[str, int] = {}
    if not pending:
        return outcomes
    push = push_gateway if push_gateway is not None else get_push_gateway()
    whatsapp = whatsapp_gateway if whatsapp_gateway is not None else get_whatsapp_gateway()
    async with SessionLocal() as session:
        for effect in pending:
            try:
                outcome = await deliver_effect(
                    session,
                    effect,
                    push_gateway=push,
                    whatsapp_gateway=whatsapp,
                )
            except Exception:  # noqa: BLE001 - notification delivery must not fail the caller
                await session.rollback()
                logger.exception(
                    "notification_dispatch_error kind=%s user_id=%s channel=%s",
                    effect.kind,
                    effect.identity_id,
                    effect.channel,
                )
                outcome = "failed"
            outcomes[outcome] = outcomes.get(outcome, 0) + 1
    return outcomes
