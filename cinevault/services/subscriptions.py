from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable, Literal
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.core.config import get_settings
from cinevault.core.errors import (
    InvalidPlanError,
    PaymentNotCompletedError,
    SubscriptionInvariantError,
    SubscriptionStateConflictError,
)
from cinevault.domain.models import (
    PAID_PLANS,
    PLAN_BASIC,
    PLAN_FREE,
    PLAN_PREMIUM,
    PLANS,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_PAST_DUE,
    STATUS_PENDING,
    SUBSCRIPTION_STATUSES,
    Subscription,
    User,
)
from cinevault.providers.billing.base import BillingGateway, PaymentIntent, WebhookEvent
from cinevault.services.identity import new_free_subscription
from cinevault.services.idempotency import claim_webhook_event
from cinevault.services.locks import identity_lock
from cinevault.services.notifications.effects import (
    Effect,
    payment_failed,
    subscription_activated,
    subscription_canceled,
)


logger = logging.getLogger(__name__)

EVENT_PAYMENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"
EVENT_INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

WebhookStatus = Literal["processed", "duplicate", "ignored"]


@dataclass(frozen=True)
class TransitionResult:
    subscription: Subscription
    effects: list[Effect] = field(default_factory=list)
    # Set by initiate for paid plans; the client completes payment with it.
    payment_intent: PaymentIntent | None = None


@dataclass(frozen=True)
class WebhookResult:
    status: WebhookStatus
    subscription: Subscription | None = None
    effects: list[Effect] = field(default_factory=list)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def plan_duration(plan: str) -> timedelta:
    settings = get_settings()
    days = {
        PLAN_BASIC: settings.plan_basic_duration_days,
        PLAN_PREMIUM: settings.plan_premium_duration_days,
    }
    if plan not in days:
        raise InvalidPlanError(f"Plan has no paid period: {plan}")
    return timedelta(days=days[plan])


def plan_amount(plan: str) -> int:
    # Integer minor units (cents) so amounts never pass through floats.
    settings = get_settings()
    amounts = {
        PLAN_BASIC: settings.plan_basic_amount_minor,
        PLAN_PREMIUM: settings.plan_premium_amount_minor,
    }
    if plan not in amounts:
        raise InvalidPlanError(f"Plan has no price: {plan}")
    return amounts[plan]


def can_access_premium(subscription: Subscription | None, *, now: datetime | None = None) -> bool:
    """Paid plan, end date still ahead and status active or canceled.

    Canceled keeps access until the paid period runs out; pending and
    past_due never grant it, and neither does a row no payment ever activated.
    """
    if subscription is None:
        return False
    current = now or _utc_now()
    return (
        subscription.plan in PAID_PLANS
        and subscription.activated_at is not None
        and subscription.end_date is not None
        and subscription.end_date > current
        and subscription.status in (STATUS_ACTIVE, STATUS_CANCELED)
    )


def _assert_invariants(subscription: Subscription) -> None:
    if subscription.plan not in PLANS:
        raise SubscriptionInvariantError(f"unknown plan {subscription.plan!r}")
    if subscription.status not in SUBSCRIPTION_STATUSES:
        raise SubscriptionInvariantError(f"unknown status {subscription.status!r}")
    if subscription.plan == PLAN_FREE:
        if subscription.end_date is not None:
            raise SubscriptionInvariantError("free subscription has an end date")
        return
    if subscription.end_date is None:
        raise SubscriptionInvariantError(f"{subscription.plan} subscription has no end date")
    if subscription.status != STATUS_PENDING and (
        not subscription.billing_customer_ref or not subscription.billing_subscription_ref
    ):
        raise SubscriptionInvariantError(f"{subscription.status} {subscription.plan} subscription lacks billing refs")
    if subscription.status == STATUS_CANCELED and subscription.activated_at is None:
        raise SubscriptionInvariantError("canceled subscription was never paid")


def _is_lapsed(subscription: Subscription, now: datetime) -> bool:
    # Paid period over with no renewal; the next observation collapses it to free.
    return (
        subscription.plan in PAID_PLANS
        and subscription.status in (STATUS_ACTIVE, STATUS_CANCELED)
        and subscription.end_date is not None
        and subscription.end_date <= now
    )


async def _lock_row(session: AsyncSession, identity_id: str) -> Subscription | None:
    result = await session.execute(
        select(Subscription)
        .where(Subscription.user_id == identity_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_subscription(session: AsyncSession, identity_id: str) -> Subscription | None:
    # Unlocked read for entitlement checks; can_access_premium is correct on lapsed rows too.
    result = await session.execute(select(Subscription).where(Subscription.user_id == identity_id))
    return result.scalar_one_or_none()


def _activate(subscription: Subscription, payment_ref: str, now: datetime) -> list[Effect]:
    subscription.status = STATUS_ACTIVE
    subscription.billing_subscription_ref = payment_ref
    subscription.end_date = now + plan_duration(subscription.plan)
    subscription.activated_at = now
    return subscription_activated(subscription.user_id, subscription.id, subscription.plan)


def _event_belongs_to(subscription: Subscription, event: WebhookEvent) -> bool:
    # Events from a replaced initiation still name the identity but not this row.
    customer_ref = event.data_object.get("customer")
    if customer_ref and customer_ref != subscription.billing_customer_ref:
        return False
    metadata = event.data_object.get("metadata")
    subscription_id = metadata.get("subscription_id") if isinstance(metadata, dict) else None
    return not subscription_id or subscription_id == subscription.id


async def initiate(
    session: AsyncSession,
    identity: User,
    plan: str | None,
    *,
    gateway: BillingGateway,
    now: datetime | None = None,
) -> TransitionResult:
    """Replace the identity's subscription with a new one for ``plan``.

    Free plans are active immediately. Paid plans start ``pending`` with a
    customer and a payment intent at the gateway; the row is only committed
    once both gateway calls succeed, so any failure leaves the previous row
    untouched.
    """
    normalized = (plan or "").strip().lower()
    if normalized not in PLANS:
        raise InvalidPlanError()
    current = now or _utc_now()
    settings = get_settings()

    async with identity_lock(identity.id):
        try:
            await _lock_row(session, identity.id)
            await session.execute(delete(Subscription).where(Subscription.user_id == identity.id))
            if normalized == PLAN_FREE:
                subscription = new_free_subscription(identity.id, now=current)
                session.add(subscription)
                _assert_invariants(subscription)
                await session.commit()
                logger.info("subscription_initiated user_id=%s plan=%s", identity.id, normalized)
                return TransitionResult(subscription=subscription)

            subscription = Subscription(
                id=uuid4().hex,
                user_id=identity.id,
                plan=normalized,
                status=STATUS_PENDING,
                start_date=current,
                end_date=current + plan_duration(normalized),
                billing_customer_ref=None,
                billing_subscription_ref=None,
            )
            session.add(subscription)
            await session.flush()

            customer_ref = await gateway.create_customer(
                identity.email,
                idempotency_key=f"customer-{subscription.id}",
            )
            subscription.billing_customer_ref = customer_ref
            intent = await gateway.create_payment_intent(
                customer_ref,
                plan_amount(normalized),
                settings.billing_currency,
                {"user_id": identity.id, "plan": normalized, "subscription_id": subscription.id},
                idempotency_key=f"intent-{subscription.id}",
            )
            _assert_invariants(subscription)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    logger.info(
        "subscription_initiated user_id=%s plan=%s payment_intent_id=%s",
        identity.id,
        normalized,
        intent.id,
    )
    return TransitionResult(subscription=subscription, payment_intent=intent)


async def confirm(
    session: AsyncSession,
    identity_id: str,
    payment_intent_id: str,
    *,
    gateway: BillingGateway,
    now: datetime | None = None,
) -> TransitionResult:
    # Client-driven activation after the payment sheet completes.
    current = now or _utc_now()
    async with identity_lock(identity_id):
        try:
            subscription = await _lock_row(session, identity_id)
            if subscription is None or subscription.status != STATUS_PENDING:
                raise SubscriptionStateConflictError("No pending subscription to confirm")
            intent = await gateway.retrieve_payment_intent(payment_intent_id)
            if intent.customer_ref != subscription.billing_customer_ref:
                raise SubscriptionStateConflictError("Payment intent does not belong to this subscription")
            intent_plan = intent.metadata.get("plan")
            if intent_plan and intent_plan != subscription.plan:
                raise SubscriptionStateConflictError("Payment intent was created for a different plan")
            if not intent.succeeded:
                raise PaymentNotCompletedError(f"Payment intent status is {intent.status}")
            effects = _activate(subscription, intent.id, current)
            _assert_invariants(subscription)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    logger.info(
        "subscription_confirmed user_id=%s plan=%s payment_intent_id=%s",
        identity_id,
        subscription.plan,
        intent.id,
    )
    return TransitionResult(subscription=subscription, effects=effects)


def _on_payment_succeeded(subscription: Subscription | None, event: WebhookEvent, now: datetime) -> list[Effect]:
    if subscription is None or subscription.status != STATUS_PENDING:
        return []
    if not _event_belongs_to(subscription, event):
        logger.warning("webhook_subscription_mismatch event_id=%s user_id=%s", event.id, subscription.user_id)
        return []
    return _activate(subscription, str(event.data_object.get("id") or event.id), now)


def _on_payment_failed(subscription: Subscription | None, event: WebhookEvent, now: datetime) -> list[Effect]:
    if subscription is None or subscription.plan == PLAN_FREE or subscription.status == STATUS_CANCELED:
        return []
    if not _event_belongs_to(subscription, event):
        logger.warning("webhook_subscription_mismatch event_id=%s user_id=%s", event.id, subscription.user_id)
        return []
    failed_ref = str(event.data_object.get("payment_intent") or event.data_object.get("id") or event.id)
    if subscription.status == STATUS_PENDING:
        # A pending row has no confirmed payment; the failed attempt becomes its reference.
        subscription.billing_subscription_ref = failed_ref
    subscription.status = STATUS_PAST_DUE
    return payment_failed(subscription.user_id, failed_ref)


_WEBHOOK_HANDLERS: dict[str, Callable[[Subscription | None, WebhookEvent, datetime], list[Effect]]] = {
    EVENT_PAYMENT_SUCCEEDED: _on_payment_succeeded,
    EVENT_PAYMENT_FAILED: _on_payment_failed,
    EVENT_INVOICE_PAYMENT_FAILED: _on_payment_failed,
}


async def _webhook_identity(session: AsyncSession, event: WebhookEvent) -> str | None:
    # Payment intents carry the identity in metadata; invoices only know the customer.
    metadata = event.data_object.get("metadata") or {}
    identity_id = metadata.get("user_id") if isinstance(metadata, dict) else None
    if identity_id:
        return str(identity_id)
    customer_ref = event.data_object.get("customer")
    if not customer_ref:
        return None
    result = await session.execute(
        select(Subscription.user_id).where(Subscription.billing_customer_ref == customer_ref)
    )
    return result.scalars().first()


async def handle_webhook(
    session: AsyncSession,
    event: WebhookEvent,
    *,
    now: datetime | None = None,
) -> WebhookResult:
    """Apply a verified gateway event exactly once.

    The event id is claimed in the same transaction as the transition, so a
    redelivery either sees the claim and does nothing or, if the first
    attempt rolled back, is processed as new.
    """
    current = now or _utc_now()
    handler = _WEBHOOK_HANDLERS.get(event.type)
    identity_id = await _webhook_identity(session, event) if handler is not None else None
    if handler is None or identity_id is None:
        try:
            claimed = await claim_webhook_event(session, event.id, event.type, now=current)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        logger.info("webhook_event_ignored event_id=%s type=%s", event.id, event.type)
        return WebhookResult(status="ignored" if claimed else "duplicate")

    async with identity_lock(identity_id):
        try:
            if not await claim_webhook_event(session, event.id, event.type, now=current):
                await session.rollback()
                return WebhookResult(status="duplicate")
            subscription = await _lock_row(session, identity_id)
            effects = handler(subscription, event, current)
            if subscription is not None:
                _assert_invariants(subscription)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    logger.info(
        "webhook_event_processed event_id=%s type=%s user_id=%s transitioned=%s",
        event.id,
        event.type,
        identity_id,
        bool(effects),
    )
    return WebhookResult(status="processed", subscription=subscription, effects=effects)


async def cancel(
    session: AsyncSession,
    identity_id: str,
    *,
    now: datetime | None = None,
) -> TransitionResult:
    """Cancel a paid subscription.

    Access continues until end_date and the row collapses to free after that.
    A row that no payment ever activated has no paid period, so it drops to
    free straight away.
    """
    current = now or _utc_now()
    async with identity_lock(identity_id):
        try:
            subscription = await _lock_row(session, identity_id)
            if subscription is None:
                session.add(new_free_subscription(identity_id, now=current))
                await session.commit()
                raise SubscriptionStateConflictError("No paid subscription to cancel")
            if subscription.plan == PLAN_FREE or subscription.status not in (STATUS_ACTIVE, STATUS_PAST_DUE):
                raise SubscriptionStateConflictError(
                    f"Cannot cancel a {subscription.status} {subscription.plan} subscription"
                )
            plan = subscription.plan
            if subscription.activated_at is None:
                effects = subscription_canceled(identity_id, subscription.id, plan, paid_period=False)
                await session.execute(delete(Subscription).where(Subscription.id == subscription.id))
                subscription = new_free_subscription(identity_id, now=current)
                session.add(subscription)
            else:
                subscription.status = STATUS_CANCELED
                effects = subscription_canceled(identity_id, subscription.id, plan)
            _assert_invariants(subscription)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    logger.info("subscription_canceled user_id=%s plan=%s status=%s", identity_id, plan, subscription.status)
    return TransitionResult(subscription=subscription, effects=effects)


async def status_and_collapse(
    session: AsyncSession,
    identity_id: str,
    *,
    now: datetime | None = None,
) -> Subscription:
    """Return the current subscription, collapsing a lapsed paid row to free.

    A missing row is recreated as free/active.
    """
    current = now or _utc_now()
    async with identity_lock(identity_id):
        try:
            subscription = await _lock_row(session, identity_id)
            if subscription is not None and not _is_lapsed(subscription, current):
                await session.commit()
                return subscription
            if subscription is not None:
                await session.execute(delete(Subscription).where(Subscription.id == subscription.id))
                logger.info(
                    "subscription_collapsed user_id=%s plan=%s status=%s",
                    identity_id,
                    subscription.plan,
                    subscription.status,
                )
            replacement = new_free_subscription(identity_id, now=current)
            session.add(replacement)
            _assert_invariants(replacement)
            await session.commit()
        except IntegrityError:
            # Another process recreated the row first; read theirs.
            await session.rollback()
            existing = await get_subscription(session, identity_id)
            if existing is None:
                raise
            return existing
        except Exception:
            await session.rollback()
            raise
    return replacement
