from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from cinevault.core.errors import (
    BillingGatewayError,
    InvalidPlanError,
    PaymentNotCompletedError,
    SubscriptionStateConflictError,
)
from cinevault.domain.models import ProcessedWebhookEvent, Subscription
from cinevault.persistence.db import SessionLocal
from cinevault.providers.billing.base import WebhookEvent
from cinevault.providers.billing.fake import FakeBillingGateway
from cinevault.services.notifications.effects import (
    KIND_PAYMENT_FAILED,
    KIND_SUBSCRIPTION_ACTIVATED,
    KIND_SUBSCRIPTION_CANCELED,
)
from cinevault.services.subscriptions import (
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SUCCEEDED,
    can_access_premium,
    cancel,
    confirm,
    get_subscription,
    handle_webhook,
    initiate,
    status_and_collapse,
)
from cinevault.tests.utils.auth import create_test_identity


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _current(user_id: str) -> Subscription:
    async with SessionLocal() as session:
        return await get_subscription(session, user_id)


async def _row_count(user_id: str) -> int:
    async with SessionLocal() as session:
        return (
            await session.execute(
                select(func.count()).select_from(Subscription).where(Subscription.user_id == user_id)
            )
        ).scalar_one()


async def _active_paid(user, gateway: FakeBillingGateway, plan: str = "basic", *, now: datetime):
    async with SessionLocal() as session:
        started = await initiate(session, user, plan, gateway=gateway, now=now)
    gateway.set_intent_status(started.payment_intent.id)
    async with SessionLocal() as session:
        return await confirm(session, user.id, started.payment_intent.id, gateway=gateway, now=now)


def _event(event_id: str, event_type: str, **data_object) -> WebhookEvent:
    return WebhookEvent(id=event_id, type=event_type, data_object=data_object)


async def test_registration_creates_exactly_one_free_subscription() -> None:
    user = await create_test_identity()
    subscription = await _current(user.id)
    assert subscription.plan == "free"
    assert subscription.status == "active"
    assert subscription.end_date is None
    assert await _row_count(user.id) == 1


@pytest.mark.parametrize("plan", [None, "", "gold", "FREE-ish"])
async def test_initiate_rejects_unknown_plans(plan) -> None:
    user = await create_test_identity()
    async with SessionLocal() as session:
        with pytest.raises(InvalidPlanError):
            await initiate(session, user, plan, gateway=FakeBillingGateway())
    assert (await _current(user.id)).plan == "free"


async def test_initiate_paid_plan_starts_pending_with_intent() -> None:
    user = await create_test_identity()
    gateway = FakeBillingGateway()
    now = _utc_now()
    async with SessionLocal() as session:
        result = await initiate(session, user, " Basic ", gateway=gateway, now=now)

    subscription = await _current(user.id)
    assert subscription.id == result.subscription.id
    assert subscription.plan == "basic"
    assert subscription.status == "pending"
    assert subscription.end_date == now + timedelta(days=7)
    assert subscription.billing_customer_ref in gateway.customers
    assert subscription.billing_subscription_ref is None
    intent = result.payment_intent
    assert intent.amount == 999
    assert intent.customer_ref == subscription.billing_customer_ref
    assert intent.metadata == {"user_id": user.id, "plan": "basic", "subscription_id": subscription.id}
    assert await _row_count(user.id) == 1


async def test_initiate_free_replaces_row_without_gateway_calls() -> None:
    user = await create_test_identity()
    gateway = FakeBillingGateway()
    await _active_paid(user, gateway, now=_utc_now())
    gateway.calls.clear()

    async with SessionLocal() as session:
        result = await initiate(session, user, "free", gateway=gateway)

    assert result.payment_intent is None
    assert gateway.calls == []
    subscription = await _current(user.id)
    assert (subscription.plan, subscription.status, subscription.end_date) == ("free", "active", None)


@pytest.mark.parametrize("operation", ["create_customer", "create_payment_intent"])
async def test_gateway_failure_leaves_previous_subscription_untouched(operation) -> None:
    user = await create_test_identity()
    before = await _current(user.id)
    gateway = FakeBillingGateway()
    gateway.fail_next(operation, transient=True)

    async with SessionLocal() as session:
        with pytest.raises(BillingGatewayError) as excinfo:
            await initiate(session, user, "premium", gateway=gateway)

    assert excinfo.value.status_code == 503
    after = await _current(user.id)
    assert after.id == before.id
    assert (after.plan, after.status) == ("free", "active")


async def test_confirm_requires_a_succeeded_intent() -> None:
    user = await create_test_identity()
    gateway = FakeBillingGateway()
    async with SessionLocal() as session:
        started = await initiate(session, user, "premium", gateway=gateway)

    async with SessionLocal() as session:
        with pytest.raises(PaymentNotCompletedError):
            await confirm(session, user.id, started.payment_intent.id, gateway=gateway)
    assert (await _current(user.id)).status == "pending"


async def test_confirm_activates_with_payment_reference_and_effects() -> None:
    user = await create_test_identity()
    gateway = FakeBillingGateway()
    now = _utc_now()
    result = await _active_paid(user, gateway, "premium", now=now)

    subscription = await _current(user.id)
    assert subscription.status == "active"
    assert subscription.plan == "premium"
    assert subscription.billing_subscription_ref == result.subscription.billing_subscription_ref
    assert subscription.billing_subscription_ref.startswith("pi_")
    assert subscription.end_date == now + timedelta(days=30)
    assert {(effect.kind, effect.channel) for effect in result.effects} == {
        (KIND_SUBSCRIPTION_ACTIVATED, "push"),
        (KIND_SUBSCRIPTION_ACTIVATED, "whatsapp"),
    }
    assert can_access_premium(subscription, now=now) is True


async def test_confirm_rejects_intent_of_another_customer() -> None:
    owner = await create_test_identity()
    other = await create_test_identity()
    gateway = FakeBillingGateway()
    async with SessionLocal() as session:
        await initiate(session, owner, "basic", gateway=gateway)
    async with SessionLocal() as session:
        foreign = await initiate(session, other, "basic", gateway=gateway)
    gateway.set_intent_status(foreign.payment_intent.id)

    async with SessionLocal() as session:
        with pytest.raises(SubscriptionStateConflictError):
            await confirm(session, owner.id, foreign.payment_intent.id, gateway=gateway)
    assert (await _current(owner.id)).status == "pending"


async def test_confirm_without_pending_subscription_conflicts() -> None:
    user = await create_test_identity()
    async with SessionLocal() as session:
        with pytest.raises(SubscriptionStateConflictError):
            await confirm(session, user.id, "pi_missing", gateway=FakeBillingGateway())


def test_premium_access_table() -> None:
    now = _utc_now()
    future = now + timedelta(days=1)
    past = now - timedelta(seconds=1)

    def _row(plan: str, status: str, end_date, activated_at=now):
        return Subscription(plan=plan, status=status, end_date=end_date, activated_at=activated_at)

    assert can_access_premium(_row("basic", "active", future), now=now) is True
    assert can_access_premium(_row("premium", "canceled", future), now=now) is True
    assert can_access_premium(_row("premium", "pending", future), now=now) is False
    assert can_access_premium(_row("basic", "past_due", future), now=now) is False
    assert can_access_premium(_row("basic", "active", past), now=now) is False
    assert can_access_premium(_row("basic", "active", now), now=now) is False
    assert can_access_premium(_row("free", "active", None), now=now) is False
    assert can_access_premium(_row("premium", "active", future, activated_at=None), now=now) is False
    assert can_access_premium(None, now=now) is False


async def test_cancel_keeps_paid_period_and_emits_effect() -> None:
    user = await create_test_identity()
    gateway = FakeBillingGateway()
    now = _utc_now()
    activated = await _active_paid(user, gateway, now=now)

    async with SessionLocal() as session:
        result = await cancel(session, user.id, now=now)

    subscription = await _current(user.id)
    assert subscription.status == "canceled"
    assert subscription.end_date == activated.subscription.end_date
    assert [effect.kind for effect in result.effects] == [KIND_SUBSCRIPTION_CANCELED]
    assert can_access_premium(subscription, now=now) is True


@pytest.mark.parametrize("plan", ["free", "pending"])
async def test_cancel_rejects_free_and_pending(plan) -> None:
    user = await create_test_identity()
    if plan == "pending":
        async with SessionLocal() as session:
            await initiate(session, user, "basic", gateway=FakeBillingGateway())
    async with SessionLocal() as session:
        with pytest.raises(SubscriptionStateConflictError):
            await cancel(session, user.id)


async def test_cancel_twice_conflicts() -> None:
    user = await create_test_identity()
    await _active_paid(user, FakeBillingGateway(), now=_utc_now())
    async with SessionLocal() as session:
        await cancel(session, user.id)
    async with SessionLocal() as session:
        with pytest.raises(SubscriptionStateConflictError):
            await cancel(session, user.id)


@pytest.mark.parametrize("cancel_first", [False, True])
async def test_status_collapses_lapsed_paid_rows_to_free(cancel_first) -> None:
    user = await create_test_identity()
    now = _utc_now()
    activated = await _active_paid(user, FakeBillingGateway(), now=now)
    if cancel_first:
        async with SessionLocal() as session:
            await cancel(session, user.id, now=now)

    async with SessionLocal() as session:
        still_paid = await status_and_collapse(session, user.id, now=now + timedelta(days=6))
    assert still_paid.id == activated.subscription.id

    async with SessionLocal() as session:
        collapsed = await status_and_collapse(session, user.id, now=now + timedelta(days=7))
    assert (collapsed.plan, collapsed.status, collapsed.end_date) == ("free", "active", None)
    assert collapsed.billing_customer_ref is None
    assert await _row_count(user.id) == 1


async def test_status_does_not_collapse_past_due_rows() -> None:
    user = await create_test_identity()
    now = _utc_now()
    await _active_paid(user, FakeBillingGateway(), now=now)
    async with SessionLocal() as session:
        await handle_webhook(
            session,
            _event("evt_fail_keep", EVENT_PAYMENT_FAILED, id="pi_x", metadata={"user_id": user.id}),
            now=now,
        )
    async with SessionLocal() as session:
        subscription = await status_and_collapse(session, user.id, now=now + timedelta(days=30))
    assert subscription.status == "past_due"
    assert subscription.plan == "basic"


async def test_status_recreates_missing_row_as_free() -> None:
    user = await create_test_identity()
    async with SessionLocal() as session:
        existing = await get_subscription(session, user.id)
        await session.delete(existing)
        await session.commit()

    async with SessionLocal() as session:
        subscription = await status_and_collapse(session, user.id)
    assert (subscription.plan, subscription.status) == ("free", "active")
    assert await _row_count(user.id) == 1


async def test_webhook_success_activates_pending_subscription() -> None:
    user = await create_test_identity()
    gateway = FakeBillingGateway()
    now = _utc_now()
    async with SessionLocal() as session:
        started = await initiate(session, user, "basic", gateway=gateway, now=now)
    intent = started.payment_intent

    event = _event(
        "evt_success_1",
        EVENT_PAYMENT_SUCCEEDED,
        id=intent.id,
        customer=intent.customer_ref,
        metadata=dict(intent.metadata),
    )
    async with SessionLocal() as session:
        result = await handle_webhook(session, event, now=now)

    assert result.status == "processed"
    assert [effect.channel for effect in result.effects] == ["push", "whatsapp"]
    subscription = await _current(user.id)
    assert subscription.status == "active"
    assert subscription.billing_subscription_ref == intent.id

    # Redelivery of the same event id changes nothing.
    async with SessionLocal() as session:
        replay = await handle_webhook(session, event, now=now + timedelta(days=1))
    assert replay.status == "duplicate"
    assert replay.effects == []
    assert (await _current(user.id)).end_date == now + timedelta(days=7)


async def test_webhook_success_ignores_mismatched_customer() -> None:
    user = await create_test_identity()
    gateway = FakeBillingGateway()
    async with SessionLocal() as session:
        started = await initiate(session, user, "basic", gateway=gateway)

    event = _event(
        "evt_success_other",
        EVENT_PAYMENT_SUCCEEDED,
        id=started.payment_intent.id,
        customer="cus_someone_else",
        metadata={"user_id": user.id},
    )
    async with SessionLocal() as session:
        result = await handle_webhook(session, event)
    assert result.status == "processed"
    assert result.effects == []
    assert (await _current(user.id)).status == "pending"


async def test_stale_failure_from_replaced_initiation_is_ignored() -> None:
    user = await create_test_identity()
    gateway = FakeBillingGateway()
    now = _utc_now()
    async with SessionLocal() as session:
        abandoned = await initiate(session, user, "basic", gateway=gateway, now=now)
    activated = await _active_paid(user, gateway, "premium", now=now)

    stale = abandoned.payment_intent
    async with SessionLocal() as session:
        result = await handle_webhook(
            session,
            _event(
                "evt_stale_failure",
                EVENT_PAYMENT_FAILED,
                id=stale.id,
                customer=stale.customer_ref,
                metadata=dict(stale.metadata),
            ),
            now=now,
        )

    assert result.status == "processed"
    assert result.effects == []
    subscription = await _current(user.id)
    assert (subscription.plan, subscription.status) == ("premium", "active")
    assert subscription.id == activated.subscription.id
    assert can_access_premium(subscription, now=now) is True


async def test_failure_for_another_subscription_id_is_ignored() -> None:
    user = await create_test_identity()
    activated = await _active_paid(user, FakeBillingGateway(), now=_utc_now())

    async with SessionLocal() as session:
        result = await handle_webhook(
            session,
            _event(
                "evt_other_subscription",
                EVENT_PAYMENT_FAILED,
                id="pi_elsewhere",
                customer=activated.subscription.billing_customer_ref,
                metadata={"user_id": user.id, "subscription_id": "not-this-one"},
            ),
        )
    assert result.effects == []
    assert (await _current(user.id)).status == "active"


async def test_payment_failed_moves_active_to_past_due() -> None:
    user = await create_test_identity()
    await _active_paid(user, FakeBillingGateway(), now=_utc_now())

    async with SessionLocal() as session:
        result = await handle_webhook(
            session,
            _event("evt_fail_1", EVENT_PAYMENT_FAILED, id="pi_failed", metadata={"user_id": user.id}),
        )

    assert result.status == "processed"
    assert {effect.kind for effect in result.effects} == {KIND_PAYMENT_FAILED}
    subscription = await _current(user.id)
    assert subscription.status == "past_due"
    assert can_access_premium(subscription) is False


async def test_payment_failed_on_pending_records_failed_attempt() -> None:
    user = await create_test_identity()
    async with SessionLocal() as session:
        started = await initiate(session, user, "premium", gateway=FakeBillingGateway())

    async with SessionLocal() as session:
        await handle_webhook(
            session,
            _event(
                "evt_fail_pending",
                EVENT_PAYMENT_FAILED,
                id=started.payment_intent.id,
                metadata={"user_id": user.id},
            ),
        )

    subscription = await _current(user.id)
    assert subscription.status == "past_due"
    assert subscription.billing_subscription_ref == started.payment_intent.id
    assert subscription.activated_at is None


async def test_cancel_after_declined_first_payment_drops_to_free() -> None:
    user = await create_test_identity()
    now = _utc_now()
    async with SessionLocal() as session:
        started = await initiate(session, user, "premium", gateway=FakeBillingGateway(), now=now)
    async with SessionLocal() as session:
        await handle_webhook(
            session,
            _event(
                "evt_declined_first",
                EVENT_PAYMENT_FAILED,
                id=started.payment_intent.id,
                customer=started.payment_intent.customer_ref,
                metadata=dict(started.payment_intent.metadata),
            ),
            now=now,
        )

    async with SessionLocal() as session:
        result = await cancel(session, user.id, now=now)

    assert [effect.kind for effect in result.effects] == [KIND_SUBSCRIPTION_CANCELED]
    subscription = await _current(user.id)
    assert (subscription.plan, subscription.status, subscription.end_date) == ("free", "active", None)
    assert can_access_premium(subscription, now=now) is False
    assert await _row_count(user.id) == 1


async def test_invoice_failure_resolves_identity_by_customer() -> None:
    user = await create_test_identity()
    activated = await _active_paid(user, FakeBillingGateway(), now=_utc_now())

    async with SessionLocal() as session:
        result = await handle_webhook(
            session,
            _event(
                "evt_invoice_1",
                EVENT_INVOICE_PAYMENT_FAILED,
                id="in_123",
                customer=activated.subscription.billing_customer_ref,
                payment_intent="pi_renewal",
            ),
        )
    assert result.status == "processed"
    assert (await _current(user.id)).status == "past_due"


async def test_payment_failed_never_overwrites_canceled() -> None:
    user = await create_test_identity()
    await _active_paid(user, FakeBillingGateway(), now=_utc_now())
    async with SessionLocal() as session:
        await cancel(session, user.id)

    async with SessionLocal() as session:
        result = await handle_webhook(
            session,
            _event("evt_fail_canceled", EVENT_PAYMENT_FAILED, id="pi_late", metadata={"user_id": user.id}),
        )
    assert result.status == "processed"
    assert result.effects == []
    assert (await _current(user.id)).status == "canceled"


async def test_unknown_or_unresolvable_events_are_recorded_and_ignored() -> None:
    async with SessionLocal() as session:
        unknown = await handle_webhook(session, _event("evt_unknown", "customer.created", id="cus_1"))
    async with SessionLocal() as session:
        orphan = await handle_webhook(session, _event("evt_orphan", EVENT_PAYMENT_FAILED, id="pi_orphan"))
    async with SessionLocal() as session:
        replay = await handle_webhook(session, _event("evt_unknown", "customer.created", id="cus_1"))

    assert (unknown.status, orphan.status, replay.status) == ("ignored", "ignored", "duplicate")
    async with SessionLocal() as session:
        recorded = (await session.execute(select(func.count()).select_from(ProcessedWebhookEvent))).scalar_one()
    assert recorded == 2


async def test_concurrent_duplicate_deliveries_apply_once() -> None:
    user = await create_test_identity()
    await _active_paid(user, FakeBillingGateway(), now=_utc_now())
    event = _event("evt_race", EVENT_PAYMENT_FAILED, id="pi_race", metadata={"user_id": user.id})

    async def _deliver():
        async with SessionLocal() as session:
            return await handle_webhook(session, event)

    results = await asyncio.gather(*[_deliver() for _ in range(4)])
    assert sorted(result.status for result in results) == ["duplicate", "duplicate", "duplicate", "processed"]
    assert sum(len(result.effects) for result in results) == 2


async def test_concurrent_cancel_and_payment_failure_end_canceled() -> None:
    user = await create_test_identity()
    await _active_paid(user, FakeBillingGateway(), now=_utc_now())

    async def _cancel():
        async with SessionLocal() as session:
            return await cancel(session, user.id)

    async def _fail():
        async with SessionLocal() as session:
            return await handle_webhook(
                session,
                _event("evt_interleave", EVENT_PAYMENT_FAILED, id="pi_i", metadata={"user_id": user.id}),
            )

    await asyncio.gather(_cancel(), _fail())

    subscription = await _current(user.id)
    assert subscription.status == "canceled"
    assert subscription.billing_customer_ref and subscription.billing_subscription_ref
    assert await _row_count(user.id) == 1


async def test_concurrent_initiations_leave_one_row() -> None:
    user = await create_test_identity()
    gateway = FakeBillingGateway()

    async def _initiate(plan: str):
        async with SessionLocal() as session:
            return await initiate(session, user, plan, gateway=gateway)

    results = await asyncio.gather(_initiate("basic"), _initiate("premium"), _initiate("free"))

    assert await _row_count(user.id) == 1
    subscription = await _current(user.id)
    assert subscription.id in {result.subscription.id for result in results}
