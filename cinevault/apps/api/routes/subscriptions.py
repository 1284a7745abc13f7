from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.apps.api.deps import Principal, get_current_principal, get_db
from cinevault.apps.api.openapi import BILLING_ERROR_RESPONSES
from cinevault.apps.api.response import SuccessEnvelope, success_response
from cinevault.core.errors import StaleIdentityError
from cinevault.domain.models import Subscription
from cinevault.providers.billing.base import BillingGateway
from cinevault.providers.billing.factory import get_billing_gateway
from cinevault.services import subscriptions as engine
from cinevault.services.identity import get_identity
from cinevault.services.notifications import dispatch_effects


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"], responses=BILLING_ERROR_RESPONSES)


class InitiateRequest(BaseModel):
    plan: str = Field(max_length=32)


class ConfirmRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1, max_length=255)


class SubscriptionResponse(BaseModel):
    id: str
    plan: str
    status: str
    start_date: datetime
    end_date: datetime | None
    can_access_premium: bool


class InitiateResponse(BaseModel):
    subscription: SubscriptionResponse
    client_secret: str | None = None
    payment_intent_id: str | None = None


def subscription_payload(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        plan=subscription.plan,
        status=subscription.status,
        start_date=subscription.start_date,
        end_date=subscription.end_date,
        can_access_premium=engine.can_access_premium(subscription),
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[InitiateResponse])
async def initiate_subscription(
    request: Request,
    payload: InitiateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
) -> dict:
    user = await get_identity(db, principal.identity_id)
    if user is None:
        raise StaleIdentityError()
    result = await engine.initiate(db, user, payload.plan, gateway=gateway)
    intent = result.payment_intent
    data = InitiateResponse(
        subscription=subscription_payload(result.subscription),
        client_secret=intent.client_secret if intent else None,
        payment_intent_id=intent.id if intent else None,
    )
    return success_response(request=request, data=data)


@router.post("/confirm", response_model=SuccessEnvelope[SubscriptionResponse])
async def confirm_subscription(
    request: Request,
    payload: ConfirmRequest,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
) -> dict:
    result = await engine.confirm(db, principal.identity_id, payload.payment_intent_id, gateway=gateway)
    background_tasks.add_task(dispatch_effects, result.effects)
    return success_response(request=request, data=subscription_payload(result.subscription))


@router.get("/status", response_model=SuccessEnvelope[SubscriptionResponse])
async def subscription_status(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    subscription = await engine.status_and_collapse(db, principal.identity_id)
    return success_response(request=request, data=subscription_payload(subscription))


@router.post("/cancel", response_model=SuccessEnvelope[SubscriptionResponse])
async def cancel_subscription(
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await engine.cancel(db, principal.identity_id)
    background_tasks.add_task(dispatch_effects, result.effects)
    return success_response(request=request, data=subscription_payload(result.subscription))
