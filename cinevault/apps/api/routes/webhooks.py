from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.apps.api.deps import get_db
from cinevault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from cinevault.apps.api.response import SuccessEnvelope, success_response
from cinevault.core.config import get_settings
from cinevault.core.errors import ProviderConfigError
from cinevault.providers.billing.base import BillingGateway
from cinevault.providers.billing.factory import get_billing_gateway
from cinevault.services.notifications import dispatch_effects
from cinevault.services.subscriptions import handle_webhook


router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


class WebhookAck(BaseModel):
    received: bool
    status: str


@router.post("/stripe", response_model=SuccessEnvelope[WebhookAck])
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
) -> dict:
    secret = get_settings().stripe_webhook_secret
    if not secret:
        raise ProviderConfigError("STRIPE_WEBHOOK_SECRET is not configured")
    # Verify against the raw body before anything is parsed.
    payload = await request.body()
    event = gateway.construct_webhook_event(payload, stripe_signature, secret)
    result = await handle_webhook(db, event)
    background_tasks.add_task(dispatch_effects, result.effects)
    return success_response(request=request, data=WebhookAck(received=True, status=result.status))
