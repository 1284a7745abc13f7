from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


PAYMENT_SUCCEEDED = "succeeded"


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    status: str
    client_secret: str | None
    customer_ref: str | None
    amount: int | None = None
    currency: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == PAYMENT_SUCCEEDED


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    # The event's data.object payload (a payment intent, an invoice, ...).
    data_object: dict[str, Any]


class BillingGateway(Protocol):
    async def create_customer(self, email: str, *, idempotency_key: str | None = None) -> str:
        ...

    async def create_payment_intent(
        self,
        customer_ref: str,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        *,
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        ...

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        ...

    def construct_webhook_event(self, payload: bytes, signature: str | None, secret: str) -> WebhookEvent:
        ...
