from __future__ import annotations

import hashlib
import hmac
import json
from uuid import uuid4

from cinevault.core.errors import BillingGatewayError, WebhookSignatureError
from cinevault.providers.billing.base import PAYMENT_SUCCEEDED, PaymentIntent, WebhookEvent


def build_billing_signature(secret: str, payload: bytes) -> str:
    # HMAC SHA256 over the raw body, the scheme the fake gateway accepts.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class FakeBillingGateway:
    """In-memory billing gateway for tests and local runs.

    Payment intents start as ``requires_payment_method``; tests move them with
    ``set_intent_status``. ``fail_next`` makes the next call to an operation
    raise a BillingGatewayError.
    """

    def __init__(self) -> None:
        self.customers: dict[str, str] = {}
        self.intents: dict[str, PaymentIntent] = {}
        self.calls: list[str] = []
        self._failures: dict[str, bool] = {}
        self._idempotent: dict[str, str] = {}

    def fail_next(self, operation: str, *, transient: bool = False) -> None:
        self._failures[operation] = transient

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self._failures:
            transient = self._failures.pop(operation)
            raise BillingGatewayError(f"Fake gateway {operation} failed", transient=transient)

    async def create_customer(self, email: str, *, idempotency_key: str | None = None) -> str:
        self._maybe_fail("create_customer")
        if idempotency_key and idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]
        customer_ref = f"cus_{uuid4().hex[:14]}"
        self.customers[customer_ref] = email
        if idempotency_key:
            self._idempotent[idempotency_key] = customer_ref
        return customer_ref

    async def create_payment_intent(
        self,
        customer_ref: str,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        *,
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        self._maybe_fail("create_payment_intent")
        intent_id = f"pi_{uuid4().hex[:14]}"
        intent = PaymentIntent(
            id=intent_id,
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret_{uuid4().hex[:8]}",
            customer_ref=customer_ref,
            amount=amount,
            currency=currency,
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        return intent

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        self._maybe_fail("retrieve_payment_intent")
        intent = self.intents.get(payment_intent_id)
        if intent is None:
            raise BillingGatewayError(f"No such payment_intent: '{payment_intent_id}'")
        return intent

    def set_intent_status(self, payment_intent_id: str, status: str = PAYMENT_SUCCEEDED) -> PaymentIntent:
        intent = self.intents[payment_intent_id]
        updated = PaymentIntent(
            id=intent.id,
            status=status,
            client_secret=intent.client_secret,
            customer_ref=intent.customer_ref,
            amount=intent.amount,
            currency=intent.currency,
            metadata=intent.metadata,
        )
        self.intents[payment_intent_id] = updated
        return updated

    def construct_webhook_event(self, payload: bytes, signature: str | None, secret: str) -> WebhookEvent:
        expected = build_billing_signature(secret, payload)
        if not signature or not hmac.compare_digest(expected, signature):
            raise WebhookSignatureError()
        try:
            body = json.loads(payload)
            return WebhookEvent(
                id=str(body["id"]),
                type=str(body["type"]),
                data_object=dict(body.get("data", {}).get("object") or {}),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise WebhookSignatureError("Webhook payload is not a valid event") from exc
