from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable

import stripe

from cinevault.core.config import get_settings
from cinevault.core.errors import (
    BillingGatewayError,
    ProviderConfigError,
    WebhookSignatureError,
)
from cinevault.providers.billing.base import PaymentIntent, WebhookEvent
from cinevault.services.resilience import (
    CircuitBreaker,
    default_retry_policy,
    retry_async,
    single_attempt_policy,
)
from cinevault.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "billing.stripe"

# Network, rate limit and server-side failures are worth retrying by the caller.
_TRANSIENT_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _to_intent(obj: Any) -> PaymentIntent:
    payload = _as_dict(obj)
    customer = payload.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return PaymentIntent(
        id=str(payload["id"]),
        status=str(payload.get("status") or ""),
        client_secret=payload.get("client_secret"),
        customer_ref=customer,
        amount=payload.get("amount"),
        currency=payload.get("currency"),
        metadata={str(k): str(v) for k, v in _as_dict(payload.get("metadata")).items()},
    )


def _retryable(exc: Exception) -> bool:
    return isinstance(exc, (TimeoutError, *_TRANSIENT_ERRORS))


class StripeBillingGateway:
    """Billing gateway backed by the Stripe SDK.

    The SDK is synchronous, so calls run in a worker thread under a deadline.
    Reads retry transient failures; writes run once and rely on Stripe
    idempotency keys when the caller supplies one.
    """

    def __init__(self, api_key: str | None = None) -> None:
        self._settings = get_settings()
        self._api_key = api_key or self._settings.stripe_api_key
        self._breaker = CircuitBreaker(_INTEGRATION)

    def _require_key(self) -> str:
        if not self._api_key:
            raise ProviderConfigError("STRIPE_API_KEY is required for the stripe billing provider")
        return self._api_key

    async def _call(self, operation: str, func: Callable[[], Any], *, idempotent: bool) -> Any:
        self._require_key()
        timeout_ms = self._settings.billing_timeout_ms
        if idempotent:
            policy = default_retry_policy(timeout_ms=timeout_ms)
        else:
            policy = single_attempt_policy(timeout_ms=timeout_ms)
        self._breaker.before_call()

        async def _attempt() -> Any:
            return await asyncio.to_thread(func)

        start = time.monotonic()
        try:
            result = await retry_async(_attempt, policy=policy, retryable=_retryable)
        except (TimeoutError, *_TRANSIENT_ERRORS) as exc:
            self._breaker.record_failure()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("billing_gateway_unavailable operation=%s error=%s", operation, type(exc).__name__)
            raise BillingGatewayError(
                "Billing gateway is temporarily unavailable; retry later",
                transient=True,
            ) from exc
        except stripe.StripeError as exc:
            # Caller-fixable (card declined, bad parameters): the gateway itself is healthy.
            self._breaker.record_success()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.info("billing_gateway_rejected operation=%s error=%s", operation, type(exc).__name__)
            raise BillingGatewayError(exc.user_message or "Billing gateway rejected the request") from exc
        self._breaker.record_success()
        record_external_call(
            integration=_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return result

    async def create_customer(self, email: str, *, idempotency_key: str | None = None) -> str:
        def _create() -> Any:
            return stripe.Customer.create(
                email=email,
                api_key=self._api_key,
                idempotency_key=idempotency_key,
            )

        customer = await self._call("create_customer", _create, idempotent=False)
        return str(_as_dict(customer)["id"])

    async def create_payment_intent(
        self,
        customer_ref: str,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        *,
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        def _create() -> Any:
            return stripe.PaymentIntent.create(
                customer=customer_ref,
                amount=amount,
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                api_key=self._api_key,
                idempotency_key=idempotency_key,
            )

        intent = await self._call("create_payment_intent", _create, idempotent=False)
        return _to_intent(intent)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        def _retrieve() -> Any:
            return stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self._api_key)

        intent = await self._call("retrieve_payment_intent", _retrieve, idempotent=True)
        return _to_intent(intent)

    def construct_webhook_event(self, payload: bytes, signature: str | None, secret: str) -> WebhookEvent:
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError() from exc
        except ValueError as exc:
            raise WebhookSignatureError("Webhook payload is not valid JSON") from exc
        # Signature is verified; read the event from the raw body as plain JSON.
        body = json.loads(payload)
        data_object = (body.get("data") or {}).get("object") or {}
        return WebhookEvent(id=str(body["id"]), type=str(body["type"]), data_object=dict(data_object))

