from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest
import stripe

from cinevault.core.config import get_settings
from cinevault.core.errors import (
    BillingGatewayError,
    IntegrationUnavailableError,
    NotificationGatewayError,
    ProviderConfigError,
    WebhookSignatureError,
)
from cinevault.providers.billing.factory import get_billing_gateway
from cinevault.providers.billing.fake import FakeBillingGateway, build_billing_signature
from cinevault.providers.billing.stripe_gateway import StripeBillingGateway
from cinevault.providers.notify.factory import get_push_gateway, get_whatsapp_gateway
from cinevault.providers.notify.fcm import FCMPushGateway


def test_build_billing_signature_matches_hmac() -> None:
    secret = "supersecret"
    payload = b'{"event":"test"}'
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    assert build_billing_signature(secret, payload) == expected


def test_fake_webhook_requires_matching_signature() -> None:
    gateway = FakeBillingGateway()
    payload = json.dumps(
        {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}
    ).encode("utf-8")

    event = gateway.construct_webhook_event(payload, build_billing_signature("whsec", payload), "whsec")
    assert (event.id, event.type, event.data_object) == ("evt_1", "payment_intent.succeeded", {"id": "pi_1"})

    with pytest.raises(WebhookSignatureError):
        gateway.construct_webhook_event(payload, build_billing_signature("other", payload), "whsec")
    with pytest.raises(WebhookSignatureError):
        gateway.construct_webhook_event(payload, None, "whsec")
    with pytest.raises(WebhookSignatureError):
        gateway.construct_webhook_event(b"[]", build_billing_signature("whsec", b"[]"), "whsec")


def test_billing_factory_rejects_unknown_provider(monkeypatch) -> None:
    monkeypatch.setenv("BILLING_PROVIDER", "paypal")
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        get_billing_gateway()


def test_notify_factories_can_be_disabled(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_PROVIDER", "none")
    monkeypatch.setenv("WHATSAPP_PROVIDER", "none")
    get_settings.cache_clear()
    assert get_push_gateway() is None
    assert get_whatsapp_gateway() is None


async def test_stripe_gateway_requires_api_key(monkeypatch) -> None:
    monkeypatch.delenv("STRIPE_API_KEY", raising=False)
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        await StripeBillingGateway().retrieve_payment_intent("pi_1")


async def test_stripe_connection_errors_are_transient(monkeypatch) -> None:
    calls = {"count": 0}

    def _retrieve(*_args, **_kwargs):
        calls["count"] += 1
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", _retrieve)
    gateway = StripeBillingGateway(api_key="sk_test_dummy")

    with pytest.raises(BillingGatewayError) as excinfo:
        await gateway.retrieve_payment_intent("pi_1")

    assert excinfo.value.transient is True
    assert excinfo.value.status_code == 503
    # Reads are idempotent and retried within the configured attempt budget.
    assert calls["count"] == get_settings().ext_retry_max_attempts


async def test_repeated_stripe_outages_open_the_breaker(monkeypatch) -> None:
    calls = {"count": 0}

    def _retrieve(*_args, **_kwargs):
        calls["count"] += 1
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", _retrieve)
    monkeypatch.setenv("CB_FAILURE_THRESHOLD", "2")
    get_settings.cache_clear()
    gateway = StripeBillingGateway(api_key="sk_test_dummy")

    for _ in range(2):
        with pytest.raises(BillingGatewayError):
            await gateway.retrieve_payment_intent("pi_1")
    attempts_before_open = calls["count"]

    with pytest.raises(IntegrationUnavailableError):
        await gateway.retrieve_payment_intent("pi_1")
    assert calls["count"] == attempts_before_open


async def test_stripe_writes_run_once(monkeypatch) -> None:
    calls = {"count": 0}

    def _create(**_kwargs):
        calls["count"] += 1
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.Customer, "create", _create)
    gateway = StripeBillingGateway(api_key="sk_test_dummy")

    with pytest.raises(BillingGatewayError):
        await gateway.create_customer("someone@example.com", idempotency_key="customer-1")
    assert calls["count"] == 1


async def test_stripe_rejections_are_not_transient(monkeypatch) -> None:
    def _create(**_kwargs):
        raise stripe.InvalidRequestError("No such customer: 'cus_missing'", "customer")

    monkeypatch.setattr(stripe.PaymentIntent, "create", _create)
    gateway = StripeBillingGateway(api_key="sk_test_dummy")

    with pytest.raises(BillingGatewayError) as excinfo:
        await gateway.create_payment_intent("cus_missing", 999, "usd", {"plan": "basic"})

    assert excinfo.value.transient is False
    assert excinfo.value.status_code == 422
    assert "cus_missing" in excinfo.value.message


async def test_stripe_payment_intent_is_mapped(monkeypatch) -> None:
    def _retrieve(payment_intent_id, **_kwargs):
        return {
            "id": payment_intent_id,
            "status": "succeeded",
            "client_secret": "secret",
            "customer": "cus_1",
            "amount": 1999,
            "currency": "usd",
            "metadata": {"plan": "premium", "user_id": "user-1"},
        }

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", _retrieve)
    intent = await StripeBillingGateway(api_key="sk_test_dummy").retrieve_payment_intent("pi_9")

    assert intent.id == "pi_9"
    assert intent.succeeded is True
    assert intent.customer_ref == "cus_1"
    assert intent.metadata == {"plan": "premium", "user_id": "user-1"}


def test_stripe_webhook_rejects_bad_signature() -> None:
    gateway = StripeBillingGateway(api_key="sk_test_dummy")
    with pytest.raises(WebhookSignatureError):
        gateway.construct_webhook_event(b"{}", "t=1,v1=deadbeef", "whsec_test")
    with pytest.raises(WebhookSignatureError):
        gateway.construct_webhook_event(b"{}", None, "whsec_test")


def _fcm_settings(monkeypatch) -> None:
    monkeypatch.setenv("FCM_PROJECT_ID", "cinevault-test")
    monkeypatch.setenv("FCM_ACCESS_TOKEN", "ya29.test")
    get_settings.cache_clear()


async def test_fcm_retries_server_errors_then_sends(monkeypatch) -> None:
    _fcm_settings(monkeypatch)
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if len(requests) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"name": "projects/cinevault-test/messages/1"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    gateway = FCMPushGateway(client=client)
    await gateway.send("device-token", "New Movie Added!", "Heat is now available.", {"movie_id": "m1"})
    await client.aclose()

    assert len(requests) == 2
    body = json.loads(requests[-1].content)
    assert body["message"]["token"] == "device-token"
    assert body["message"]["data"] == {"movie_id": "m1"}
    assert requests[-1].headers["Authorization"] == "Bearer ya29.test"
    assert str(requests[-1].url).endswith("/projects/cinevault-test/messages:send")


async def test_fcm_rejected_token_raises_without_retry(monkeypatch) -> None:
    _fcm_settings(monkeypatch)
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(404, json={"error": {"status": "NOT_FOUND"}})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    with pytest.raises(NotificationGatewayError):
        await FCMPushGateway(client=client).send("stale-token", "title", "body")
    await client.aclose()
    assert len(requests) == 1
