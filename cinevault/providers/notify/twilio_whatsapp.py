from __future__ import annotations

import time

import httpx

from cinevault.core.config import get_settings
from cinevault.core.errors import NotificationGatewayError, ProviderConfigError
from cinevault.services.resilience import CircuitBreaker, retry_async, single_attempt_policy
from cinevault.services.telemetry import record_external_call


_INTEGRATION = "notify.twilio_whatsapp"


class TwilioWhatsAppGateway:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._breaker = CircuitBreaker(_INTEGRATION)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = min(self._settings.notify_timeout_ms, self._settings.ext_call_timeout_ms) / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def send(self, mobile_number: str, body: str) -> None:
        settings = self._settings
        account_sid = settings.twilio_account_sid
        if not account_sid or not settings.twilio_auth_token or not settings.twilio_whatsapp_from:
            raise ProviderConfigError(
                "TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_WHATSAPP_FROM are required for WhatsApp"
            )
        url = f"https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"
        form = {
            "From": f"whatsapp:{settings.twilio_whatsapp_from}",
            "To": f"whatsapp:{mobile_number}",
            "Body": body,
        }
        client = self._get_client()
        start = time.monotonic()
        self._breaker.before_call()

        async def _call() -> httpx.Response:
            return await client.post(url, data=form, auth=(account_sid, settings.twilio_auth_token))

        try:
            # Message creation is not idempotent on Twilio's side, so never resend.
            response = await retry_async(
                _call,
                policy=single_attempt_policy(timeout_ms=settings.notify_timeout_ms),
            )
        except httpx.HTTPError as exc:
            self._breaker.record_failure()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise NotificationGatewayError("WhatsApp request failed") from exc

        if response.status_code >= 500:
            self._breaker.record_failure()
        else:
            self._breaker.record_success()
        record_external_call(
            integration=_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 400,
        )
        if response.status_code >= 400:
            raise NotificationGatewayError(f"WhatsApp gateway error: {response.status_code}")
