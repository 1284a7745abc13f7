from __future__ import annotations

import time

import httpx

from cinevault.core.config import get_settings
from cinevault.core.errors import NotificationGatewayError, ProviderConfigError
from cinevault.services.resilience import CircuitBreaker, default_retry_policy, retry_async
from cinevault.services.telemetry import record_external_call


_INTEGRATION = "notify.fcm"


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class FCMPushGateway:
    """Firebase Cloud Messaging HTTP v1 sender.

    Expects a short-lived OAuth access token in ``FCM_ACCESS_TOKEN``; minting
    it from a service account is left to the deployment.
    """

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

    async def send(self, token: str, title: str, body: str, data: dict[str, str] | None = None) -> None:
        project_id = self._settings.fcm_project_id
        access_token = self._settings.fcm_access_token
        if not project_id or not access_token:
            raise ProviderConfigError("FCM_PROJECT_ID and FCM_ACCESS_TOKEN are required for FCM push")

        message: dict[str, object] = {
            "token": token,
            "notification": {"title": title, "body": body},
        }
        if data:
            message["data"] = {str(k): str(v) for k, v in data.items()}
        url = f"https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
        headers = {"Authorization": f"Bearer {access_token}"}
        client = self._get_client()
        start = time.monotonic()
        self._breaker.before_call()

        async def _call() -> httpx.Response:
            response = await client.post(url, json={"message": message}, headers=headers)
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        try:
            response = await retry_async(
                _call,
                policy=default_retry_policy(timeout_ms=self._settings.notify_timeout_ms),
                retryable=_retryable,
            )
        except httpx.HTTPError as exc:
            self._breaker.record_failure()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise NotificationGatewayError("FCM request failed") from exc

        if response.status_code >= 400:
            # Unregistered or malformed tokens; the service is healthy.
            self._breaker.record_success()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise NotificationGatewayError(f"FCM rejected message: {response.status_code}")

        self._breaker.record_success()
        record_external_call(
            integration=_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
