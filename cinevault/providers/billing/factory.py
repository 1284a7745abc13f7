from __future__ import annotations

from cinevault.core.config import get_settings
from cinevault.core.errors import ProviderConfigError
from cinevault.providers.billing.base import BillingGateway
from cinevault.providers.billing.fake import FakeBillingGateway
from cinevault.providers.billing.stripe_gateway import StripeBillingGateway


_gateway: BillingGateway | None = None


def get_billing_gateway() -> BillingGateway:
    # One gateway per process so breaker state and fake intents persist across requests.
    global _gateway
    if _gateway is not None:
        return _gateway
    settings = get_settings()
    provider = (settings.billing_provider or "").lower()
    if provider == "fake":
        _gateway = FakeBillingGateway()
    elif provider == "stripe":
        _gateway = StripeBillingGateway()
    else:
        raise ProviderConfigError(f"Unsupported billing provider: {provider}")
    return _gateway


def reset_billing_gateway() -> None:
    global _gateway
    _gateway = None
