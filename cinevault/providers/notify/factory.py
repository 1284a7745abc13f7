from __future__ import annotations

from cinevault.core.config import get_settings
from cinevault.core.errors import ProviderConfigError
from cinevault.providers.notify.base import PushGateway, WhatsAppGateway
from cinevault.providers.notify.fake import FakePushGateway, FakeWhatsAppGateway
from cinevault.providers.notify.fcm import FCMPushGateway
from cinevault.providers.notify.twilio_whatsapp import TwilioWhatsAppGateway


_push_gateway: PushGateway | None = None
_whatsapp_gateway: WhatsAppGateway | None = None


def get_push_gateway() -> PushGateway | None:
    # None disables push delivery; effects are then skipped, not failed.
    global _push_gateway
    provider = (get_settings().notify_provider or "none").lower()
    if provider == "none":
        return None
    if _push_gateway is not None:
        return _push_gateway
    if provider == "fake":
        _push_gateway = FakePushGateway()
    elif provider == "fcm":
        _push_gateway = FCMPushGateway()
    else:
        raise ProviderConfigError(f"Unsupported push provider: {provider}")
    return _push_gateway


def get_whatsapp_gateway() -> WhatsAppGateway | None:
    global _whatsapp_gateway
    provider = (get_settings().whatsapp_provider or "none").lower()
    if provider == "none":
        return None
    if _whatsapp_gateway is not None:
        return _whatsapp_gateway
    if provider == "fake":
        _whatsapp_gateway = FakeWhatsAppGateway()
    elif provider == "twilio":
        _whatsapp_gateway = TwilioWhatsAppGateway()
    else:
        raise ProviderConfigError(f"Unsupported WhatsApp provider: {provider}")
    return _whatsapp_gateway


def reset_notify_gateways() -> None:
    global _push_gateway, _whatsapp_gateway
    _push_gateway = None
    _whatsapp_gateway = None
