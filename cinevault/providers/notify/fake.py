from __future__ import annotations

from dataclasses import dataclass, field

from cinevault.core.errors import NotificationGatewayError


@dataclass(frozen=True)
class SentPush:
    token: str
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SentWhatsApp:
    mobile_number: str
    body: str


class FakePushGateway:
    def __init__(self) -> None:
        self.sent: list[SentPush] = []
        self.fail = False

    async def send(self, token: str, title: str, body: str, data: dict[str, str] | None = None) -> None:
        if self.fail:
            raise NotificationGatewayError("Fake push gateway failure")
        self.sent.append(SentPush(token=token, title=title, body=body, data=dict(data or {})))


class FakeWhatsAppGateway:
    def __init__(self) -> None:
        self.sent: list[SentWhatsApp] = []
        self.fail = False

    async def send(self, mobile_number: str, body: str) -> None:
        if self.fail:
            raise NotificationGatewayError("Fake WhatsApp gateway failure")
        self.sent.append(SentWhatsApp(mobile_number=mobile_number, body=body))
