from __future__ import annotations

from typing import Protocol


class PushGateway(Protocol):
    async def send(self, token: str, title: str, body: str, data: dict[str, str] | None = None) -> None:
        ...


class WhatsAppGateway(Protocol):
    async def send(self, mobile_number: str, body: str) -> None:
        ...
