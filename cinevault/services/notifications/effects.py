from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


Channel = Literal["push", "whatsapp"]

KIND_SUBSCRIPTION_ACTIVATED = "subscription_activated"
KIND_SUBSCRIPTION_CANCELED = "subscription_canceled"
KIND_PAYMENT_FAILED = "payment_failed"
KIND_NEW_MOVIE = "new_movie"
KIND_WHATSAPP_OPT_IN = "whatsapp_opt_in"


@dataclass(frozen=True)
class Effect:
    """A notification a state transition asks for, delivered after commit.

    ``reference`` scopes de-duplication: the same (identity, kind, channel,
    reference) is delivered at most once.
    """

    kind: str
    identity_id: str
    channel: Channel
    reference: str
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)


def subscription_activated(identity_id: str, subscription_id: str, plan: str) -> list[Effect]:
    return [
        Effect(
            kind=KIND_SUBSCRIPTION_ACTIVATED,
            identity_id=identity_id,
            channel="push",
            reference=subscription_id,
            title="Subscription Updated!",
            body=f"Your {plan} plan is now active.",
            data={"subscription_id": subscription_id},
        ),
        Effect(
            kind=KIND_SUBSCRIPTION_ACTIVATED,
            identity_id=identity_id,
            channel="whatsapp",
            reference=subscription_id,
            title="Subscription Updated!",
            body=f"Cinevault: your {plan} plan is now active. Enjoy!",
        ),
    ]


def subscription_canceled(
    identity_id: str, subscription_id: str, plan: str, *, paid_period: bool = True
) -> list[Effect]:
    if paid_period:
        body = f"Your {plan} plan stays available until the end of the paid period."
    else:
        body = f"Your {plan} plan was canceled before any payment went through."
    return [
        Effect(
            kind=KIND_SUBSCRIPTION_CANCELED,
            identity_id=identity_id,
            channel="push",
            reference=subscription_id,
            title="Subscription Canceled",
            body=body,
            data={"subscription_id": subscription_id},
        )
    ]


def payment_failed(identity_id: str, reference: str) -> list[Effect]:
    return [
        Effect(
            kind=KIND_PAYMENT_FAILED,
            identity_id=identity_id,
            channel="push",
            reference=reference,
            title="Payment Failed",
            body="We could not process your payment. Please update your payment method.",
        ),
        Effect(
            kind=KIND_PAYMENT_FAILED,
            identity_id=identity_id,
            channel="whatsapp",
            reference=reference,
            title="Payment Failed",
            body="Cinevault: we could not process your payment. Please update your payment method.",
        ),
    ]


def new_movie(identity_id: str, movie_id: str, title: str, streaming_platform: str) -> Effect:
    return Effect(
        kind=KIND_NEW_MOVIE,
        identity_id=identity_id,
        channel="push",
        reference=movie_id,
        title="New Movie Added!",
        body=f"{title} is now available on {streaming_platform}.",
        data={"movie_id": movie_id},
    )


def whatsapp_opt_in(identity_id: str) -> Effect:
    return Effect(
        kind=KIND_WHATSAPP_OPT_IN,
        identity_id=identity_id,
        channel="whatsapp",
        reference=identity_id,
        title="Welcome",
        body="Welcome to Cinevault! Reply YES to receive subscription updates on WhatsApp.",
    )
