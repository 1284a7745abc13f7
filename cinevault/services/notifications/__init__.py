from cinevault.services.notifications.dispatch import deliver_effect, dispatch_effects
from cinevault.services.notifications.effects import (
    KIND_NEW_MOVIE,
    KIND_PAYMENT_FAILED,
    KIND_SUBSCRIPTION_ACTIVATED,
    KIND_SUBSCRIPTION_CANCELED,
    KIND_WHATSAPP_OPT_IN,
    Effect,
    new_movie,
    payment_failed,
    subscription_activated,
    subscription_canceled,
    whatsapp_opt_in,
)

__all__ = [
    "Effect",
    "KIND_NEW_MOVIE",
    "KIND_PAYMENT_FAILED",
    "KIND_SUBSCRIPTION_ACTIVATED",
    "KIND_SUBSCRIPTION_CANCELED",
    "KIND_WHATSAPP_OPT_IN",
    "deliver_effect",
    "dispatch_effects",
    "new_movie",
    "payment_failed",
    "subscription_activated",
    "subscription_canceled",
    "whatsapp_opt_in",
]
