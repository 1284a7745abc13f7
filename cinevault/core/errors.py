from __future__ import annotations


class CinevaultError(Exception):
    """Base error for Cinevault.

    Every subclass carries a stable machine-readable ``code`` and the HTTP
    status the API layer maps it to.
    """

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentialsError(CinevaultError):
    """Email/password pair did not match an identity."""

    code = "AUTH_INVALID_CREDENTIALS"
    status_code = 401
    default_message = "Invalid email or password"


class UnauthenticatedError(CinevaultError):
    """Request did not carry a usable session token."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required"


class MissingTokenError(UnauthenticatedError):
    code = "AUTH_MISSING_TOKEN"
    default_message = "No token provided. Please sign in."


class TokenExpiredError(UnauthenticatedError):
    code = "AUTH_TOKEN_EXPIRED"
    default_message = "Token has expired."


class TokenInvalidError(UnauthenticatedError):
    code = "AUTH_TOKEN_INVALID"
    default_message = "Invalid token."


class TokenRevokedError(UnauthenticatedError):
    code = "AUTH_TOKEN_REVOKED"
    default_message = "Token has been revoked. Please sign in again."


class StaleIdentityError(UnauthenticatedError):
    code = "AUTH_STALE_IDENTITY"
    default_message = "Invalid token: identity not found."


class MalformedTokenError(CinevaultError):
    """Signature checks out but the claims are incomplete; a client bug."""

    code = "AUTH_TOKEN_MALFORMED"
    status_code = 422
    default_message = "Token claims are incomplete."


class ForbiddenError(CinevaultError):
    code = "AUTH_FORBIDDEN"
    status_code = 403
    default_message = "Not enough privileges"


class PremiumRequiredError(ForbiddenError):
    code = "PREMIUM_REQUIRED"
    default_message = "An active basic or premium subscription is required"


class ValidationError(CinevaultError):
    code = "VALIDATION_ERROR"
    status_code = 422
    default_message = "Invalid input"


class IdentityConflictError(CinevaultError):
    code = "IDENTITY_CONFLICT"
    status_code = 409
    default_message = "Email or mobile number already registered"


class NotFoundError(CinevaultError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class InvalidPlanError(CinevaultError):
    code = "INVALID_PLAN"
    status_code = 400
    default_message = "Invalid plan type"


class SubscriptionStateConflictError(CinevaultError):
    code = "SUBSCRIPTION_STATE_CONFLICT"
    status_code = 409
    default_message = "Subscription is not in a valid state for this operation"


class PaymentNotCompletedError(CinevaultError):
    code = "PAYMENT_NOT_COMPLETED"
    status_code = 402
    default_message = "Payment intent has not succeeded"


class GatewayError(CinevaultError):
    """External gateway failure; message is safe to show, never contains secrets."""

    code = "GATEWAY_ERROR"
    status_code = 502
    default_message = "External gateway request failed"


class BillingGatewayError(GatewayError):
    """Billing gateway failure. Transient failures are safe to retry."""

    code = "BILLING_GATEWAY_ERROR"
    status_code = 422
    default_message = "Billing gateway request failed"

    def __init__(self, message: str | None = None, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient
        if transient:
            self.code = "BILLING_GATEWAY_UNAVAILABLE"
            self.status_code = 503


class WebhookSignatureError(CinevaultError):
    code = "WEBHOOK_INVALID"
    status_code = 400
    default_message = "Invalid webhook signature"


class NotificationGatewayError(GatewayError):
    code = "NOTIFICATION_GATEWAY_ERROR"


class IntegrationUnavailableError(CinevaultError):
    """Integration short-circuited by an open circuit breaker."""

    code = "INTEGRATION_UNAVAILABLE"
    status_code = 503
    default_message = "Integration temporarily unavailable"


class ProviderConfigError(CinevaultError):
    """Missing or invalid provider configuration."""


class TokenConfigError(ProviderConfigError):
    """Signing secret is not configured."""


class SubscriptionInvariantError(CinevaultError):
    """A transition produced a row that violates the subscription invariants."""


class DatabaseError(CinevaultError):
    """Database layer failure."""
