from __future__ import annotations

from typing import Any

from cinevault.apps.api.response import ErrorEnvelope


def _error_response(description: str, *, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": {
                    "error": {"code": code, "message": message},
                    "meta": {"request_id": "req_example", "api_version": "v1"},
                }
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _error_response("Unauthorized", code="AUTH_TOKEN_REVOKED", message="Token has been revoked. Please sign in again."),
    422: _error_response("Validation error", code="VALIDATION_ERROR", message="Invalid input"),
    500: _error_response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}

AUTHZ_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    403: _error_response("Forbidden", code="AUTH_FORBIDDEN", message="Not enough privileges"),
    404: _error_response("Not found", code="NOT_FOUND", message="Resource not found"),
}

BILLING_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    400: _error_response("Bad request", code="INVALID_PLAN", message="Invalid plan type"),
    402: _error_response("Payment required", code="PAYMENT_NOT_COMPLETED", message="Payment intent has not succeeded"),
    409: _error_response(
        "Conflict",
        code="SUBSCRIPTION_STATE_CONFLICT",
        message="Subscription is not in a valid state for this operation",
    ),
    503: _error_response(
        "Billing unavailable",
        code="BILLING_GATEWAY_UNAVAILABLE",
        message="Billing gateway is temporarily unavailable; retry later",
    ),
}

# Routes reachable without a bearer token.
PUBLIC_PATHS = {
    "/v1/health",
    "/v1/auth/register",
    "/v1/auth/sign_in",
    "/v1/auth/sign_out",
    "/v1/webhooks/stripe",
}
