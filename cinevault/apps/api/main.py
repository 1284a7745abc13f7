from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from cinevault.apps.api.errors import (
    cinevault_error_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from cinevault.apps.api.openapi import PUBLIC_PATHS
from cinevault.apps.api.response import API_VERSION
from cinevault.apps.api.routes.auth import router as auth_router
from cinevault.apps.api.routes.health import router as health_router
from cinevault.apps.api.routes.movies import router as movies_router
from cinevault.apps.api.routes.subscriptions import router as subscriptions_router
from cinevault.apps.api.routes.users import router as users_router
from cinevault.apps.api.routes.webhooks import router as webhooks_router
from cinevault.core.config import get_settings
from cinevault.core.errors import CinevaultError
from cinevault.core.logging import configure_logging
from cinevault.persistence.db import create_all
from cinevault.services.auth.tokens import require_signing_secret


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Fail at startup rather than on the first sign-in when the secret is missing.
    require_signing_secret()
    if get_settings().db_auto_create:
        await create_all()
    logger.info("api_started app=%s", get_settings().app_name)
    yield


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="Cinevault API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        logger.debug(
            "request_completed request_id=%s method=%s path=%s status=%s latency_ms=%.1f",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(CinevaultError)
    async def _cinevault_error_handler(request: Request, exc: CinevaultError):
        return await cinevault_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(auth_router, prefix=f"/{API_VERSION}")
    app.include_router(users_router, prefix=f"/{API_VERSION}")
    app.include_router(subscriptions_router, prefix=f"/{API_VERSION}")
    # Unauthenticated; requests are verified by signature instead.
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    app.include_router(movies_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth into the schema for every non-public route.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="Cinevault API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi
    logger.debug("api_configured db=%s", settings.database_url.split("://", 1)[0])
    return app


app = create_app()
