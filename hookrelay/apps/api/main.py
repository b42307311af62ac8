from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from hookrelay.apps.api.errors import (
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from hookrelay.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from hookrelay.apps.api.routes.health import router as health_router
from hookrelay.apps.api.routes.webhooks import router as webhooks_router
from hookrelay.core.logging import configure_logging
from hookrelay.services.webhooks.service import WebhookDeliveryService, build_webhook_service


logger = logging.getLogger(__name__)


def create_app(service: WebhookDeliveryService | None = None) -> FastAPI:
    """Build the producer/operator API.

    A prebuilt ``service`` is used as-is (tests inject one bound to their own
    database); otherwise one is built from settings at startup.
    """
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = service or build_webhook_service()
        app.state.webhook_service = resolved
        await resolved.start()
        try:
            yield
        finally:
            await resolved.stop()
            app.state.webhook_service = None

    app = FastAPI(title="hookrelay API", lifespan=lifespan)
    # Routes resolve the service from app.state, so an injected one is usable before startup too.
    app.state.webhook_service = service

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        logger.debug(
            "api_request path=%s status=%s latency_ms=%.1f",
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
