from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hookrelay.apps.api.response import error_response
from hookrelay.core.errors import (
    DeliveryNotFoundError,
    DeliveryStateError,
    HookRelayError,
    PayloadTooLargeError,
    SubscriptionNotFoundError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors surface synchronously to operators; delivery outcomes never do.
_DOMAIN_ERROR_STATUS: tuple[tuple[type[HookRelayError], int, str], ...] = (
    (DeliveryNotFoundError, 404, "DELIVERY_NOT_FOUND"),
    (SubscriptionNotFoundError, 404, "SUBSCRIPTION_NOT_FOUND"),
    (DeliveryStateError, 409, "DELIVERY_STATE_CONFLICT"),
    (PayloadTooLargeError, 413, "PAYLOAD_TOO_LARGE"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException detail may be a {"code", "message", ...} dict or a plain string.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def domain_error_status(exc: HookRelayError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code, code
    return 400, _default_code(400)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


def to_http_exception(exc: HookRelayError) -> HTTPException:
    status_code, code = domain_error_status(exc)
    return HTTPException(status_code=status_code, detail={"code": code, "message": str(exc)})


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces; the log line carries them instead.
    logger.error("api_unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
