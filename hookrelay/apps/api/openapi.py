from __future__ import annotations

from typing import Any

from hookrelay.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }


def _error_response(description: str, *, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    422: _error_response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _error_response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
}

NOT_FOUND_RESPONSE = {
    404: _error_response("Not found", code="DELIVERY_NOT_FOUND", message="Delivery abc123 not found"),
}

CONFLICT_RESPONSE = {
    409: _error_response(
        "Invalid state transition",
        code="DELIVERY_STATE_CONFLICT",
        message="Delivery abc123 in state 'success' is not eligible for retry",
    ),
}

PAYLOAD_TOO_LARGE_RESPONSE = {
    413: _error_response(
        "Payload too large",
        code="PAYLOAD_TOO_LARGE",
        message="Payload is 300000 bytes; limit is 262144 bytes",
    ),
}
