from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from hookrelay.apps.api.deps import get_webhook_service
from hookrelay.apps.api.errors import to_http_exception
from hookrelay.apps.api.openapi import (
    CONFLICT_RESPONSE,
    DEFAULT_ERROR_RESPONSES,
    NOT_FOUND_RESPONSE,
    PAYLOAD_TOO_LARGE_RESPONSE,
)
from hookrelay.apps.api.response import SuccessEnvelope, success_response
from hookrelay.core.clock import ensure_utc
from hookrelay.core.errors import HookRelayError
from hookrelay.domain.models import DELIVERY_STATUSES, WebhookAttempt, WebhookDelivery
from hookrelay.services.webhooks.service import WebhookDeliveryService


router = APIRouter(tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


class TriggerEventRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    event_id: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class TriggerEventResponse(BaseModel):
    delivery_ids: list[str]


class DeliveryResponse(BaseModel):
    id: str
    subscription_id: str
    tenant_id: str
    event_type: str
    event_id: str
    status: str
    attempts: int
    max_attempts: int
    next_retry_at: datetime | None = None
    first_attempt_at: datetime | None = None
    last_attempt_at: datetime | None = None
    last_http_status: int | None = None
    last_response_body: str | None = None
    last_error: str | None = None
    last_duration_ms: int | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DeliveryListResponse(BaseModel):
    items: list[DeliveryResponse]


class AttemptResponse(BaseModel):
    id: str
    delivery_id: str
    attempt_number: int
    success: bool
    http_status: int | None = None
    response_body: str | None = None
    error: str | None = None
    duration_ms: int
    started_at: datetime
    completed_at: datetime


class AttemptListResponse(BaseModel):
    items: list[AttemptResponse]


class DeliveryStatsResponse(BaseModel):
    subscription_id: str
    total: int
    by_status: dict[str, int]
    avg_success_duration_ms: float | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None


class SendTestEventResponse(BaseModel):
    delivery_id: str


def _delivery_payload(row: WebhookDelivery) -> DeliveryResponse:
    # SQLite drops tzinfo on read; normalize before serializing.
    return DeliveryResponse(
        id=row.id,
        subscription_id=row.subscription_id,
        tenant_id=row.tenant_id,
        event_type=row.event_type,
        event_id=row.event_id,
        status=row.status,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        next_retry_at=ensure_utc(row.next_retry_at),
        first_attempt_at=ensure_utc(row.first_attempt_at),
        last_attempt_at=ensure_utc(row.last_attempt_at),
        last_http_status=row.last_http_status,
        last_response_body=row.last_response_body,
        last_error=row.last_error,
        last_duration_ms=row.last_duration_ms,
        completed_at=ensure_utc(row.completed_at),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _attempt_payload(row: WebhookAttempt) -> AttemptResponse:
    return AttemptResponse(
        id=row.id,
        delivery_id=row.delivery_id,
        attempt_number=row.attempt_number,
        success=bool(row.success),
        http_status=row.http_status,
        response_body=row.response_body,
        error=row.error,
        duration_ms=row.duration_ms,
        started_at=ensure_utc(row.started_at),
        completed_at=ensure_utc(row.completed_at),
    )


@router.post(
    "/events",
    status_code=202,
    response_model=SuccessEnvelope[TriggerEventResponse],
    responses=PAYLOAD_TOO_LARGE_RESPONSE,
)
async def trigger_event(
    request: Request,
    body: TriggerEventRequest,
    service: WebhookDeliveryService = Depends(get_webhook_service),
) -> JSONResponse:
    # Accept the event and fan it out; delivery outcomes are never reported to the producer.
    try:
        delivery_ids = await service.trigger(body.tenant_id, body.event_type, body.event_id, body.payload)
    except HookRelayError as exc:
        raise to_http_exception(exc) from exc
    payload = TriggerEventResponse(delivery_ids=delivery_ids)
    return JSONResponse(status_code=202, content=success_response(request=request, data=payload))


@router.get("/deliveries", response_model=SuccessEnvelope[DeliveryListResponse])
async def list_deliveries(
    request: Request,
    tenant_id: str = Query(..., min_length=1),
    subscription_id: str | None = Query(default=None),
    status: str | None = Query(default=None),
    event_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    service: WebhookDeliveryService = Depends(get_webhook_service),
) -> dict:
    if status is not None and status not in DELIVERY_STATUSES:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_STATUS", "message": f"Unknown delivery status '{status}'"},
        )
    rows = await service.list_deliveries(
        tenant_id=tenant_id,
        subscription_id=subscription_id,
        status=status,
        event_id=event_id,
        limit=limit,
    )
    payload = DeliveryListResponse(items=[_delivery_payload(row) for row in rows])
    return success_response(request=request, data=payload)


@router.get(
    "/deliveries/{delivery_id}",
    response_model=SuccessEnvelope[DeliveryResponse],
    responses=NOT_FOUND_RESPONSE,
)
async def get_delivery(
    delivery_id: str,
    request: Request,
    service: WebhookDeliveryService = Depends(get_webhook_service),
) -> dict:
    try:
        row = await service.get_delivery(delivery_id)
    except HookRelayError as exc:
        raise to_http_exception(exc) from exc
    return success_response(request=request, data=_delivery_payload(row))


@router.get(
    "/deliveries/{delivery_id}/attempts",
    response_model=SuccessEnvelope[AttemptListResponse],
    responses=NOT_FOUND_RESPONSE,
)
async def list_delivery_attempts(
    delivery_id: str,
    request: Request,
    service: WebhookDeliveryService = Depends(get_webhook_service),
) -> dict:
    try:
        rows = await service.list_attempts(delivery_id)
    except HookRelayError as exc:
        raise to_http_exception(exc) from exc
    payload = AttemptListResponse(items=[_attempt_payload(row) for row in rows])
    return success_response(request=request, data=payload)


@router.post(
    "/deliveries/{delivery_id}/retry",
    response_model=SuccessEnvelope[DeliveryResponse],
    responses={**NOT_FOUND_RESPONSE, **CONFLICT_RESPONSE},
)
async def retry_delivery(
    delivery_id: str,
    request: Request,
    service: WebhookDeliveryService = Depends(get_webhook_service),
) -> dict:
    # Only failed deliveries restart; anything else is a 409 with no state change.
    try:
        row = await service.retry(delivery_id)
    except HookRelayError as exc:
        raise to_http_exception(exc) from exc
    return success_response(request=request, data=_delivery_payload(row))


@router.post(
    "/deliveries/{delivery_id}/cancel",
    response_model=SuccessEnvelope[DeliveryResponse],
    responses={**NOT_FOUND_RESPONSE, **CONFLICT_RESPONSE},
)
async def cancel_delivery(
    delivery_id: str,
    request: Request,
    service: WebhookDeliveryService = Depends(get_webhook_service),
) -> dict:
    try:
        row = await service.cancel(delivery_id)
    except HookRelayError as exc:
        raise to_http_exception(exc) from exc
    return success_response(request=request, data=_delivery_payload(row))


@router.get(
    "/subscriptions/{subscription_id}/stats",
    response_model=SuccessEnvelope[DeliveryStatsResponse],
)
async def subscription_stats(
    subscription_id: str,
    request: Request,
    service: WebhookDeliveryService = Depends(get_webhook_service),
) -> dict:
    stats = await service.stats(subscription_id)
    return success_response(request=request, data=DeliveryStatsResponse(**stats))


@router.post(
    "/subscriptions/{subscription_id}/test",
    status_code=202,
    response_model=SuccessEnvelope[SendTestEventResponse],
    responses={**NOT_FOUND_RESPONSE, **PAYLOAD_TOO_LARGE_RESPONSE},
)
async def send_test_event(
    subscription_id: str,
    request: Request,
    service: WebhookDeliveryService = Depends(get_webhook_service),
) -> JSONResponse:
    try:
        delivery_id = await service.send_test_event(subscription_id)
    except HookRelayError as exc:
        raise to_http_exception(exc) from exc
    payload = SendTestEventResponse(delivery_id=delivery_id)
    return JSONResponse(status_code=202, content=success_response(request=request, data=payload))
