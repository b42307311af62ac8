from __future__ import annotations

from fastapi import HTTPException, Request

from hookrelay.services.webhooks.service import WebhookDeliveryService


def get_webhook_service(request: Request) -> WebhookDeliveryService:
    # The service is built once in the app lifespan and shared by every request.
    service = getattr(request.app.state, "webhook_service", None)
    if service is None:
        raise HTTPException(
            status_code=503,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Webhook service is not running"},
        )
    return service
