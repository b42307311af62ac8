from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from hookrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from hookrelay.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    execution_mode: str
    scheduler_running: bool


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    service = getattr(request.app.state, "webhook_service", None)
    scheduler = getattr(service, "scheduler", None)
    payload = HealthResponse(
        status="ok",
        execution_mode=service.settings.webhook_execution_mode if service is not None else "unknown",
        scheduler_running=bool(scheduler is not None and scheduler.running),
    )
    return success_response(request=request, data=payload)
