from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.domain.models import WebhookAttempt, WebhookDelivery


async def next_attempt_number(session: AsyncSession, delivery_id: str) -> int:
    # Numbers keep increasing across manual retries, so the log never repeats an attempt number.
    current = await session.scalar(
        select(func.coalesce(func.max(WebhookAttempt.attempt_number), 0)).where(
            WebhookAttempt.delivery_id == delivery_id
        )
    )
    return int(current or 0) + 1


def append_attempt(
    session: AsyncSession,
    *,
    delivery: WebhookDelivery,
    attempt_number: int,
    success: bool,
    http_status: int | None,
    response_body: str | None,
    error: str | None,
    duration_ms: int,
    started_at: datetime,
    completed_at: datetime,
) -> WebhookAttempt:
    row = WebhookAttempt(
        id=uuid4().hex,
        delivery_id=delivery.id,
        subscription_id=delivery.subscription_id,
        tenant_id=delivery.tenant_id,
        attempt_number=attempt_number,
        success=success,
        http_status=http_status,
        response_body=response_body,
        error=error,
        duration_ms=max(0, int(duration_ms)),
        started_at=started_at,
        completed_at=completed_at,
    )
    session.add(row)
    return row


async def list_attempts(session: AsyncSession, delivery_id: str) -> list[WebhookAttempt]:
    result = await session.execute(
        select(WebhookAttempt)
        .where(WebhookAttempt.delivery_id == delivery_id)
        .order_by(WebhookAttempt.attempt_number.asc(), WebhookAttempt.started_at.asc())
    )
    return list(result.scalars().all())


async def average_success_duration_ms(session: AsyncSession, *, subscription_id: str) -> float | None:
    value = await session.scalar(
        select(func.avg(WebhookAttempt.duration_ms)).where(
            WebhookAttempt.subscription_id == subscription_id,
            WebhookAttempt.success.is_(True),
        )
    )
    return float(value) if value is not None else None
