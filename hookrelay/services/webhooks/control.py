from __future__ import annotations

from typing import Any, Awaitable, Callable, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.core.clock import Clock, ensure_utc, utc_now
from hookrelay.core.errors import DeliveryNotFoundError, DeliveryStateError
from hookrelay.domain.models import (
    DELIVERY_STATUS_FAILED,
    DELIVERY_STATUS_SUCCESS,
    READY_DELIVERY_STATUSES,
    WebhookAttempt,
    WebhookDelivery,
)
from hookrelay.persistence.repos import attempts as attempts_repo
from hookrelay.persistence.repos import deliveries as deliveries_repo


_CAS_ATTEMPTS = 3


async def _require_delivery(session: AsyncSession, delivery_id: str) -> WebhookDelivery:
    row = await deliveries_repo.get_delivery(session, delivery_id)
    if row is None:
        raise DeliveryNotFoundError(f"Delivery {delivery_id} not found")
    return row


async def _transition(
    session: AsyncSession,
    *,
    delivery_id: str,
    action: str,
    eligible: Iterable[str],
    apply: Callable[[WebhookDelivery], Awaitable[bool]],
) -> WebhookDelivery:
    # Re-read and re-check when a concurrent writer bumped the version between read and write.
    eligible_statuses = frozenset(eligible)
    for _ in range(_CAS_ATTEMPTS):
        row = await _require_delivery(session, delivery_id)
        status = row.status
        if status not in eligible_statuses:
            raise DeliveryStateError(f"Delivery {delivery_id} in state '{status}' is not eligible for {action}")
        if await apply(row):
            await session.commit()
            return await _require_delivery(session, delivery_id)
        await session.rollback()
    raise DeliveryStateError(f"Delivery {delivery_id} changed concurrently; {action} not applied")


async def retry_delivery(
    *,
    session: AsyncSession,
    delivery_id: str,
    clock: Clock | None = None,
) -> WebhookDelivery:
    # Restart a failed chain from zero attempts; the caller re-submits after commit.
    now = (clock or utc_now)()
    return await _transition(
        session,
        delivery_id=delivery_id,
        action="retry",
        eligible=(DELIVERY_STATUS_FAILED,),
        apply=lambda row: deliveries_repo.reset_failed_delivery(
            session,
            delivery_id=delivery_id,
            expected_version=row.version,
            now=now,
        ),
    )


async def cancel_delivery(
    *,
    session: AsyncSession,
    delivery_id: str,
    clock: Clock | None = None,
) -> WebhookDelivery:
    # Cooperative cancel: an attempt already on the wire finishes but cannot persist its outcome.
    now = (clock or utc_now)()
    return await _transition(
        session,
        delivery_id=delivery_id,
        action="cancel",
        eligible=READY_DELIVERY_STATUSES,
        apply=lambda row: deliveries_repo.cancel_delivery(
            session,
            delivery_id=delivery_id,
            expected_version=row.version,
            now=now,
        ),
    )


async def delivery_stats(*, session: AsyncSession, subscription_id: str) -> dict[str, Any]:
    # Read-only aggregates for one subscription.
    counts = await deliveries_repo.count_by_status(session, subscription_id=subscription_id)
    last_success_at = await deliveries_repo.last_completed_at(
        session,
        subscription_id=subscription_id,
        status=DELIVERY_STATUS_SUCCESS,
    )
    last_failure_at = await deliveries_repo.last_completed_at(
        session,
        subscription_id=subscription_id,
        status=DELIVERY_STATUS_FAILED,
    )
    return {
        "subscription_id": subscription_id,
        "total": sum(counts.values()),
        "by_status": counts,
        "avg_success_duration_ms": await attempts_repo.average_success_duration_ms(
            session,
            subscription_id=subscription_id,
        ),
        "last_success_at": ensure_utc(last_success_at),
        "last_failure_at": ensure_utc(last_failure_at),
    }


async def get_delivery(*, session: AsyncSession, delivery_id: str) -> WebhookDelivery:
    return await _require_delivery(session, delivery_id)


async def list_delivery_attempts(*, session: AsyncSession, delivery_id: str) -> list[WebhookAttempt]:
    await _require_delivery(session, delivery_id)
    return await attempts_repo.list_attempts(session, delivery_id)
