from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.domain.models import (
    DELIVERY_STATUS_CANCELLED,
    DELIVERY_STATUS_FAILED,
    DELIVERY_STATUS_PENDING,
    DELIVERY_STATUS_RETRYING,
    DELIVERY_STATUSES,
    READY_DELIVERY_STATUSES,
    WebhookDelivery,
    WebhookSubscription,
)


def create_delivery(
    session: AsyncSession,
    *,
    delivery_id: str,
    subscription: WebhookSubscription,
    event_type: str,
    event_id: str,
    payload: bytes,
    now: datetime,
) -> WebhookDelivery:
    # max_attempts is copied at creation so later subscription edits never change a live chain.
    row = WebhookDelivery(
        id=delivery_id,
        subscription_id=subscription.id,
        tenant_id=subscription.tenant_id,
        event_type=event_type,
        event_id=event_id,
        payload=payload,
        status=DELIVERY_STATUS_PENDING,
        attempts=0,
        max_attempts=max(1, int(subscription.max_attempts or 1)),
        version=0,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    return row


async def get_delivery(session: AsyncSession, delivery_id: str) -> WebhookDelivery | None:
    # populate_existing refreshes rows already in the identity map after a lost compare-and-swap.
    result = await session.execute(
        select(WebhookDelivery)
        .where(WebhookDelivery.id == delivery_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_deliveries(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    subscription_id: str | None = None,
    status: str | None = None,
    event_id: str | None = None,
    limit: int = 100,
) -> list[WebhookDelivery]:
    stmt = select(WebhookDelivery)
    if tenant_id:
        stmt = stmt.where(WebhookDelivery.tenant_id == tenant_id)
    if subscription_id:
        stmt = stmt.where(WebhookDelivery.subscription_id == subscription_id)
    if status:
        stmt = stmt.where(WebhookDelivery.status == status)
    if event_id:
        stmt = stmt.where(WebhookDelivery.event_id == event_id)
    result = await session.execute(
        stmt.order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc()).limit(
            max(1, min(int(limit), 500))
        )
    )
    return list(result.scalars().all())


async def _compare_and_swap(
    session: AsyncSession,
    *,
    delivery_id: str,
    expected_version: int,
    statuses: Iterable[str],
    values: dict[str, Any],
    extra_predicates: Iterable[Any] = (),
) -> bool:
    # Every state change is guarded by status AND version so concurrent writers cannot interleave.
    result = await session.execute(
        update(WebhookDelivery)
        .where(
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.status.in_(tuple(statuses)),
            WebhookDelivery.version == expected_version,
            *extra_predicates,
        )
        .values(version=WebhookDelivery.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def claim_delivery(
    session: AsyncSession,
    *,
    delivery_id: str,
    expected_version: int,
    now: datetime,
    lease_until: datetime,
) -> bool:
    # Advance the attempt counter and take the in-flight lease in one conditional write.
    return await _compare_and_swap(
        session,
        delivery_id=delivery_id,
        expected_version=expected_version,
        statuses=READY_DELIVERY_STATUSES,
        extra_predicates=(
            WebhookDelivery.attempts < WebhookDelivery.max_attempts,
            or_(WebhookDelivery.next_retry_at.is_(None), WebhookDelivery.next_retry_at <= now),
            or_(WebhookDelivery.locked_until.is_(None), WebhookDelivery.locked_until <= now),
        ),
        values={
            "status": DELIVERY_STATUS_RETRYING,
            "attempts": WebhookDelivery.attempts + 1,
            "first_attempt_at": func.coalesce(WebhookDelivery.first_attempt_at, now),
            "last_attempt_at": now,
            "next_retry_at": None,
            "locked_until": lease_until,
            "updated_at": now,
        },
    )


async def record_attempt_outcome(
    session: AsyncSession,
    *,
    delivery_id: str,
    claimed_version: int,
    values: dict[str, Any],
) -> bool:
    # Only the holder of the claim may persist an outcome; a cancel in between wins.
    return await _compare_and_swap(
        session,
        delivery_id=delivery_id,
        expected_version=claimed_version,
        statuses=(DELIVERY_STATUS_RETRYING,),
        values={"locked_until": None, **values},
    )


async def fail_without_attempt(
    session: AsyncSession,
    *,
    delivery_id: str,
    expected_version: int,
    now: datetime,
    error: str,
) -> bool:
    return await _compare_and_swap(
        session,
        delivery_id=delivery_id,
        expected_version=expected_version,
        statuses=READY_DELIVERY_STATUSES,
        extra_predicates=(
            or_(WebhookDelivery.locked_until.is_(None), WebhookDelivery.locked_until <= now),
        ),
        values={
            "status": DELIVERY_STATUS_FAILED,
            "last_error": error,
            "next_retry_at": None,
            "locked_until": None,
            "completed_at": now,
            "updated_at": now,
        },
    )


async def reset_failed_delivery(
    session: AsyncSession,
    *,
    delivery_id: str,
    expected_version: int,
    now: datetime,
) -> bool:
    return await _compare_and_swap(
        session,
        delivery_id=delivery_id,
        expected_version=expected_version,
        statuses=(DELIVERY_STATUS_FAILED,),
        values={
            "status": DELIVERY_STATUS_PENDING,
            "attempts": 0,
            "last_error": None,
            "next_retry_at": None,
            "locked_until": None,
            "completed_at": None,
            "updated_at": now,
        },
    )


async def cancel_delivery(
    session: AsyncSession,
    *,
    delivery_id: str,
    expected_version: int,
    now: datetime,
) -> bool:
    return await _compare_and_swap(
        session,
        delivery_id=delivery_id,
        expected_version=expected_version,
        statuses=READY_DELIVERY_STATUSES,
        values={
            "status": DELIVERY_STATUS_CANCELLED,
            "next_retry_at": None,
            "locked_until": None,
            "completed_at": now,
            "updated_at": now,
        },
    )


async def list_due_delivery_ids(
    session: AsyncSession,
    *,
    now: datetime,
    stale_before: datetime,
    limit: int,
) -> list[str]:
    # Due, unleased rows that the fast path has not touched recently. An expired lease on an
    # exhausted row means its last attempt crashed; it is admitted so the executor can fail it.
    result = await session.execute(
        select(WebhookDelivery.id)
        .where(
            WebhookDelivery.status.in_(READY_DELIVERY_STATUSES),
            or_(
                WebhookDelivery.attempts < WebhookDelivery.max_attempts,
                WebhookDelivery.locked_until.is_not(None),
            ),
            or_(WebhookDelivery.next_retry_at.is_(None), WebhookDelivery.next_retry_at <= now),
            or_(WebhookDelivery.locked_until.is_(None), WebhookDelivery.locked_until <= now),
            WebhookDelivery.updated_at <= stale_before,
        )
        .order_by(
            func.coalesce(WebhookDelivery.next_retry_at, WebhookDelivery.created_at).asc(),
            WebhookDelivery.created_at.asc(),
        )
        .limit(max(1, int(limit)))
    )
    return [str(row) for row in result.scalars().all()]


async def touch_deliveries(session: AsyncSession, *, delivery_ids: list[str], now: datetime) -> None:
    # Mark swept rows so the next sweep skips them until the grace window passes again.
    if not delivery_ids:
        return
    await session.execute(
        update(WebhookDelivery)
        .where(
            WebhookDelivery.id.in_(delivery_ids),
            WebhookDelivery.status.in_(READY_DELIVERY_STATUSES),
        )
        .values(updated_at=now)
        .execution_options(synchronize_session=False)
    )


async def count_by_status(session: AsyncSession, *, subscription_id: str) -> dict[str, int]:
    result = await session.execute(
        select(WebhookDelivery.status, func.count())
        .where(WebhookDelivery.subscription_id == subscription_id)
        .group_by(WebhookDelivery.status)
    )
    counts = {status: 0 for status in DELIVERY_STATUSES}
    for status, count in result.all():
        counts[str(status)] = int(count or 0)
    return counts


async def last_completed_at(
    session: AsyncSession,
    *,
    subscription_id: str,
    status: str,
) -> datetime | None:
    return await session.scalar(
        select(func.max(WebhookDelivery.completed_at)).where(
            WebhookDelivery.subscription_id == subscription_id,
            WebhookDelivery.status == status,
        )
    )
