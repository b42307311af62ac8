from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.domain.models import WebhookSubscription


WILDCARD_EVENT = "*"


def subscribes_to(subscription: WebhookSubscription, event_type: str) -> bool:
    # Event sets are small lists; match in Python so JSON columns stay dialect-neutral.
    events = subscription.events_json if isinstance(subscription.events_json, list) else []
    return event_type in events or WILDCARD_EVENT in events


async def get_subscription(session: AsyncSession, subscription_id: str) -> WebhookSubscription | None:
    return await session.get(WebhookSubscription, subscription_id)


async def list_matching_subscriptions(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str,
) -> list[WebhookSubscription]:
    # Only active and verified endpoints receive events.
    result = await session.execute(
        select(WebhookSubscription)
        .where(
            WebhookSubscription.tenant_id == tenant_id,
            WebhookSubscription.is_active.is_(True),
            WebhookSubscription.is_verified.is_(True),
        )
        .order_by(WebhookSubscription.created_at.asc(), WebhookSubscription.id.asc())
    )
    return [row for row in result.scalars().all() if subscribes_to(row, event_type)]
