from __future__ import annotations

import json
import logging
from typing import Any, Mapping
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.core.clock import Clock, utc_now
from hookrelay.core.errors import PayloadTooLargeError, SubscriptionNotFoundError
from hookrelay.persistence.repos import deliveries as deliveries_repo
from hookrelay.persistence.repos import subscriptions as subscriptions_repo
from hookrelay.services.webhooks.scheduler import DeliverySubmitter


logger = logging.getLogger(__name__)

TEST_EVENT_TYPE = "webhook.test"

EventPayload = Mapping[str, Any] | str | bytes


def serialize_payload(payload: EventPayload) -> bytes:
    # Serialize mappings deterministically so signatures stay stable across retries.
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(dict(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _check_size(payload_bytes: bytes, max_bytes: int) -> None:
    if len(payload_bytes) > max_bytes:
        raise PayloadTooLargeError(f"Payload is {len(payload_bytes)} bytes; limit is {max_bytes} bytes")


async def _submit_all(submitter: DeliverySubmitter, delivery_ids: list[str]) -> None:
    for delivery_id in delivery_ids:
        if not await submitter.submit(delivery_id):
            # Rows are durable; the sweep picks up anything the fast path missed.
            logger.info("webhook_submit_deferred_to_sweep delivery_id=%s", delivery_id)


async def trigger_event(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    submitter: DeliverySubmitter,
    tenant_id: str,
    event_type: str,
    event_id: str,
    payload: EventPayload,
    max_payload_bytes: int,
    clock: Clock | None = None,
) -> list[str]:
    """Fan one event out to every matching subscription.

    Creates one pending delivery per active, verified subscription of the
    tenant whose event set contains ``event_type``, commits them together and
    only then submits the ids. Returns the created ids; storage failures are
    logged and produce no rows.
    """
    payload_bytes = serialize_payload(payload)
    _check_size(payload_bytes, max_payload_bytes)
    now = (clock or utc_now)()
    async with session_factory() as session:
        try:
            subscriptions = await subscriptions_repo.list_matching_subscriptions(
                session,
                tenant_id=tenant_id,
                event_type=event_type,
            )
            if not subscriptions:
                logger.debug("webhook_trigger_no_match tenant_id=%s event_type=%s", tenant_id, event_type)
                return []
            delivery_ids: list[str] = []
            for subscription in subscriptions:
                row = deliveries_repo.create_delivery(
                    session,
                    delivery_id=uuid4().hex,
                    subscription=subscription,
                    event_type=event_type,
                    event_id=event_id,
                    payload=payload_bytes,
                    now=now,
                )
                delivery_ids.append(row.id)
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.exception(
                "webhook_fanout_failed tenant_id=%s event_type=%s event_id=%s",
                tenant_id,
                event_type,
                event_id,
            )
            return []
    logger.info(
        "webhook_event_triggered tenant_id=%s event_type=%s event_id=%s deliveries=%s",
        tenant_id,
        event_type,
        event_id,
        len(delivery_ids),
    )
    await _submit_all(submitter, delivery_ids)
    return delivery_ids


async def send_test_event(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    submitter: DeliverySubmitter,
    subscription_id: str,
    max_payload_bytes: int,
    clock: Clock | None = None,
) -> str:
    # Deliver a synthetic event to one endpoint; verification is not required so new endpoints can be checked.
    now = (clock or utc_now)()
    event_id = uuid4().hex
    async with session_factory() as session:
        subscription = await subscriptions_repo.get_subscription(session, subscription_id)
        if subscription is None or not subscription.is_active:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found or inactive")
        payload_bytes = serialize_payload(
            {
                "event": TEST_EVENT_TYPE,
                "event_id": event_id,
                "subscription_id": subscription.id,
                "test": True,
                "timestamp": now.isoformat(),
            }
        )
        _check_size(payload_bytes, max_payload_bytes)
        row = deliveries_repo.create_delivery(
            session,
            delivery_id=uuid4().hex,
            subscription=subscription,
            event_type=TEST_EVENT_TYPE,
            event_id=event_id,
            payload=payload_bytes,
            now=now,
        )
        await session.commit()
    await _submit_all(submitter, [row.id])
    return row.id
