from __future__ import annotations

import pytest

from hookrelay.core.clock import ensure_utc
from hookrelay.core.errors import DeliveryNotFoundError, DeliveryStateError
from hookrelay.persistence.repos import deliveries as deliveries_repo
from hookrelay.services.webhooks import control
from hookrelay.services.webhooks.executor import DeliveryExecutor
from hookrelay.services.webhooks.trigger import trigger_event
from hookrelay.tests.utils.fakes import RecordingSubmitter, ScriptedTransport, seed_subscription


async def _new_delivery(session_factory, clock, event_id: str = "evt-1") -> str:
    ids = await trigger_event(
        session_factory=session_factory,
        submitter=RecordingSubmitter(),
        tenant_id="t-1",
        event_type="order.created",
        event_id=event_id,
        payload={"n": event_id},
        max_payload_bytes=4096,
        clock=clock,
    )
    return ids[0]


def _executor(session_factory, clock, settings, script) -> DeliveryExecutor:
    return DeliveryExecutor(
        session_factory=session_factory,
        http_client=ScriptedTransport(script).client(),
        settings=settings,
        clock=clock,
    )


async def _retry(session_factory, delivery_id, clock):
    async with session_factory() as session:
        return await control.retry_delivery(session=session, delivery_id=delivery_id, clock=clock)


async def _cancel(session_factory, delivery_id, clock):
    async with session_factory() as session:
        return await control.cancel_delivery(session=session, delivery_id=delivery_id, clock=clock)


@pytest.mark.asyncio
async def test_retry_restarts_failed_chain(session_factory, clock, settings) -> None:
    await seed_subscription(session_factory, max_attempts=1)
    delivery_id = await _new_delivery(session_factory, clock)
    executor = _executor(session_factory, clock, settings, [500, 200])
    await executor.execute(delivery_id)

    clock.advance(30)
    row = await _retry(session_factory, delivery_id, clock)
    assert row.status == "pending"
    assert row.attempts == 0
    assert row.last_error is None
    assert row.next_retry_at is None
    assert row.completed_at is None
    assert row.version == 3

    outcome = await executor.execute(delivery_id)
    assert outcome.status == "success"
    async with session_factory() as session:
        attempts = await control.list_delivery_attempts(session=session, delivery_id=delivery_id)
    # Attempt numbers keep counting across the manual restart.
    assert [a.attempt_number for a in attempts] == [1, 2]
    assert [a.http_status for a in attempts] == [500, 200]


@pytest.mark.asyncio
@pytest.mark.parametrize("prepare", ["pending", "success", "cancelled"])
async def test_retry_rejects_non_failed_states(session_factory, clock, settings, prepare) -> None:
    await seed_subscription(session_factory)
    delivery_id = await _new_delivery(session_factory, clock)
    if prepare == "success":
        await _executor(session_factory, clock, settings, [200]).execute(delivery_id)
    elif prepare == "cancelled":
        await _cancel(session_factory, delivery_id, clock)

    with pytest.raises(DeliveryStateError, match="not eligible for retry"):
        await _retry(session_factory, delivery_id, clock)
    async with session_factory() as session:
        row = await deliveries_repo.get_delivery(session, delivery_id)
    assert row.status == prepare


@pytest.mark.asyncio
async def test_cancel_pending_and_retrying(session_factory, clock, settings) -> None:
    await seed_subscription(session_factory)
    pending_id = await _new_delivery(session_factory, clock, "evt-p")
    retrying_id = await _new_delivery(session_factory, clock, "evt-r")
    await _executor(session_factory, clock, settings, [502]).execute(retrying_id)

    for delivery_id in (pending_id, retrying_id):
        row = await _cancel(session_factory, delivery_id, clock)
        assert row.status == "cancelled"
        assert ensure_utc(row.completed_at) == clock()
        assert row.next_retry_at is None

    # Cancelled chains are inert for the executor.
    clock.advance(60)
    outcome = await _executor(session_factory, clock, settings, [200]).execute(retrying_id)
    assert outcome.status == "skipped"


@pytest.mark.asyncio
async def test_cancel_rejects_terminal_and_missing(session_factory, clock, settings) -> None:
    await seed_subscription(session_factory)
    delivery_id = await _new_delivery(session_factory, clock)
    await _executor(session_factory, clock, settings, [200]).execute(delivery_id)

    with pytest.raises(DeliveryStateError, match="not eligible for cancel"):
        await _cancel(session_factory, delivery_id, clock)
    with pytest.raises(DeliveryNotFoundError):
        await _cancel(session_factory, "missing", clock)
    with pytest.raises(DeliveryNotFoundError):
        await _retry(session_factory, "missing", clock)


@pytest.mark.asyncio
async def test_stats_aggregate_by_status(session_factory, clock, settings) -> None:
    subscription_id = await seed_subscription(session_factory, max_attempts=1)
    ok_id = await _new_delivery(session_factory, clock, "evt-ok")
    bad_id = await _new_delivery(session_factory, clock, "evt-bad")
    await _new_delivery(session_factory, clock, "evt-wait")
    await _executor(session_factory, clock, settings, [200]).execute(ok_id)
    clock.advance(5)
    await _executor(session_factory, clock, settings, [500]).execute(bad_id)

    async with session_factory() as session:
        stats = await control.delivery_stats(session=session, subscription_id=subscription_id)
    assert stats["total"] == 3
    assert stats["by_status"] == {"pending": 1, "retrying": 0, "success": 1, "failed": 1, "cancelled": 0}
    assert stats["avg_success_duration_ms"] is not None
    assert stats["last_success_at"] < stats["last_failure_at"]
    assert stats["last_failure_at"] == clock()


@pytest.mark.asyncio
async def test_stats_for_unknown_subscription_are_empty(session_factory) -> None:
    async with session_factory() as session:
        stats = await control.delivery_stats(session=session, subscription_id="nobody")
    assert stats["total"] == 0
    assert stats["avg_success_duration_ms"] is None
    assert stats["last_success_at"] is None


@pytest.mark.asyncio
async def test_stale_version_write_is_rejected(session_factory, clock) -> None:
    # A writer holding an old version cannot move the row.
    await seed_subscription(session_factory)
    delivery_id = await _new_delivery(session_factory, clock)
    async with session_factory() as session:
        assert await deliveries_repo.cancel_delivery(
            session, delivery_id=delivery_id, expected_version=7, now=clock()
        ) is False
        assert await deliveries_repo.cancel_delivery(
            session, delivery_id=delivery_id, expected_version=0, now=clock()
        ) is True
        await session.commit()
        row = await deliveries_repo.get_delivery(session, delivery_id)
    assert row.status == "cancelled"
    assert row.version == 1
