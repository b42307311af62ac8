from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from hookrelay.core.clock import ensure_utc
from hookrelay.domain.models import WebhookDelivery
from hookrelay.persistence.repos import attempts as attempts_repo
from hookrelay.persistence.repos import deliveries as deliveries_repo
from hookrelay.services.webhooks import control
from hookrelay.services.webhooks.executor import (
    MAX_ATTEMPTS_ERROR,
    OUTCOME_DEFERRED,
    OUTCOME_DISCARDED,
    OUTCOME_FAILED,
    OUTCOME_RETRYING,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCESS,
    SUBSCRIPTION_UNAVAILABLE_ERROR,
    DeliveryExecutor,
)
from hookrelay.services.webhooks.rate_limit import InMemoryRateLimiter
from hookrelay.services.webhooks.signing import compute_signature
from hookrelay.services.webhooks.trigger import trigger_event
from hookrelay.tests.utils.fakes import (
    RecordingSubmitter,
    ScriptedTransport,
    seed_subscription,
    set_subscription_active,
)


async def _trigger_one(session_factory, clock, settings, *, event_id: str = "evt-1", tenant_id: str = "t-1") -> str:
    ids = await trigger_event(
        session_factory=session_factory,
        submitter=RecordingSubmitter(),
        tenant_id=tenant_id,
        event_type="order.created",
        event_id=event_id,
        payload={"order_id": "o-1", "amount": 42},
        max_payload_bytes=settings.webhook_max_payload_bytes,
        clock=clock,
    )
    assert len(ids) == 1
    return ids[0]


async def _load(session_factory, delivery_id: str) -> WebhookDelivery:
    async with session_factory() as session:
        row = await deliveries_repo.get_delivery(session, delivery_id)
        assert row is not None
        return row


async def _attempts(session_factory, delivery_id: str):
    async with session_factory() as session:
        return await attempts_repo.list_attempts(session, delivery_id)


def _executor(session_factory, transport: ScriptedTransport, clock, settings, **kwargs) -> DeliveryExecutor:
    return DeliveryExecutor(
        session_factory=session_factory,
        http_client=transport.client(),
        settings=settings,
        clock=clock,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_two_failures_then_success(session_factory, clock, settings) -> None:
    # 500, 500, 200 with max 5 ends in success after exactly three attempts.
    await seed_subscription(session_factory, max_attempts=5)
    delivery_id = await _trigger_one(session_factory, clock, settings)
    transport = ScriptedTransport([500, 500, 200], body="nope")
    executor = _executor(session_factory, transport, clock, settings)

    first = await executor.execute(delivery_id)
    assert first.status == OUTCOME_RETRYING
    assert first.retry_in_s == 1.0
    clock.advance(1)
    second = await executor.execute(delivery_id)
    assert second.status == OUTCOME_RETRYING
    assert second.retry_in_s == 2.0
    clock.advance(2)
    third = await executor.execute(delivery_id)
    assert third.status == OUTCOME_SUCCESS
    assert third.needs_resubmit is False

    row = await _load(session_factory, delivery_id)
    assert row.status == "success"
    assert row.attempts == 3
    assert row.last_http_status == 200
    assert row.last_error is None
    assert row.next_retry_at is None
    assert row.locked_until is None
    assert ensure_utc(row.completed_at) == clock()

    attempts = await _attempts(session_factory, delivery_id)
    assert [a.http_status for a in attempts] == [500, 500, 200]
    assert [a.attempt_number for a in attempts] == [1, 2, 3]
    assert [a.success for a in attempts] == [False, False, True]
    assert attempts[0].error == "HTTP 500: nope"

    # Terminal rows are never attempted again.
    again = await executor.execute(delivery_id)
    assert again.status == OUTCOME_SKIPPED
    assert len(transport.requests) == 3


@pytest.mark.asyncio
async def test_all_timeouts_exhaust_attempts(session_factory, clock, settings) -> None:
    await seed_subscription(session_factory, max_attempts=3, timeout_seconds=7)
    delivery_id = await _trigger_one(session_factory, clock, settings)
    transport = ScriptedTransport([httpx.ReadTimeout("slow")])
    executor = _executor(session_factory, transport, clock, settings)

    outcomes = []
    for delay in (0, 1, 2):
        clock.advance(delay)
        outcomes.append(await executor.execute(delivery_id))
    assert [o.status for o in outcomes] == [OUTCOME_RETRYING, OUTCOME_RETRYING, OUTCOME_FAILED]

    row = await _load(session_factory, delivery_id)
    assert row.status == "failed"
    assert row.attempts == 3
    assert row.last_http_status is None
    assert row.last_error == "Request timeout after 7s"
    attempts = await _attempts(session_factory, delivery_id)
    assert len(attempts) == 3
    assert all(a.http_status is None for a in attempts)

    # Exhausted chains stay put; a later pass never sends again.
    clock.advance(60)
    assert (await executor.execute(delivery_id)).status == OUTCOME_SKIPPED
    assert len(transport.requests) == 3


@pytest.mark.asyncio
async def test_network_error_is_recorded_and_retried(session_factory, clock, settings) -> None:
    await seed_subscription(session_factory, max_attempts=2)
    delivery_id = await _trigger_one(session_factory, clock, settings)
    transport = ScriptedTransport([httpx.ConnectError("connection refused"), 204])
    executor = _executor(session_factory, transport, clock, settings)

    first = await executor.execute(delivery_id)
    assert first.status == OUTCOME_RETRYING
    assert first.error == "connection refused"
    clock.advance(1)
    assert (await executor.execute(delivery_id)).status == OUTCOME_SUCCESS
    assert (await _load(session_factory, delivery_id)).attempts == 2


@pytest.mark.asyncio
async def test_retry_is_deferred_until_due(session_factory, clock, settings) -> None:
    await seed_subscription(session_factory)
    delivery_id = await _trigger_one(session_factory, clock, settings)
    transport = ScriptedTransport([503, 200])
    executor = _executor(session_factory, transport, clock, settings)

    started = clock()
    await executor.execute(delivery_id)
    clock.advance(0.25)
    early = await executor.execute(delivery_id)
    assert early.status == OUTCOME_DEFERRED
    assert early.retry_in_s == pytest.approx(0.75)
    assert len(transport.requests) == 1
    row = await _load(session_factory, delivery_id)
    assert row.attempts == 1
    assert ensure_utc(row.next_retry_at) == started + timedelta(seconds=1)


@pytest.mark.asyncio
async def test_request_carries_signed_headers(session_factory, clock, settings) -> None:
    await seed_subscription(session_factory, secret="whsec-headers", url="https://hooks.example.test/in")
    delivery_id = await _trigger_one(session_factory, clock, settings, event_id="evt-headers")
    transport = ScriptedTransport([200])
    executor = _executor(session_factory, transport, clock, settings)
    await executor.execute(delivery_id)

    request = transport.requests[0]
    timestamp = int(clock().timestamp())
    assert str(request.url) == "https://hooks.example.test/in"
    assert request.method == "POST"
    assert request.content == b'{"amount":42,"order_id":"o-1"}'
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["X-Event-Type"] == "order.created"
    assert request.headers["X-Event-ID"] == "evt-headers"
    assert request.headers["X-Timestamp"] == str(timestamp)
    assert request.headers["X-Signature"] == compute_signature(request.content, "whsec-headers", timestamp)
    assert request.headers["X-Delivery-ID"] == delivery_id
    assert request.headers["X-Delivery-Attempt"] == "1"
    assert request.headers["User-Agent"] == settings.webhook_user_agent


@pytest.mark.asyncio
async def test_response_body_is_truncated(session_factory, clock, settings) -> None:
    await seed_subscription(session_factory)
    delivery_id = await _trigger_one(session_factory, clock, settings)
    transport = ScriptedTransport([200], body="y" * 5000)
    executor = _executor(session_factory, transport, clock, settings)
    await executor.execute(delivery_id)

    row = await _load(session_factory, delivery_id)
    assert row.last_response_body == "y" * 1000
    attempts = await _attempts(session_factory, delivery_id)
    assert len(attempts[0].response_body) == 1000


@pytest.mark.asyncio
async def test_cancel_during_inflight_attempt_wins(session_factory, clock, settings) -> None:
    # The attempt finishes on the wire but its outcome cannot overwrite the cancel.
    await seed_subscription(session_factory)
    delivery_id = await _trigger_one(session_factory, clock, settings)

    async def _cancel_then_fail(request: httpx.Request) -> httpx.Response:
        async with session_factory() as session:
            await control.cancel_delivery(session=session, delivery_id=delivery_id, clock=clock)
        return httpx.Response(500, text="late")

    executor = DeliveryExecutor(
        session_factory=session_factory,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_cancel_then_fail)),
        settings=settings,
        clock=clock,
    )
    outcome = await executor.execute(delivery_id)
    assert outcome.status == OUTCOME_DISCARDED
    assert outcome.needs_resubmit is False

    row = await _load(session_factory, delivery_id)
    assert row.status == "cancelled"
    assert row.next_retry_at is None
    assert row.locked_until is None
    attempts = await _attempts(session_factory, delivery_id)
    assert [a.http_status for a in attempts] == [500]


@pytest.mark.asyncio
async def test_inactive_subscription_fails_without_attempt(session_factory, clock, settings) -> None:
    subscription_id = await seed_subscription(session_factory)
    delivery_id = await _trigger_one(session_factory, clock, settings)
    await set_subscription_active(session_factory, subscription_id, False)
    transport = ScriptedTransport([200])
    executor = _executor(session_factory, transport, clock, settings)

    outcome = await executor.execute(delivery_id)
    assert outcome.status == OUTCOME_FAILED
    row = await _load(session_factory, delivery_id)
    assert row.status == "failed"
    assert row.attempts == 0
    assert row.last_error == SUBSCRIPTION_UNAVAILABLE_ERROR
    assert transport.requests == []


@pytest.mark.asyncio
async def test_exhausted_chain_with_expired_lease_is_failed(session_factory, clock, settings) -> None:
    # A worker that died mid-attempt leaves a lease behind; once it lapses the chain is closed out.
    await seed_subscription(session_factory, max_attempts=1)
    delivery_id = await _trigger_one(session_factory, clock, settings)
    async with session_factory() as session:
        row = await deliveries_repo.get_delivery(session, delivery_id)
        claimed = await deliveries_repo.claim_delivery(
            session,
            delivery_id=delivery_id,
            expected_version=row.version,
            now=clock(),
            lease_until=clock() + timedelta(seconds=15),
        )
        assert claimed is True
        await session.commit()

    transport = ScriptedTransport([200])
    executor = _executor(session_factory, transport, clock, settings)
    assert (await executor.execute(delivery_id)).status == OUTCOME_SKIPPED

    clock.advance(16)
    outcome = await executor.execute(delivery_id)
    assert outcome.status == OUTCOME_FAILED
    assert outcome.error == MAX_ATTEMPTS_ERROR
    row = await _load(session_factory, delivery_id)
    assert row.status == "failed"
    assert row.attempts == 1
    assert transport.requests == []


@pytest.mark.asyncio
async def test_rate_limited_subscription_is_deferred_not_charged(session_factory, clock, settings) -> None:
    await seed_subscription(session_factory, rate_limit_per_minute=1)
    first_id = await _trigger_one(session_factory, clock, settings, event_id="evt-a")
    second_id = await _trigger_one(session_factory, clock, settings, event_id="evt-b")
    transport = ScriptedTransport([200])
    executor = _executor(
        session_factory,
        transport,
        clock,
        settings,
        rate_limiter=InMemoryRateLimiter(time_provider=lambda: 1_000.0),
    )

    assert (await executor.execute(first_id)).status == OUTCOME_SUCCESS
    throttled = await executor.execute(second_id)
    assert throttled.status == OUTCOME_DEFERRED
    assert throttled.retry_in_s == pytest.approx(60.0, abs=0.01)
    row = await _load(session_factory, second_id)
    assert row.status == "pending"
    assert row.attempts == 0


@pytest.mark.asyncio
async def test_missing_delivery_is_skipped(session_factory, clock, settings) -> None:
    executor = _executor(session_factory, ScriptedTransport([200]), clock, settings)
    outcome = await executor.execute("does-not-exist")
    assert outcome.status == OUTCOME_SKIPPED


@pytest.mark.asyncio
async def test_unencodable_header_is_recorded_as_failed_attempts(session_factory, clock, settings) -> None:
    # A request that cannot even be built still counts as an audited attempt per claim.
    await seed_subscription(session_factory, events=("*",), max_attempts=3)
    ids = await trigger_event(
        session_factory=session_factory,
        submitter=RecordingSubmitter(),
        tenant_id="t-1",
        event_type="commande.créée",
        event_id="evt-accent",
        payload={"n": 1},
        max_payload_bytes=settings.webhook_max_payload_bytes,
        clock=clock,
    )
    delivery_id = ids[0]
    transport = ScriptedTransport([200])
    executor = _executor(session_factory, transport, clock, settings)

    statuses = []
    for _ in range(3):
        outcome = await executor.execute(delivery_id)
        statuses.append(outcome.status)
        clock.advance(60)
    assert statuses == [OUTCOME_RETRYING, OUTCOME_RETRYING, OUTCOME_FAILED]

    row = await _load(session_factory, delivery_id)
    assert row.status == "failed"
    assert row.attempts == 3
    assert row.locked_until is None
    attempts = await _attempts(session_factory, delivery_id)
    assert [a.attempt_number for a in attempts] == [1, 2, 3]
    assert all(a.http_status is None and a.error for a in attempts)
    assert transport.requests == []


@pytest.mark.asyncio
async def test_unexpected_transport_exception_is_retried(session_factory, clock, settings) -> None:
    await seed_subscription(session_factory)
    delivery_id = await _trigger_one(session_factory, clock, settings)
    transport = ScriptedTransport([RuntimeError("transport exploded"), 200])
    executor = _executor(session_factory, transport, clock, settings)

    first = await executor.execute(delivery_id)
    assert first.status == OUTCOME_RETRYING
    assert first.error == "transport exploded"
    assert first.retry_in_s == 1.0
    clock.advance(1)
    assert (await executor.execute(delivery_id)).status == OUTCOME_SUCCESS

    attempts = await _attempts(session_factory, delivery_id)
    assert [(a.http_status, a.error) for a in attempts] == [(None, "transport exploded"), (200, None)]


def _slow_client(calls: list[httpx.Request]) -> httpx.AsyncClient:
    async def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        await asyncio.sleep(0.05)
        return httpx.Response(200, text="ok")

    return httpx.AsyncClient(transport=httpx.MockTransport(_handler))


@pytest.mark.asyncio
async def test_concurrent_executions_make_one_attempt(session_factory, clock, settings) -> None:
    # The fast path and the sweep may race on one id; the claim lets exactly one through.
    await seed_subscription(session_factory)
    delivery_id = await _trigger_one(session_factory, clock, settings)
    calls: list[httpx.Request] = []
    executor = DeliveryExecutor(
        session_factory=session_factory,
        http_client=_slow_client(calls),
        settings=settings,
        clock=clock,
    )

    outcomes = await asyncio.gather(*(executor.execute(delivery_id) for _ in range(4)))

    assert sorted(outcome.status for outcome in outcomes) == [OUTCOME_SKIPPED] * 3 + [OUTCOME_SUCCESS]
    assert len(calls) == 1
    row = await _load(session_factory, delivery_id)
    assert row.status == "success"
    assert row.attempts == 1
    assert len(await _attempts(session_factory, delivery_id)) == 1


class _CountingLimiter(InMemoryRateLimiter):
    def __init__(self) -> None:
        super().__init__(time_provider=lambda: 1_000.0)
        self.calls = 0

    async def acquire(self, subscription_id: str, limit_per_minute: int):
        self.calls += 1
        return await super().acquire(subscription_id, limit_per_minute)


@pytest.mark.asyncio
async def test_lost_claim_does_not_spend_rate_limit_token(session_factory, clock, settings) -> None:
    await seed_subscription(session_factory, rate_limit_per_minute=5)
    delivery_id = await _trigger_one(session_factory, clock, settings)
    limiter = _CountingLimiter()
    calls: list[httpx.Request] = []
    executor = DeliveryExecutor(
        session_factory=session_factory,
        http_client=_slow_client(calls),
        settings=settings,
        clock=clock,
        rate_limiter=limiter,
    )

    outcomes = await asyncio.gather(*(executor.execute(delivery_id) for _ in range(3)))

    assert sorted(outcome.status for outcome in outcomes) == [OUTCOME_SKIPPED] * 2 + [OUTCOME_SUCCESS]
    assert limiter.calls == 1
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_throttled_claim_leaves_row_untouched(session_factory, clock, settings) -> None:
    await seed_subscription(session_factory, rate_limit_per_minute=1)
    first_id = await _trigger_one(session_factory, clock, settings, event_id="evt-a")
    second_id = await _trigger_one(session_factory, clock, settings, event_id="evt-b")
    before = await _load(session_factory, second_id)
    executor = _executor(
        session_factory,
        ScriptedTransport([200]),
        clock,
        settings,
        rate_limiter=InMemoryRateLimiter(time_provider=lambda: 1_000.0),
    )

    assert (await executor.execute(first_id)).status == OUTCOME_SUCCESS
    assert (await executor.execute(second_id)).status == OUTCOME_DEFERRED

    row = await _load(session_factory, second_id)
    assert row.version == before.version
    assert row.locked_until is None
    assert row.first_attempt_at is None
    assert len(await _attempts(session_factory, second_id)) == 0


@pytest.mark.asyncio
async def test_attempt_counter_is_bounded_by_schema(session_factory, clock, settings) -> None:
    await seed_subscription(session_factory, max_attempts=2)
    delivery_id = await _trigger_one(session_factory, clock, settings)
    async with session_factory() as session:
        with pytest.raises(IntegrityError):
            await session.execute(
                update(WebhookDelivery).where(WebhookDelivery.id == delivery_id).values(attempts=3)
            )
        await session.rollback()
    assert (await _load(session_factory, delivery_id)).attempts == 0
