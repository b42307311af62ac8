from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import time
from typing import Sequence

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.core.clock import Clock, ensure_utc, utc_now
from hookrelay.core.config import Settings, get_settings
from hookrelay.domain.models import (
    DELIVERY_STATUS_FAILED,
    DELIVERY_STATUS_RETRYING,
    DELIVERY_STATUS_SUCCESS,
    TERMINAL_DELIVERY_STATUSES,
    WebhookDelivery,
    WebhookSubscription,
)
from hookrelay.persistence.repos import attempts as attempts_repo
from hookrelay.persistence.repos import deliveries as deliveries_repo
from hookrelay.persistence.repos import subscriptions as subscriptions_repo
from hookrelay.services.webhooks.rate_limit import SubscriptionRateLimiter
from hookrelay.services.webhooks.signing import (
    HEADER_DELIVERY_ATTEMPT,
    HEADER_DELIVERY_ID,
    HEADER_EVENT_ID,
    HEADER_EVENT_TYPE,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    compute_signature,
)


logger = logging.getLogger(__name__)

# Fixed retry schedule in seconds; the last value repeats for any further attempt.
RETRY_BACKOFF_SECONDS: tuple[float, ...] = (1, 2, 4, 8, 16)

MAX_ATTEMPTS_ERROR = "Max retry attempts reached"
SUBSCRIPTION_UNAVAILABLE_ERROR = "Subscription not found or inactive"

OUTCOME_SUCCESS = "success"
OUTCOME_RETRYING = "retrying"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_DISCARDED = "discarded"
OUTCOME_DEFERRED = "deferred"


def retry_delay_seconds(attempts: int, schedule: Sequence[float] = RETRY_BACKOFF_SECONDS) -> float:
    # attempts is 1-based; index past the end clamps to the last entry.
    if not schedule:
        raise ValueError("backoff schedule must not be empty")
    index = min(max(int(attempts) - 1, 0), len(schedule) - 1)
    return float(schedule[index])


def truncate_body(text: str | None, limit: int) -> str | None:
    if text is None:
        return None
    return text[: max(0, int(limit))]


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one executor pass over a delivery id.

    ``retry_in_s`` is set when the caller should submit the id again after that
    many seconds (``retrying`` and ``deferred`` outcomes).
    """

    delivery_id: str
    status: str
    retry_in_s: float | None = None
    attempts: int | None = None
    http_status: int | None = None
    error: str | None = None

    @property
    def needs_resubmit(self) -> bool:
        return self.retry_in_s is not None


@dataclass(frozen=True)
class _SendResult:
    http_status: int | None
    response_body: str | None
    error: str | None
    duration_ms: int

    @property
    def ok(self) -> bool:
        return self.http_status is not None and 200 <= self.http_status < 300


class DeliveryExecutor:
    """Runs a single delivery attempt against the durable store.

    Shared by the in-process scheduler and the ARQ worker; it never re-enqueues
    work itself and instead reports what the caller should do next.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient,
        settings: Settings | None = None,
        clock: Clock | None = None,
        rate_limiter: SubscriptionRateLimiter | None = None,
        backoff_schedule: Sequence[float] = RETRY_BACKOFF_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._http_client = http_client
        self._settings = settings or get_settings()
        self._clock = clock or utc_now
        self._rate_limiter = rate_limiter
        self._backoff_schedule = tuple(backoff_schedule)

    async def execute(self, delivery_id: str) -> DeliveryOutcome:
        # Load, claim, send, then persist the outcome under the claimed version.
        async with self._session_factory() as session:
            delivery = await deliveries_repo.get_delivery(session, delivery_id)
            if delivery is None:
                logger.warning("webhook_delivery_missing delivery_id=%s", delivery_id)
                return DeliveryOutcome(delivery_id=delivery_id, status=OUTCOME_SKIPPED)
            if delivery.status in TERMINAL_DELIVERY_STATUSES:
                return DeliveryOutcome(
                    delivery_id=delivery_id, status=OUTCOME_SKIPPED, attempts=delivery.attempts
                )
            now = self._clock()
            locked_until = ensure_utc(delivery.locked_until)
            if locked_until is not None and locked_until > now:
                # Another worker holds the lease and will report its own outcome.
                return DeliveryOutcome(delivery_id=delivery_id, status=OUTCOME_SKIPPED, attempts=delivery.attempts)
            if delivery.attempts >= delivery.max_attempts:
                return await self._fail_without_attempt(session, delivery, MAX_ATTEMPTS_ERROR)
            subscription = await subscriptions_repo.get_subscription(session, delivery.subscription_id)
            if subscription is None or not subscription.is_active:
                return await self._fail_without_attempt(session, delivery, SUBSCRIPTION_UNAVAILABLE_ERROR)

            next_retry_at = ensure_utc(delivery.next_retry_at)
            if next_retry_at is not None and next_retry_at > now:
                return DeliveryOutcome(
                    delivery_id=delivery_id,
                    status=OUTCOME_DEFERRED,
                    retry_in_s=(next_retry_at - now).total_seconds(),
                    attempts=delivery.attempts,
                )

            timeout_s = max(1, int(subscription.timeout_seconds or 1))
            lease_until = now + timedelta(seconds=timeout_s + max(0, int(self._settings.webhook_lease_grace_s)))
            claimed = await deliveries_repo.claim_delivery(
                session,
                delivery_id=delivery_id,
                expected_version=delivery.version,
                now=now,
                lease_until=lease_until,
            )
            if not claimed:
                # Leaving the session block rolls back; loaded attributes stay readable.
                logger.info("webhook_delivery_claim_lost delivery_id=%s", delivery_id)
                return DeliveryOutcome(delivery_id=delivery_id, status=OUTCOME_SKIPPED, attempts=delivery.attempts)

            # Tokens are only spent by the claim holder; a throttled claim is rolled back uncommitted.
            if self._rate_limiter is not None and subscription.rate_limit_per_minute:
                decision = await self._rate_limiter.acquire(subscription.id, subscription.rate_limit_per_minute)
                if not decision.allowed:
                    logger.info(
                        "webhook_delivery_throttled delivery_id=%s subscription_id=%s retry_after_ms=%s",
                        delivery_id,
                        subscription.id,
                        decision.retry_after_ms,
                    )
                    return DeliveryOutcome(
                        delivery_id=delivery_id,
                        status=OUTCOME_DEFERRED,
                        retry_in_s=max(decision.retry_after_ms, 1) / 1000.0,
                        attempts=delivery.attempts,
                    )
            attempt_number = await attempts_repo.next_attempt_number(session, delivery_id)
            await session.commit()

        attempts = delivery.attempts + 1
        claimed_version = delivery.version + 1
        result = await self._send(
            delivery=delivery,
            subscription=subscription,
            attempts=attempts,
            timeout_s=timeout_s,
        )
        finished_at = self._clock()
        return await self._record(
            delivery=delivery,
            attempts=attempts,
            attempt_number=attempt_number,
            claimed_version=claimed_version,
            started_at=now,
            finished_at=finished_at,
            result=result,
        )

    async def _fail_without_attempt(
        self,
        session: AsyncSession,
        delivery: WebhookDelivery,
        error: str,
    ) -> DeliveryOutcome:
        now = self._clock()
        updated = await deliveries_repo.fail_without_attempt(
            session,
            delivery_id=delivery.id,
            expected_version=delivery.version,
            now=now,
            error=error,
        )
        if not updated:
            return DeliveryOutcome(delivery_id=delivery.id, status=OUTCOME_SKIPPED, attempts=delivery.attempts)
        await session.commit()
        logger.warning("webhook_delivery_failed delivery_id=%s reason=%s", delivery.id, error)
        return DeliveryOutcome(
            delivery_id=delivery.id,
            status=OUTCOME_FAILED,
            attempts=delivery.attempts,
            error=error,
        )

    def _build_headers(
        self,
        *,
        delivery: WebhookDelivery,
        subscription: WebhookSubscription,
        attempts: int,
        timestamp: int,
    ) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": self._settings.webhook_user_agent,
            HEADER_EVENT_TYPE: delivery.event_type,
            HEADER_EVENT_ID: delivery.event_id,
            HEADER_SIGNATURE: compute_signature(delivery.payload, subscription.secret, timestamp),
            HEADER_TIMESTAMP: str(timestamp),
            HEADER_DELIVERY_ID: delivery.id,
            HEADER_DELIVERY_ATTEMPT: str(attempts),
        }

    async def _send(
        self,
        *,
        delivery: WebhookDelivery,
        subscription: WebhookSubscription,
        attempts: int,
        timeout_s: int,
    ) -> _SendResult:
        timestamp = int(self._clock().timestamp())
        headers = self._build_headers(
            delivery=delivery,
            subscription=subscription,
            attempts=attempts,
            timestamp=timestamp,
        )
        limit = self._settings.webhook_response_body_limit
        started = time.monotonic()
        try:
            # wait_for bounds the whole exchange, including slow response bodies.
            response = await asyncio.wait_for(
                self._http_client.post(
                    subscription.url,
                    content=delivery.payload,
                    headers=headers,
                    timeout=timeout_s,
                ),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return _SendResult(
                http_status=None,
                response_body=None,
                error=f"Request timeout after {timeout_s}s",
                duration_ms=_elapsed_ms(started),
            )
        except httpx.HTTPError as exc:
            return _SendResult(
                http_status=None,
                response_body=None,
                error=str(exc) or exc.__class__.__name__,
                duration_ms=_elapsed_ms(started),
            )
        except Exception as exc:  # noqa: BLE001 - the claim is committed; record the attempt as a failure.
            logger.warning(
                "webhook_delivery_send_error delivery_id=%s error_type=%s",
                delivery.id,
                exc.__class__.__name__,
                exc_info=exc,
            )
            return _SendResult(
                http_status=None,
                response_body=None,
                error=str(exc) or exc.__class__.__name__,
                duration_ms=_elapsed_ms(started),
            )
        body = truncate_body(response.text, limit)
        status_code = int(response.status_code)
        error = None if 200 <= status_code < 300 else f"HTTP {status_code}: {body or ''}"
        return _SendResult(
            http_status=status_code,
            response_body=body,
            error=error,
            duration_ms=_elapsed_ms(started),
        )

    async def _record(
        self,
        *,
        delivery: WebhookDelivery,
        attempts: int,
        attempt_number: int,
        claimed_version: int,
        started_at: datetime,
        finished_at: datetime,
        result: _SendResult,
    ) -> DeliveryOutcome:
        values: dict[str, object] = {
            "last_http_status": result.http_status,
            "last_response_body": result.response_body,
            "last_error": result.error,
            "last_duration_ms": result.duration_ms,
            "updated_at": finished_at,
        }
        retry_in_s: float | None = None
        if result.ok:
            status = OUTCOME_SUCCESS
            values.update(status=DELIVERY_STATUS_SUCCESS, next_retry_at=None, completed_at=finished_at)
        elif attempts < delivery.max_attempts:
            status = OUTCOME_RETRYING
            retry_in_s = retry_delay_seconds(attempts, self._backoff_schedule)
            values.update(
                status=DELIVERY_STATUS_RETRYING,
                next_retry_at=finished_at + timedelta(seconds=retry_in_s),
            )
        else:
            status = OUTCOME_FAILED
            values.update(status=DELIVERY_STATUS_FAILED, next_retry_at=None, completed_at=finished_at)

        async with self._session_factory() as session:
            attempts_repo.append_attempt(
                session,
                delivery=delivery,
                attempt_number=attempt_number,
                success=result.ok,
                http_status=result.http_status,
                response_body=result.response_body,
                error=result.error,
                duration_ms=result.duration_ms,
                started_at=started_at,
                completed_at=finished_at,
            )
            persisted = await deliveries_repo.record_attempt_outcome(
                session,
                delivery_id=delivery.id,
                claimed_version=claimed_version,
                values=values,
            )
            # The attempt row is audit of the round trip and is kept even when the outcome is dropped.
            await session.commit()

        if not persisted:
            logger.info(
                "webhook_delivery_outcome_discarded delivery_id=%s attempts=%s http_status=%s",
                delivery.id,
                attempts,
                result.http_status,
            )
            return DeliveryOutcome(
                delivery_id=delivery.id,
                status=OUTCOME_DISCARDED,
                attempts=attempts,
                http_status=result.http_status,
                error=result.error,
            )
        if status == OUTCOME_SUCCESS:
            logger.info(
                "webhook_delivery_succeeded delivery_id=%s attempts=%s http_status=%s duration_ms=%s",
                delivery.id,
                attempts,
                result.http_status,
                result.duration_ms,
            )
        elif status == OUTCOME_RETRYING:
            logger.info(
                "webhook_delivery_retry_scheduled delivery_id=%s attempts=%s retry_in_s=%s error=%s",
                delivery.id,
                attempts,
                retry_in_s,
                result.error,
            )
        else:
            logger.warning(
                "webhook_delivery_failed delivery_id=%s attempts=%s error=%s",
                delivery.id,
                attempts,
                result.error,
            )
        return DeliveryOutcome(
            delivery_id=delivery.id,
            status=status,
            retry_in_s=retry_in_s,
            attempts=attempts,
            http_status=result.http_status,
            error=result.error,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
