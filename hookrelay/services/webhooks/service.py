from __future__ import annotations

import logging
from typing import Any, Sequence

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.core.clock import Clock, utc_now
from hookrelay.core.config import Settings, get_settings
from hookrelay.domain.models import WebhookAttempt, WebhookDelivery
from hookrelay.persistence.repos import deliveries as deliveries_repo
from hookrelay.services.webhooks import control
from hookrelay.services.webhooks.executor import RETRY_BACKOFF_SECONDS, DeliveryExecutor
from hookrelay.services.webhooks.queue import ArqDeliveryQueue
from hookrelay.services.webhooks.rate_limit import (
    InMemoryRateLimiter,
    RedisRateLimiter,
    SubscriptionRateLimiter,
)
from hookrelay.services.webhooks.scheduler import DeliveryScheduler, DeliverySubmitter, sweep_due_deliveries
from hookrelay.services.webhooks.trigger import EventPayload, send_test_event, trigger_event


logger = logging.getLogger(__name__)

EXECUTION_MODE_INLINE = "inline"
EXECUTION_MODE_QUEUE = "queue"


def build_rate_limiter(settings: Settings) -> SubscriptionRateLimiter:
    if settings.webhook_rate_limit_backend == "redis":
        return RedisRateLimiter(redis_url=settings.redis_url, prefix=settings.webhook_rl_redis_prefix)
    return InMemoryRateLimiter()


class WebhookDeliveryService:
    """Handle owning every collaborator of the delivery pipeline.

    Built once at process startup and passed to whoever needs it (API
    lifespan, ARQ worker context, tests). In ``inline`` mode it runs an
    in-process scheduler; in ``queue`` mode it publishes ids to ARQ and the
    worker process runs the executor.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        rate_limiter: SubscriptionRateLimiter | None = None,
        submitter: DeliverySubmitter | None = None,
        backoff_schedule: Sequence[float] = RETRY_BACKOFF_SECONDS,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.clock = clock or utc_now
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(follow_redirects=False)
        self.rate_limiter = rate_limiter or build_rate_limiter(self.settings)
        self.executor = DeliveryExecutor(
            session_factory=session_factory,
            http_client=self.http_client,
            settings=self.settings,
            clock=self.clock,
            rate_limiter=self.rate_limiter,
            backoff_schedule=backoff_schedule,
        )
        self.scheduler: DeliveryScheduler | None = None
        if submitter is None:
            if self.settings.webhook_execution_mode == EXECUTION_MODE_QUEUE:
                submitter = ArqDeliveryQueue(settings=self.settings)
            else:
                self.scheduler = DeliveryScheduler(
                    executor=self.executor,
                    session_factory=session_factory,
                    max_concurrency=self.settings.webhook_max_concurrency,
                    sweep_interval_s=self.settings.webhook_sweep_interval_s,
                    sweep_batch_size=self.settings.webhook_sweep_batch_size,
                    sweep_grace_s=self.settings.webhook_sweep_grace_s,
                    clock=self.clock,
                )
                submitter = self.scheduler
        self.submitter = submitter

    async def start(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.start()

    async def stop(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        close_submitter = getattr(self.submitter, "close", None)
        if close_submitter is not None and self.submitter is not self.scheduler:
            await close_submitter()
        close_limiter = getattr(self.rate_limiter, "close", None)
        if close_limiter is not None:
            await close_limiter()
        if self._owns_http_client:
            await self.http_client.aclose()

    async def trigger(
        self,
        tenant_id: str,
        event_type: str,
        event_id: str,
        payload: EventPayload,
    ) -> list[str]:
        return await trigger_event(
            session_factory=self.session_factory,
            submitter=self.submitter,
            tenant_id=tenant_id,
            event_type=event_type,
            event_id=event_id,
            payload=payload,
            max_payload_bytes=self.settings.webhook_max_payload_bytes,
            clock=self.clock,
        )

    async def send_test_event(self, subscription_id: str) -> str:
        return await send_test_event(
            session_factory=self.session_factory,
            submitter=self.submitter,
            subscription_id=subscription_id,
            max_payload_bytes=self.settings.webhook_max_payload_bytes,
            clock=self.clock,
        )

    async def retry(self, delivery_id: str) -> WebhookDelivery:
        async with self.session_factory() as session:
            row = await control.retry_delivery(session=session, delivery_id=delivery_id, clock=self.clock)
        logger.info("webhook_delivery_retry_requested delivery_id=%s", delivery_id)
        await self.submitter.submit(delivery_id)
        return row

    async def cancel(self, delivery_id: str) -> WebhookDelivery:
        async with self.session_factory() as session:
            row = await control.cancel_delivery(session=session, delivery_id=delivery_id, clock=self.clock)
        logger.info("webhook_delivery_cancelled delivery_id=%s", delivery_id)
        return row

    async def stats(self, subscription_id: str) -> dict[str, Any]:
        async with self.session_factory() as session:
            return await control.delivery_stats(session=session, subscription_id=subscription_id)

    async def get_delivery(self, delivery_id: str) -> WebhookDelivery:
        async with self.session_factory() as session:
            return await control.get_delivery(session=session, delivery_id=delivery_id)

    async def list_deliveries(
        self,
        *,
        tenant_id: str | None = None,
        subscription_id: str | None = None,
        status: str | None = None,
        event_id: str | None = None,
        limit: int = 100,
    ) -> list[WebhookDelivery]:
        async with self.session_factory() as session:
            return await deliveries_repo.list_deliveries(
                session,
                tenant_id=tenant_id,
                subscription_id=subscription_id,
                status=status,
                event_id=event_id,
                limit=limit,
            )

    async def list_attempts(self, delivery_id: str) -> list[WebhookAttempt]:
        async with self.session_factory() as session:
            return await control.list_delivery_attempts(session=session, delivery_id=delivery_id)

    async def sweep_once(self) -> int:
        return await sweep_due_deliveries(
            session_factory=self.session_factory,
            submitter=self.submitter,
            limit=self.settings.webhook_sweep_batch_size,
            grace_s=self.settings.webhook_sweep_grace_s,
            clock=self.clock,
        )


def build_webhook_service(settings: Settings | None = None) -> WebhookDeliveryService:
    # Bind the service to the process-wide engine from persistence.db.
    from hookrelay.persistence.db import SessionLocal

    return WebhookDeliveryService(session_factory=SessionLocal, settings=settings or get_settings())
