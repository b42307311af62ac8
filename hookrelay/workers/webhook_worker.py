from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings
import httpx

from hookrelay.core.config import get_settings
from hookrelay.persistence.db import SessionLocal
from hookrelay.services.webhooks.executor import DeliveryExecutor
from hookrelay.services.webhooks.queue import ArqDeliveryQueue
from hookrelay.services.webhooks.scheduler import sweep_due_deliveries
from hookrelay.services.webhooks.service import build_rate_limiter

logger = logging.getLogger(__name__)


async def deliver_webhook(ctx, delivery_id: str) -> str:
    # Run one attempt and hand retries back to Redis as deferred jobs.
    executor: DeliveryExecutor = ctx["executor"]
    queue: ArqDeliveryQueue = ctx["queue"]
    outcome = await executor.execute(delivery_id)
    if outcome.needs_resubmit:
        await queue.submit(delivery_id, outcome.retry_in_s or 0.0)
    return outcome.status


async def _sweep_loop(queue: ArqDeliveryQueue) -> None:
    # Re-enqueue due deliveries so lost publishes and crashed attempts are recovered.
    settings = get_settings()
    interval_s = max(1, int(settings.webhook_sweep_interval_s))
    while True:
        try:
            await sweep_due_deliveries(
                session_factory=SessionLocal,
                submitter=queue,
                limit=max(1, int(settings.webhook_sweep_batch_size)),
                grace_s=settings.webhook_sweep_grace_s,
            )
        except Exception:  # noqa: BLE001 - keep sweeping while surfacing failures in worker logs.
            logger.exception("webhook_sweep_failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    settings = get_settings()
    http_client = httpx.AsyncClient(follow_redirects=False)
    rate_limiter = build_rate_limiter(settings)
    queue = ArqDeliveryQueue(settings=settings, redis=ctx.get("redis"))
    ctx["http_client"] = http_client
    ctx["rate_limiter"] = rate_limiter
    ctx["queue"] = queue
    ctx["executor"] = DeliveryExecutor(
        session_factory=SessionLocal,
        http_client=http_client,
        settings=settings,
        rate_limiter=rate_limiter,
    )
    ctx["sweep_task"] = asyncio.create_task(_sweep_loop(queue))
    logger.info("webhook_worker_started queue=%s", settings.webhook_queue_name)


async def _shutdown(ctx) -> None:
    task = ctx.get("sweep_task")
    if task:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
    rate_limiter = ctx.get("rate_limiter")
    close_limiter = getattr(rate_limiter, "close", None)
    if close_limiter is not None:
        await close_limiter()
    http_client = ctx.get("http_client")
    if http_client is not None:
        await http_client.aclose()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.webhook_queue_name
    max_jobs = max(1, int(settings.webhook_max_concurrency))
    # Retries are scheduled by the executor; ARQ-level retries would double count attempts.
    max_tries = 1
    functions = [deliver_webhook]
    on_startup = _startup
    on_shutdown = _shutdown
