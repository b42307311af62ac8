from __future__ import annotations

import asyncio
from datetime import timedelta
import logging

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from hookrelay.core.config import Settings, get_settings


logger = logging.getLogger(__name__)

DELIVER_WEBHOOK_TASK = "deliver_webhook"


class ArqDeliveryQueue:
    """Durable submitter publishing delivery ids as ARQ jobs.

    Delays map onto ``_defer_by`` so retry timing lives in Redis instead of
    process memory.
    """

    def __init__(self, *, settings: Settings | None = None, redis: ArqRedis | None = None) -> None:
        self._settings = settings or get_settings()
        self._redis = redis
        self._redis_loop: asyncio.AbstractEventLoop | None = None
        self._owns_redis = redis is None
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> ArqRedis:
        # Cache the ARQ pool per event loop to avoid reconnect churn.
        current_loop = asyncio.get_running_loop()
        if self._redis is not None and (not self._owns_redis or self._redis_loop == current_loop):
            return self._redis
        async with self._lock:
            if self._redis is None or self._redis_loop != current_loop:
                self._redis = await create_pool(
                    RedisSettings.from_dsn(self._settings.redis_url),
                    default_queue_name=self._settings.webhook_queue_name,
                )
                self._redis_loop = current_loop
        return self._redis

    async def submit(self, delivery_id: str, delay_s: float = 0.0) -> bool:
        # Best effort: a lost publish is recovered by the durable sweep.
        defer = timedelta(seconds=max(0.0, float(delay_s)))
        try:
            redis = await self._get_pool()
            await redis.enqueue_job(
                DELIVER_WEBHOOK_TASK,
                delivery_id,
                _queue_name=self._settings.webhook_queue_name,
                _defer_by=defer if defer.total_seconds() > 0 else None,
            )
            return True
        except Exception as exc:  # noqa: BLE001 - keep enqueue best-effort and rely on the sweep.
            logger.warning("webhook_enqueue_failed delivery_id=%s", delivery_id, exc_info=exc)
            return False

    async def close(self) -> None:
        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
        self._redis = None
