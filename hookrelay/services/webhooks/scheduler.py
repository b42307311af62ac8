from __future__ import annotations

import asyncio
from datetime import timedelta
import heapq
import itertools
import logging
import time
from typing import Callable, Generic, Protocol, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.core.clock import Clock, utc_now
from hookrelay.persistence.repos import deliveries as deliveries_repo
from hookrelay.services.webhooks.executor import DeliveryExecutor


logger = logging.getLogger(__name__)

T = TypeVar("T")


class DeliverySubmitter(Protocol):
    # Shared admission contract for the in-process scheduler and the ARQ queue.
    async def submit(self, delivery_id: str, delay_s: float = 0.0) -> bool: ...


class DelayQueue(Generic[T]):
    """Heap of items keyed by a monotonic due time.

    ``get`` suspends until the earliest item is due; pushing an earlier item
    wakes a waiting consumer so it can re-evaluate.
    """

    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        self._time_provider = time_provider or time.monotonic
        self._heap: list[tuple[float, int, T]] = []
        self._counter = itertools.count()
        self._changed = asyncio.Event()

    def __len__(self) -> int:
        return len(self._heap)

    def push(self, item: T, delay_s: float = 0.0) -> None:
        due = self._time_provider() + max(0.0, float(delay_s))
        heapq.heappush(self._heap, (due, next(self._counter), item))
        self._changed.set()

    async def get(self) -> T:
        while True:
            self._changed.clear()
            if self._heap:
                due, _seq, item = self._heap[0]
                wait_s = due - self._time_provider()
                if wait_s <= 0:
                    heapq.heappop(self._heap)
                    return item
                try:
                    await asyncio.wait_for(self._changed.wait(), timeout=wait_s)
                except asyncio.TimeoutError:
                    pass
            else:
                await self._changed.wait()


async def sweep_due_deliveries(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    submitter: DeliverySubmitter,
    limit: int,
    grace_s: float,
    clock: Clock | None = None,
) -> int:
    # Re-admit durable work whose in-memory or queued submission did not survive.
    now = (clock or utc_now)()
    async with session_factory() as session:
        delivery_ids = await deliveries_repo.list_due_delivery_ids(
            session,
            now=now,
            stale_before=now - timedelta(seconds=max(0.0, float(grace_s))),
            limit=limit,
        )
        if not delivery_ids:
            return 0
        await deliveries_repo.touch_deliveries(session, delivery_ids=delivery_ids, now=now)
        await session.commit()
    count = 0
    for delivery_id in delivery_ids:
        if await submitter.submit(delivery_id):
            count += 1
    if count:
        logger.info("webhook_sweep_admitted count=%s", count)
    return count


class DeliveryScheduler:
    """In-process bounded worker pool draining delivery ids.

    The queue is a fast path only: every id it holds is also recoverable by
    the periodic durable sweep.
    """

    def __init__(
        self,
        *,
        executor: DeliveryExecutor,
        session_factory: async_sessionmaker[AsyncSession],
        max_concurrency: int = 10,
        sweep_interval_s: float = 30.0,
        sweep_batch_size: int = 100,
        sweep_grace_s: float = 5.0,
        clock: Clock | None = None,
    ) -> None:
        self._executor = executor
        self._session_factory = session_factory
        self._max_concurrency = max(1, int(max_concurrency))
        self._sweep_interval_s = max(0.01, float(sweep_interval_s))
        self._sweep_batch_size = max(1, int(sweep_batch_size))
        self._sweep_grace_s = max(0.0, float(sweep_grace_s))
        self._clock = clock or utc_now
        self._ready: asyncio.Queue[str] = asyncio.Queue()
        self._delayed: DelayQueue[str] = DelayQueue()
        # Ids currently queued, delayed or executing; never admitted twice.
        self._admitted: set[str] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._tasks: list[asyncio.Task] = []
        self._in_flight = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def pending_count(self) -> int:
        return len(self._admitted)

    async def start(self, *, sweep: bool = True) -> None:
        if self._tasks:
            return
        for index in range(self._max_concurrency):
            self._tasks.append(asyncio.create_task(self._worker_loop(), name=f"webhook-worker-{index}"))
        self._tasks.append(asyncio.create_task(self._dispatch_loop(), name="webhook-delay-dispatch"))
        if sweep:
            self._tasks.append(asyncio.create_task(self._sweep_loop(), name="webhook-sweep"))
        logger.info("webhook_scheduler_started workers=%s sweep=%s", self._max_concurrency, sweep)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("webhook_scheduler_stopped pending=%s", len(self._admitted))

    async def submit(self, delivery_id: str, delay_s: float = 0.0) -> bool:
        if delivery_id in self._admitted:
            return False
        self._admitted.add(delivery_id)
        self._idle.clear()
        self._enqueue(delivery_id, delay_s)
        return True

    async def wait_idle(self) -> None:
        # Resolve once nothing is queued, delayed or executing.
        while self._admitted:
            await self._idle.wait()

    def _enqueue(self, delivery_id: str, delay_s: float) -> None:
        if delay_s > 0:
            self._delayed.push(delivery_id, delay_s)
        else:
            self._ready.put_nowait(delivery_id)

    async def sweep_once(self) -> int:
        return await sweep_due_deliveries(
            session_factory=self._session_factory,
            submitter=self,
            limit=self._sweep_batch_size,
            grace_s=self._sweep_grace_s,
            clock=self._clock,
        )

    def _release(self, delivery_id: str) -> None:
        self._admitted.discard(delivery_id)
        if not self._admitted:
            self._idle.set()

    async def _worker_loop(self) -> None:
        while True:
            delivery_id = await self._ready.get()
            self._in_flight += 1
            outcome = None
            try:
                outcome = await self._executor.execute(delivery_id)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - keep the worker alive; the sweep recovers the delivery.
                logger.exception("webhook_delivery_execution_failed delivery_id=%s", delivery_id)
            finally:
                self._in_flight -= 1
                self._ready.task_done()
            # Retries stay admitted while they wait in the delay queue.
            if outcome is not None and outcome.needs_resubmit:
                self._enqueue(delivery_id, outcome.retry_in_s or 0.0)
            else:
                self._release(delivery_id)

    async def _dispatch_loop(self) -> None:
        while True:
            delivery_id = await self._delayed.get()
            self._ready.put_nowait(delivery_id)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_s)
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - keep sweeping while surfacing failures in logs.
                logger.exception("webhook_sweep_failed")
