"""
Dispatch strategies for stored webhook events.

QueuedDispatcher hands event ids to background workers; SyncDispatcher runs
the processor inline. Both expose the same interface so the intake pipeline
does not care which one is active.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Protocol, Set

from mindbody.config import Settings
from mindbody.utils.logger import get_logger

logger = get_logger(__name__)

Processor = Callable[[int], Awaitable[bool]]


class Dispatcher(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def enqueue(self, event_id: int) -> None: ...

    async def run_now(self, event_id: int) -> bool: ...

    def schedule(self, event_id: int, delay: float) -> None: ...


class QueuedDispatcher:
    """asyncio.Queue with a fixed pool of worker tasks.

    Events are picked up in arrival order by whichever worker is free, so
    completion order across events is not guaranteed.
    """

    def __init__(self, processor: Processor, workers: int = 1):
        self._processor = processor
        self._worker_count = max(1, workers)
        self._queue: Optional[asyncio.Queue[int]] = None
        self._tasks: List[asyncio.Task] = []
        self._timers: Set[asyncio.TimerHandle] = set()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def scheduled_count(self) -> int:
        return len(self._timers)

    async def start(self) -> None:
        if self._tasks:
            return
        self._queue = asyncio.Queue()
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"webhook-worker-{n}")
            for n in range(self._worker_count)
        ]
        logger.info(f"Webhook dispatcher started with {self._worker_count} worker(s)")

    async def stop(self) -> None:
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info("Webhook dispatcher stopped")
        self._tasks = []
        self._queue = None

    async def enqueue(self, event_id: int) -> None:
        if not self.running:
            await self.start()
        assert self._queue is not None
        self._queue.put_nowait(event_id)
        logger.debug(f"Queued webhook event id={event_id}")

    async def run_now(self, event_id: int) -> bool:
        return await self._processor(event_id)

    def schedule(self, event_id: int, delay: float) -> None:
        """Re-enqueue the event after delay seconds."""
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def fire() -> None:
            self._timers.discard(handle)
            if self._queue is not None:
                self._queue.put_nowait(event_id)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)
        logger.info(f"Scheduled retry for webhook event id={event_id} in {delay}s")

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def _worker(self, number: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            event_id = await queue.get()
            try:
                await self._processor(event_id)
            except Exception as e:
                logger.exception(f"Worker {number} failed on webhook event id={event_id}: {e}")
            finally:
                queue.task_done()


class SyncDispatcher:
    """Processes events inline; delayed retries are left to process-pending."""

    def __init__(self, processor: Processor):
        self._processor = processor

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def enqueue(self, event_id: int) -> None:
        await self._processor(event_id)

    async def run_now(self, event_id: int) -> bool:
        return await self._processor(event_id)

    def schedule(self, event_id: int, delay: float) -> None:
        logger.info(
            f"Webhook event id={event_id} is due for retry in {delay}s; "
            "it will be picked up by process-pending"
        )


def build_dispatcher(settings: Settings, processor: Processor) -> Dispatcher:
    if settings.queue_webhooks:
        return QueuedDispatcher(processor, workers=settings.webhook_workers)
    return SyncDispatcher(processor)
