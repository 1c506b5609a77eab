"""
Unfurl Coordinator
==================

Hands newly inserted items to a pluggable enrichment step (page metadata,
previews, and so on) without making the fetch cycle wait for it.

Submissions never block: when the queue is full the job is dropped and
logged. A bounded pool of asyncio workers calls the enricher; enricher
failures are logged and counted, never raised to the caller. Retry and
robots policy belong to the enricher.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from ..config.settings import UnfurlSettings
from ..utils.logging import get_logger_for_component
from ..utils.exceptions import ConfigurationError


Enricher = Callable[[int, str], Awaitable[None]]


@dataclass
class UnfurlStats:
    """Counters for one coordinator lifetime."""
    submitted: int = 0
    dropped: int = 0
    completed: int = 0
    failed: int = 0


class UnfurlCoordinator:
    """Bounded worker pool feeding (item_id, url) pairs to an enricher."""

    def __init__(self, enricher: Enricher, concurrency: int = 4, queue_size: int = 1000):
        """Initialize coordinator.

        Args:
            enricher: Async callable ``(item_id, url)`` doing the enrichment
            concurrency: Number of worker tasks
            queue_size: Pending jobs accepted before new ones are dropped
        """
        if concurrency < 1:
            raise ConfigurationError(
                f"Unfurl concurrency must be at least 1, got {concurrency}",
                config_key="unfurl.concurrency",
            )

        self.enricher = enricher
        self.concurrency = concurrency
        self.queue_size = queue_size
        self.stats = UnfurlStats()
        self.logger = get_logger_for_component("unfurl")

        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._closed = False

    @classmethod
    def from_settings(cls, settings: UnfurlSettings, enricher: Enricher) -> Optional["UnfurlCoordinator"]:
        """Build a coordinator from the unfurl settings section, or None when disabled."""
        if not settings.enabled:
            return None
        return cls(enricher, concurrency=settings.concurrency, queue_size=settings.queue_size)

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        """Start the worker tasks; must be called from a running event loop."""
        if self._workers:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._closed = False
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"unfurl-worker-{n}")
            for n in range(self.concurrency)
        ]
        self.logger.debug(f"Started {self.concurrency} unfurl workers")

    def submit(self, item_id: int, url: str) -> bool:
        """Queue an item for enrichment without blocking.

        Returns:
            True if queued, False if dropped (coordinator closed or full)
        """
        if self._closed or self._queue is None:
            self.stats.dropped += 1
            self.logger.debug(f"Unfurl coordinator not running, dropped item {item_id}")
            return False

        try:
            self._queue.put_nowait((item_id, url))
        except asyncio.QueueFull:
            self.stats.dropped += 1
            self.logger.warning(f"Unfurl queue full, dropped item {item_id}: {url}")
            return False

        self.stats.submitted += 1
        return True

    async def close(self) -> UnfurlStats:
        """Stop accepting work, drain the queue and stop the workers."""
        if not self._workers:
            self._closed = True
            return self.stats

        self._closed = True
        await self._queue.join()
        await self._stop_workers()
        self.logger.info(
            f"Unfurl finished: {self.stats.completed} enriched, "
            f"{self.stats.failed} failed, {self.stats.dropped} dropped"
        )
        return self.stats

    async def cancel(self) -> UnfurlStats:
        """Abort in-flight and queued enrichment."""
        self._closed = True
        if self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
                self._queue.task_done()
                self.stats.dropped += 1
        await self._stop_workers()
        return self.stats

    async def _stop_workers(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def _worker(self, number: int) -> None:
        while True:
            item_id, url = await self._queue.get()
            try:
                await self.enricher(item_id, url)
                self.stats.completed += 1
            except Exception as e:
                self.stats.failed += 1
                self.logger.warning(
                    f"Enrichment failed for item {item_id} ({url}): {e}",
                    extra={"item_id": item_id, "worker": number},
                )
            finally:
                self._queue.task_done()
