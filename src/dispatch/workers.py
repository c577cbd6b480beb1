"""Worker pool for one consumer binding.

A bounded queue sits between the message sources and ``concurrency``
worker tasks.  Each worker takes one message at a time and awaits
``Dispatcher.dispatch`` to completion before taking the next, so a slow
endpoint slows only that worker.  When the queue is full, feeders wait,
which pushes backpressure up to the source.

Shutdown is coordinated: feeders stop first, queued messages are
drained within a grace period, then the workers are stopped.
"""

from __future__ import annotations

import asyncio
import logging

from src.dispatch.router import Dispatcher
from src.dispatch.sources import MessageSource
from src.models.message import Message

logger = logging.getLogger(__name__)


class WorkerPool:
    """Bounded queue plus a fixed number of dispatch workers.

    Args:
        dispatcher:  Dispatcher for the pool's consumer binding.
        concurrency: Number of workers; defaults to the binding's value.
        queue_size:  Queue capacity; defaults to the binding's value.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        concurrency: int | None = None,
        queue_size: int | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.name = dispatcher.route.name
        self.concurrency = concurrency or dispatcher.route.concurrency
        self.queue: asyncio.Queue[Message] = asyncio.Queue(queue_size or dispatcher.route.queue_size)
        self._workers: list[asyncio.Task] = []
        self._feeders: list[asyncio.Task] = []
        self._accepting = False

        # Metrics
        self.messages_processed = 0
        self.deliveries_ok = 0
        self.deliveries_failed = 0
        self.worker_errors = 0
        self.source_errors = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        """Spawn the worker tasks; calling it twice is a no-op."""
        if self._workers:
            return
        self._accepting = True
        for index in range(self.concurrency):
            task = asyncio.create_task(self._worker(index + 1), name=f"worker:{self.name}:{index + 1}")
            self._workers.append(task)
        logger.info(
            "Started %d workers for consumer=%s source=%s",
            self.concurrency,
            self.name,
            self.dispatcher.route.source,
        )

    async def submit(self, message: Message) -> None:
        """Enqueue *message*, waiting while the queue is full."""
        if not self._accepting:
            raise RuntimeError(f"Worker pool '{self.name}' is not accepting messages")
        await self.queue.put(message)

    def attach(self, source: MessageSource) -> asyncio.Task:
        """Feed every message of *source* into the queue in a background task."""
        task = asyncio.create_task(self._feed(source), name=f"feeder:{self.name}")
        self._feeders.append(task)
        return task

    async def _feed(self, source: MessageSource) -> None:
        count = 0
        try:
            async for message in source:
                await self.submit(message)
                count += 1
        except Exception:
            # The feeder ends here; workers keep draining what was queued.
            self.source_errors += 1
            logger.exception("Source for consumer=%s failed after %d messages", self.name, count)
            return
        logger.info("Source for consumer=%s exhausted after %d messages", self.name, count)

    async def _worker(self, index: int) -> None:
        while True:
            message = await self.queue.get()
            try:
                report = await self.dispatcher.dispatch(message)
                self.deliveries_ok += report.delivered
                self.deliveries_failed += report.failed
            except Exception:
                self.worker_errors += 1
                logger.exception(
                    "Worker %s:%d failed on message from source=%s",
                    self.name,
                    index,
                    message.source,
                )
            finally:
                self.messages_processed += 1
                self.queue.task_done()

    async def join(self) -> None:
        """Wait until every attached source is exhausted and the queue is empty."""
        if self._feeders:
            await asyncio.gather(*self._feeders, return_exceptions=True)
        await self.queue.join()

    async def stop(self, grace: float = 10.0) -> None:
        """Stop feeders, drain queued messages, then stop the workers.

        Messages still queued after *grace* seconds are abandoned and any
        in-flight dispatch is cancelled.
        """
        self._accepting = False
        for task in self._feeders:
            task.cancel()
        await asyncio.gather(*self._feeders, return_exceptions=True)
        self._feeders.clear()

        if self._workers:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=grace)
            except TimeoutError:
                logger.warning(
                    "Consumer=%s did not drain within %.1fs, abandoning %d queued messages",
                    self.name,
                    grace,
                    self.queue.qsize(),
                )

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("Stopped workers for consumer=%s", self.name)

    def stats(self) -> dict:
        """Return a JSON-serializable snapshot for diagnostics."""
        return {
            "name": self.name,
            "source": self.dispatcher.route.source,
            "handler": self.dispatcher.handler.name,
            "breaker": self.dispatcher.handler.breaker_route(),
            "workers": len(self._workers),
            "queued": self.queue.qsize(),
            "messages_processed": self.messages_processed,
            "deliveries_ok": self.deliveries_ok,
            "deliveries_failed": self.deliveries_failed,
            "worker_errors": self.worker_errors,
            "source_errors": self.source_errors,
        }
