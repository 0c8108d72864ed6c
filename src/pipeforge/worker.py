"""In-process work queue for pipeline steps and webhook reconciliation.

A fixed pool of consumer tasks pulls ``WorkItem`` units off an asyncio
queue. A unit that fails with a retryable error is put back after its
backoff until it runs out of tries. Anything else is logged and dropped.

A worker stays occupied while a step polls a provider, so ``concurrency``
bounds how many steps can wait on external tasks at once.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pipeforge.providers.errors import ProviderError
from pipeforge.storage import StorageError

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[Any]]


@dataclass
class WorkItem:
    """One unit of queued work."""

    name: str
    handler: Handler
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)
    max_tries: int = 1
    backoff: float = 0.0  # seconds before a retry is re-enqueued
    attempt: int = 0


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (StorageError, ProviderError)):
        return exc.retryable
    return False


class WorkQueue:
    """Bounded pool of consumers over an asyncio queue."""

    def __init__(self, concurrency: int = 4):
        self.concurrency = max(1, concurrency)
        self._queue: asyncio.Queue[WorkItem] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._retries: set[asyncio.Task] = set()
        self._running = False

    @property
    def pending(self) -> int:
        return self._queue.qsize() + len(self._retries)

    async def enqueue(
        self,
        name: str,
        handler: Handler,
        *args: Any,
        max_tries: int = 1,
        backoff: float = 0.0,
        **kwargs: Any,
    ) -> WorkItem:
        item = WorkItem(
            name=name,
            handler=handler,
            args=args,
            kwargs=kwargs,
            max_tries=max(1, max_tries),
            backoff=backoff,
        )
        await self._queue.put(item)
        logger.debug("Enqueued %s", name)
        return item

    async def start(self) -> None:
        self._running = True
        self._workers = [
            asyncio.create_task(self._consumer_loop(), name=f"pipeforge-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Work queue started with %d workers", self.concurrency)

    async def stop(self) -> None:
        self._running = False
        tasks = [*self._workers, *self._retries]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._retries.clear()
        logger.info("Work queue stopped")

    async def join(self) -> None:
        """Wait until every queued item, including scheduled retries, is done."""
        while True:
            await self._queue.join()
            if not self._retries:
                return
            await asyncio.gather(*list(self._retries), return_exceptions=True)

    async def _consumer_loop(self) -> None:
        while self._running:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            try:
                await self.run_item(item)
            finally:
                self._queue.task_done()

    async def run_item(self, item: WorkItem) -> bool:
        """Run one item. Returns True on success.

        A retryable failure with tries left schedules the item again.
        """
        item.attempt += 1
        try:
            await item.handler(*item.args, **item.kwargs)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if is_retryable(exc) and item.attempt < item.max_tries:
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.0fs: %s",
                    item.name,
                    item.attempt,
                    item.max_tries,
                    item.backoff,
                    exc,
                )
                self._schedule_retry(item)
            else:
                logger.exception(
                    "%s failed after %d attempt(s)", item.name, item.attempt
                )
            return False

    def _schedule_retry(self, item: WorkItem) -> None:
        task = asyncio.create_task(self._requeue(item), name=f"retry-{item.name}")
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def _requeue(self, item: WorkItem) -> None:
        if item.backoff > 0:
            await asyncio.sleep(item.backoff)
        await self._queue.put(item)
