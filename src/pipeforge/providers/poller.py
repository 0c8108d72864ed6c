"""External task poller.

``poll_task`` is an ordinary awaitable: each wait is an ``asyncio.sleep``,
so cancelling the surrounding task interrupts it between attempts.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pipeforge.providers.status import TaskState, extract_error, extract_status, normalize_status

logger = logging.getLogger(__name__)

FetchStatus = Callable[[str], Awaitable[dict[str, Any]]]
OnAttempt = Callable[[int, dict[str, Any]], Awaitable[None]]


class TaskFailedError(RuntimeError):
    """The provider reported the task as failed."""

    def __init__(self, message: str, payload: dict[str, Any] | None = None):
        super().__init__(message)
        self.payload = payload or {}


class TaskTimeoutError(TimeoutError):
    """The provider never reported a terminal status within the budget."""


async def poll_task(
    fetch_status: FetchStatus,
    task_id: str,
    *,
    interval: float = 5.0,
    max_attempts: int = 60,
    deadline: float | None = None,
    on_attempt: OnAttempt | None = None,
) -> dict[str, Any]:
    """Poll ``fetch_status(task_id)`` until the task completes or fails.

    Returns the completed payload. Raises TaskFailedError when the provider
    reports failure, TaskTimeoutError after ``max_attempts`` or once
    ``deadline`` seconds have elapsed.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()

    for attempt in range(1, max_attempts + 1):
        payload = await fetch_status(task_id)
        state = normalize_status(extract_status(payload))

        if state == TaskState.COMPLETED:
            logger.debug("Task %s completed after %d attempts", task_id, attempt)
            return payload
        if state == TaskState.FAILED:
            raise TaskFailedError(extract_error(payload), payload)

        if on_attempt is not None:
            await on_attempt(attempt, payload)

        if attempt == max_attempts:
            break
        if deadline is not None and loop.time() - started >= deadline:
            break
        await asyncio.sleep(interval)

    budget = deadline if deadline is not None else max_attempts * interval
    raise TaskTimeoutError(f"Task timeout after {int(budget)} seconds")
