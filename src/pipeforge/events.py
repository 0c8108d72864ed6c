"""Pipeline events — persisted logs plus best-effort live fan-out.

Provides:
- ProgressEvent, LogEvent, StepCompletedEvent models with SSE formatting
- PipelineTopic: per-pipeline subscriber queues
- TopicHub: owns topics, passed explicitly to whoever publishes or subscribes
- EventEmitter: the only writer of PipelineLog rows and current_step_progress

Live delivery is at-most-once. Observers that miss messages refetch state.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field

from pipeforge.pipeline.models import LogType, PipelineLog

if TYPE_CHECKING:
    from pipeforge.pipeline.registry import PipelineRegistry

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 1000


# ── Event Models ─────────────────────────────────────────────────────────────


class _PipelineEvent(BaseModel):
    pipeline_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_sse_data(self) -> str:
        """Format for Server-Sent Events."""
        return json.dumps(self.model_dump(mode="json"))


class ProgressEvent(_PipelineEvent):
    event: Literal["pipeline.progress"] = "pipeline.progress"
    step: str | None = None
    progress: int = 0
    status: str = "running"
    message: str | None = None


class LogEvent(_PipelineEvent):
    event: Literal["pipeline.log"] = "pipeline.log"
    log_id: int | None = None
    agent_type: str
    log_type: LogType
    message: str
    data: dict[str, Any] | None = None


class StepCompletedEvent(_PipelineEvent):
    event: Literal["pipeline.step.completed"] = "pipeline.step.completed"
    step: str
    result: dict[str, Any] = Field(default_factory=dict)
    next_step: str | None = None


PipelineEvent = ProgressEvent | LogEvent | StepCompletedEvent


# ── Topics ───────────────────────────────────────────────────────────────────


class PipelineTopic:
    """Broadcast channel for one pipeline, named ``pipeline.<id>``."""

    def __init__(self, pipeline_id: str):
        self.pipeline_id = pipeline_id
        self.name = f"pipeline.{pipeline_id}"
        self._subscribers: list[asyncio.Queue[PipelineEvent]] = []
        self._lock = asyncio.Lock()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: PipelineEvent) -> None:
        async with self._lock:
            dead = []
            for queue in self._subscribers:
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    dead.append(queue)
            # Slow or disconnected consumers are dropped
            for q in dead:
                self._subscribers.remove(q)

    async def subscribe(self) -> asyncio.Queue[PipelineEvent]:
        queue: asyncio.Queue[PipelineEvent] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        async with self._lock:
            self._subscribers.append(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue[PipelineEvent]) -> None:
        async with self._lock:
            if queue in self._subscribers:
                self._subscribers.remove(queue)


class TopicHub:
    """Owns one PipelineTopic per pipeline id."""

    def __init__(self) -> None:
        self._topics: dict[str, PipelineTopic] = {}

    def topic(self, pipeline_id: str) -> PipelineTopic:
        if pipeline_id not in self._topics:
            self._topics[pipeline_id] = PipelineTopic(pipeline_id)
        return self._topics[pipeline_id]

    def discard(self, pipeline_id: str) -> None:
        topic = self._topics.get(pipeline_id)
        if topic is not None and topic.subscriber_count == 0:
            del self._topics[pipeline_id]


# ── Emitter ──────────────────────────────────────────────────────────────────


class EventEmitter:
    """Writes pipeline history and publishes it to the pipeline's topic.

    Persistence errors propagate to the caller. Publication errors are
    logged and never raised.
    """

    def __init__(self, registry: PipelineRegistry, topic: PipelineTopic, pipeline_id: str):
        self.registry = registry
        self.topic = topic
        self.pipeline_id = pipeline_id

    async def emit(
        self,
        agent_type: str,
        log_type: LogType,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> PipelineLog:
        entry = await self.registry.add_log(
            PipelineLog(
                pipeline_id=self.pipeline_id,
                agent_type=agent_type,
                log_type=log_type,
                message=message,
                data=data,
            )
        )
        await self._publish(
            LogEvent(
                pipeline_id=self.pipeline_id,
                log_id=entry.id,
                agent_type=agent_type,
                log_type=log_type,
                message=message,
                data=data,
                timestamp=entry.created_at,
            )
        )
        return entry

    async def progress(
        self,
        step: str | None,
        value: int,
        status: str = "running",
        message: str | None = None,
    ) -> int:
        """Record step progress. Values outside 0–100 are clamped."""
        value = max(0, min(100, int(value)))
        await self.registry.update_progress(self.pipeline_id, value)
        await self._publish(
            ProgressEvent(
                pipeline_id=self.pipeline_id,
                step=step,
                progress=value,
                status=status,
                message=message,
            )
        )
        return value

    async def step_completed(
        self, step: str, result: dict[str, Any], next_step: str | None
    ) -> None:
        await self._publish(
            StepCompletedEvent(
                pipeline_id=self.pipeline_id,
                step=step,
                result=result,
                next_step=next_step,
            )
        )

    async def _publish(self, event: PipelineEvent) -> None:
        try:
            await self.topic.publish(event)
        except Exception:
            logger.warning(
                "Failed to publish %s on %s", event.event, self.topic.name, exc_info=True
            )
