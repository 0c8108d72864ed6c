"""Tests for pipeline topics and the EventEmitter."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from pipeforge.events import (
    SUBSCRIBER_QUEUE_SIZE,
    EventEmitter,
    LogEvent,
    ProgressEvent,
    StepCompletedEvent,
    TopicHub,
)
from pipeforge.pipeline.models import LogType, Pipeline
from pipeforge.pipeline.registry import PipelineRegistry


@pytest.fixture
def hub():
    return TopicHub()


@pytest_asyncio.fixture
async def stored_pipeline(pipeline_registry: PipelineRegistry, project):
    pipeline = Pipeline(pipeline_id="pl-ev", project_id="prj-1")
    await pipeline_registry.create_pipeline(pipeline)
    return pipeline


# ── Topics ───────────────────────────────────────────────────────────────────


class TestTopics:
    def test_topic_name(self, hub):
        assert hub.topic("pl-1").name == "pipeline.pl-1"

    def test_hub_reuses_topics(self, hub):
        assert hub.topic("pl-1") is hub.topic("pl-1")

    @pytest.mark.asyncio
    async def test_publish_reaches_subscribers(self, hub):
        topic = hub.topic("pl-1")
        q1 = await topic.subscribe()
        q2 = await topic.subscribe()

        await topic.publish(ProgressEvent(pipeline_id="pl-1", step="x", progress=5))

        assert q1.get_nowait().progress == 5
        assert q2.get_nowait().progress == 5

    @pytest.mark.asyncio
    async def test_full_queue_is_dropped(self, hub):
        topic = hub.topic("pl-1")
        queue = await topic.subscribe()
        for _ in range(SUBSCRIBER_QUEUE_SIZE):
            queue.put_nowait(ProgressEvent(pipeline_id="pl-1"))

        await topic.publish(ProgressEvent(pipeline_id="pl-1"))
        assert topic.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_discard_keeps_topics_with_subscribers(self, hub):
        topic = hub.topic("pl-1")
        queue = await topic.subscribe()
        hub.discard("pl-1")
        assert hub.topic("pl-1") is topic

        await topic.unsubscribe(queue)
        hub.discard("pl-1")
        assert hub.topic("pl-1") is not topic

    def test_sse_data_is_json(self):
        event = StepCompletedEvent(
            pipeline_id="pl-1", step="a", result={"k": 1}, next_step="b"
        )
        data = json.loads(event.to_sse_data())
        assert data["event"] == "pipeline.step.completed"
        assert data["next_step"] == "b"


# ── Emitter ──────────────────────────────────────────────────────────────────


class TestEventEmitter:
    @pytest.mark.asyncio
    async def test_emit_persists_then_publishes(
        self, hub, pipeline_registry: PipelineRegistry, stored_pipeline
    ):
        emitter = EventEmitter(pipeline_registry, hub.topic("pl-ev"), "pl-ev")
        queue = await hub.topic("pl-ev").subscribe()

        entry = await emitter.emit("theme_director", LogType.THINKING, "Thinking...", {"a": 1})

        logs = await pipeline_registry.get_logs("pl-ev")
        assert len(logs) == 1
        assert logs[0].id == entry.id
        event = queue.get_nowait()
        assert isinstance(event, LogEvent)
        assert event.log_id == entry.id
        assert event.log_type == LogType.THINKING

    @pytest.mark.asyncio
    async def test_progress_is_clamped_and_stored(
        self, hub, pipeline_registry: PipelineRegistry, stored_pipeline
    ):
        emitter = EventEmitter(pipeline_registry, hub.topic("pl-ev"), "pl-ev")
        queue = await hub.topic("pl-ev").subscribe()

        assert await emitter.progress("theme_director", 150) == 100
        assert await emitter.progress("theme_director", -5) == 0

        fetched = await pipeline_registry.get_pipeline("pl-ev")
        assert fetched.current_step_progress == 0
        assert queue.get_nowait().progress == 100
        assert queue.get_nowait().progress == 0

    @pytest.mark.asyncio
    async def test_publish_failure_is_not_raised(
        self, hub, pipeline_registry: PipelineRegistry, stored_pipeline
    ):
        topic = hub.topic("pl-ev")
        topic.publish = AsyncMock(side_effect=RuntimeError("broker down"))
        emitter = EventEmitter(pipeline_registry, topic, "pl-ev")

        entry = await emitter.emit("orchestrator", LogType.INFO, "still stored")
        assert entry.id is not None
        assert await pipeline_registry.count_logs("pl-ev") == 1

    @pytest.mark.asyncio
    async def test_persistence_failure_propagates(self, hub):
        registry = AsyncMock()
        registry.add_log.side_effect = RuntimeError("disk full")
        emitter = EventEmitter(registry, hub.topic("pl-x"), "pl-x")
        queue = await hub.topic("pl-x").subscribe()

        with pytest.raises(RuntimeError, match="disk full"):
            await emitter.emit("orchestrator", LogType.INFO, "lost")
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_step_completed_event(self, hub):
        emitter = EventEmitter(AsyncMock(), hub.topic("pl-x"), "pl-x")
        queue = await hub.topic("pl-x").subscribe()
        await emitter.step_completed("a", {"r": 1}, "b")
        event = await asyncio.wait_for(queue.get(), timeout=1)
        assert event.step == "a"
        assert event.next_step == "b"
