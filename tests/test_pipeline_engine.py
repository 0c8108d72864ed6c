"""Tests for the PipelineEngine step state machine.

Executors are replaced with small fakes so the tests exercise sequencing,
control operations and failure handling without any provider.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from pipeforge.agents import AgentServices, StepError
from pipeforge.events import TopicHub
from pipeforge.pipeline import steps
from pipeforge.pipeline.engine import (
    CANCELLED_MESSAGE,
    InvalidPipelineState,
    PipelineEngine,
    PipelineNotFound,
)
from pipeforge.pipeline.models import (
    LogType,
    PipelineMode,
    PipelineStatus,
    PipelineType,
    StepStatus,
)

MUSIC_VIDEO_STEPS = [
    steps.SONG_ARCHITECT,
    steps.SUNO_EXPERT,
    steps.SONG_SELECTOR,
    steps.VISUAL_DESIGNER,
]


class Recorder:
    """Fake executors for every music video step, recording their inputs."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.hooks: dict[str, object] = {}

    def executors(self) -> dict:
        return {step: self._make(step) for step in MUSIC_VIDEO_STEPS}

    def _make(self, step: str):
        async def _execute(ctx, inputs):
            self.calls.append((step, inputs))
            await ctx.progress(50)
            hook = self.hooks.get(step)
            if hook is not None:
                await hook()
            return {"step": step, "song_title": "Glow", "hook": "we glow"}

        return _execute

    @property
    def steps_run(self) -> list[str]:
        return [step for step, _ in self.calls]


def make_engine(registry, executors, **overrides) -> PipelineEngine:
    services = AgentServices(llm=MagicMock(), kie=MagicMock())
    hub = overrides.pop("hub", None) or TopicHub()
    return PipelineEngine(registry, hub, services, executors=executors, **overrides)


@pytest.fixture
def recorder():
    return Recorder()


@pytest_asyncio.fixture
async def engine(pipeline_registry, project, recorder):
    return make_engine(pipeline_registry, recorder.executors())


async def create(engine, mode=PipelineMode.AUTO, **config):
    return await engine.create_pipeline(
        "prj-1", PipelineType.MUSIC_VIDEO, mode, config or {"song_brief": "a summer anthem"}
    )


async def messages(engine, pipeline_id, agent_type=steps.ORCHESTRATOR) -> list[str]:
    logs = await engine.get_logs(pipeline_id, agent_type=agent_type)
    return [entry.message for entry in logs]


# ── Create / Start ───────────────────────────────────────────────────────────


class TestCreate:
    @pytest.mark.asyncio
    async def test_new_pipeline_is_pending(self, engine):
        pipeline = await create(engine)
        assert pipeline.pipeline_id.startswith("pl-")
        assert pipeline.status == PipelineStatus.PENDING
        assert pipeline.current_step is None
        assert list(pipeline.steps_state) == MUSIC_VIDEO_STEPS
        assert all(s.status == StepStatus.PENDING for s in pipeline.steps_state.values())

    @pytest.mark.asyncio
    async def test_one_active_pipeline_per_project(self, engine):
        await create(engine)
        with pytest.raises(InvalidPipelineState, match="already has an active pipeline"):
            await create(engine)

    @pytest.mark.asyncio
    async def test_unknown_pipeline(self, engine):
        with pytest.raises(PipelineNotFound, match="Pipeline not found: pl-missing"):
            await engine.get_pipeline("pl-missing")


class TestStart:
    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, engine):
        pipeline = await create(engine)
        await engine.start_pipeline(pipeline.pipeline_id)
        with pytest.raises(InvalidPipelineState) as exc_info:
            await engine.start_pipeline(pipeline.pipeline_id)
        assert exc_info.value.current_status == PipelineStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_custom_dispatcher_receives_first_step(self, pipeline_registry, project, recorder):
        dispatched = []

        async def dispatcher(pipeline_id, step):
            dispatched.append((pipeline_id, step))

        engine = make_engine(pipeline_registry, recorder.executors(), dispatcher=dispatcher)
        pipeline = await create(engine)
        started = await engine.start_pipeline(pipeline.pipeline_id)

        assert dispatched == [(pipeline.pipeline_id, steps.SONG_ARCHITECT)]
        assert started.status == PipelineStatus.RUNNING
        assert started.current_step == steps.SONG_ARCHITECT
        assert started.started_at is not None
        assert recorder.calls == []


# ── Auto Mode ────────────────────────────────────────────────────────────────


class TestAutoMode:
    @pytest.mark.asyncio
    async def test_runs_every_step_in_order(self, engine, recorder):
        pipeline = await create(engine)
        await engine.start_pipeline(pipeline.pipeline_id)

        done = await engine.get_pipeline(pipeline.pipeline_id)
        assert recorder.steps_run == MUSIC_VIDEO_STEPS
        assert done.status == PipelineStatus.COMPLETED
        assert done.current_step == steps.VISUAL_DESIGNER
        assert done.completed_at is not None
        for step in MUSIC_VIDEO_STEPS:
            state = done.get_step_state(step)
            assert state.status == StepStatus.COMPLETED
            assert state.result["step"] == step

    @pytest.mark.asyncio
    async def test_results_flow_into_later_inputs(self, engine, recorder):
        pipeline = await create(engine)
        await engine.start_pipeline(pipeline.pipeline_id)

        inputs = dict(recorder.calls)
        assert inputs[steps.SONG_ARCHITECT] == {"song_brief": "a summer anthem"}
        assert inputs[steps.SUNO_EXPERT]["song_concept"]["step"] == steps.SONG_ARCHITECT
        assert inputs[steps.VISUAL_DESIGNER]["hook"] == "we glow"

    @pytest.mark.asyncio
    async def test_orchestrator_logs(self, engine):
        pipeline = await create(engine)
        await engine.start_pipeline(pipeline.pipeline_id)

        logged = await messages(engine, pipeline.pipeline_id)
        assert logged == ["Pipeline started in auto mode", "Pipeline completed successfully"]

    @pytest.mark.asyncio
    async def test_live_events_published(self, pipeline_registry, project, recorder):
        hub = TopicHub()
        engine = make_engine(pipeline_registry, recorder.executors(), hub=hub)
        pipeline = await create(engine)
        queue = await hub.topic(pipeline.pipeline_id).subscribe()

        await engine.start_pipeline(pipeline.pipeline_id)

        events = []
        while not queue.empty():
            events.append(queue.get_nowait())
        completed = [e for e in events if e.event == "pipeline.step.completed"]
        assert [e.step for e in completed] == MUSIC_VIDEO_STEPS[:-1]
        assert completed[0].next_step == steps.SUNO_EXPERT
        assert events[-1].event == "pipeline.progress"
        assert events[-1].status == "completed"
        assert events[-1].progress == 100


# ── Manual Mode ──────────────────────────────────────────────────────────────


class TestManualMode:
    @pytest.mark.asyncio
    async def test_start_runs_only_first_step(self, engine, recorder):
        pipeline = await create(engine, PipelineMode.MANUAL)
        started = await engine.start_pipeline(pipeline.pipeline_id)

        assert recorder.steps_run == [steps.SONG_ARCHITECT]
        assert started.status == PipelineStatus.RUNNING
        assert started.current_step == steps.SUNO_EXPERT
        assert started.get_step_state(steps.SUNO_EXPERT).status == StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_run_step_advances_one_at_a_time(self, engine, recorder):
        pipeline = await create(engine, PipelineMode.MANUAL)
        await engine.start_pipeline(pipeline.pipeline_id)

        after = await engine.run_step(pipeline.pipeline_id)
        assert recorder.steps_run == [steps.SONG_ARCHITECT, steps.SUNO_EXPERT]
        assert after.current_step == steps.SONG_SELECTOR

        await engine.run_step(pipeline.pipeline_id, steps.SONG_SELECTOR)
        done = await engine.run_step(pipeline.pipeline_id, steps.VISUAL_DESIGNER)
        assert done.status == PipelineStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_run_step_rejects_other_steps(self, engine):
        pipeline = await create(engine, PipelineMode.MANUAL)
        await engine.start_pipeline(pipeline.pipeline_id)

        with pytest.raises(InvalidPipelineState, match="is not the current step"):
            await engine.run_step(pipeline.pipeline_id, steps.VISUAL_DESIGNER)
        with pytest.raises(InvalidPipelineState, match="Invalid step"):
            await engine.run_step(pipeline.pipeline_id, steps.THEME_DIRECTOR)

    @pytest.mark.asyncio
    async def test_run_step_requires_manual_mode(self, pipeline_registry, project, recorder):
        async def dispatcher(pipeline_id, step):
            return None

        engine = make_engine(pipeline_registry, recorder.executors(), dispatcher=dispatcher)
        pipeline = await create(engine)
        await engine.start_pipeline(pipeline.pipeline_id)
        with pytest.raises(InvalidPipelineState, match="not in manual mode"):
            await engine.run_step(pipeline.pipeline_id)

    @pytest.mark.asyncio
    async def test_run_step_requires_running(self, engine):
        pipeline = await create(engine, PipelineMode.MANUAL)
        with pytest.raises(InvalidPipelineState, match="not running"):
            await engine.run_step(pipeline.pipeline_id)


# ── Failure ──────────────────────────────────────────────────────────────────


class TestFailure:
    @pytest.mark.asyncio
    async def test_step_error_fails_pipeline(self, engine, recorder):
        async def boom():
            raise StepError("Suno generation failed: quota")

        recorder.hooks[steps.SUNO_EXPERT] = boom
        pipeline = await create(engine)
        await engine.start_pipeline(pipeline.pipeline_id)

        failed = await engine.get_pipeline(pipeline.pipeline_id)
        assert failed.status == PipelineStatus.FAILED
        assert failed.error_message == "Suno generation failed: quota"
        assert failed.completed_at is not None
        assert failed.current_step == steps.SUNO_EXPERT
        state = failed.get_step_state(steps.SUNO_EXPERT)
        assert state.status == StepStatus.FAILED
        assert state.error == "Suno generation failed: quota"
        assert failed.get_step_state(steps.SONG_SELECTOR).status == StepStatus.PENDING
        assert recorder.steps_run == [steps.SONG_ARCHITECT, steps.SUNO_EXPERT]

        logged = await messages(engine, pipeline.pipeline_id)
        assert "Pipeline failed: Suno generation failed: quota" in logged

    @pytest.mark.asyncio
    async def test_error_log_names_exception(self, engine, recorder):
        async def boom():
            raise TimeoutError()

        recorder.hooks[steps.SONG_ARCHITECT] = boom
        pipeline = await create(engine)
        await engine.start_pipeline(pipeline.pipeline_id)

        failed = await engine.get_pipeline(pipeline.pipeline_id)
        assert failed.error_message == "TimeoutError"
        errors = await engine.get_logs(
            pipeline.pipeline_id, agent_type=steps.SONG_ARCHITECT, log_type=LogType.ERROR
        )
        assert errors[0].data == {"exception": "TimeoutError"}

    @pytest.mark.asyncio
    async def test_missing_executor(self, pipeline_registry, project):
        engine = make_engine(pipeline_registry, {})
        pipeline = await create(engine)
        await engine.start_pipeline(pipeline.pipeline_id)

        failed = await engine.get_pipeline(pipeline.pipeline_id)
        assert failed.status == PipelineStatus.FAILED
        assert failed.error_message == "No executor registered for step 'song_architect'"

    @pytest.mark.asyncio
    async def test_execute_step_for_missing_pipeline_is_discarded(self, engine, recorder):
        await engine.execute_step("pl-missing", steps.SONG_ARCHITECT)
        assert recorder.calls == []


# ── Pause / Resume ───────────────────────────────────────────────────────────


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_mid_step_stops_after_that_step(self, engine, recorder):
        pipeline = await create(engine)
        pid = pipeline.pipeline_id

        async def pause():
            await engine.pause_pipeline(pid)

        recorder.hooks[steps.SUNO_EXPERT] = pause
        await engine.start_pipeline(pid)

        paused = await engine.get_pipeline(pid)
        assert paused.status == PipelineStatus.PAUSED
        assert paused.get_step_state(steps.SUNO_EXPERT).status == StepStatus.COMPLETED
        assert paused.current_step == steps.SONG_SELECTOR
        assert recorder.steps_run == [steps.SONG_ARCHITECT, steps.SUNO_EXPERT]

        recorder.hooks.clear()
        resumed = await engine.resume_pipeline(pid)
        assert resumed.status == PipelineStatus.COMPLETED
        assert recorder.steps_run == MUSIC_VIDEO_STEPS

    @pytest.mark.asyncio
    async def test_paused_pipeline_defers_steps(self, engine, recorder):
        pipeline = await create(engine, PipelineMode.MANUAL)
        pid = pipeline.pipeline_id
        await engine.start_pipeline(pid)
        await engine.pause_pipeline(pid)

        await engine.execute_step(pid, steps.SUNO_EXPERT)
        state = await engine.get_step_state(pid, steps.SUNO_EXPERT)
        assert state.status == StepStatus.PENDING
        assert recorder.steps_run == [steps.SONG_ARCHITECT]

    @pytest.mark.asyncio
    async def test_pause_requires_running(self, engine):
        pipeline = await create(engine)
        with pytest.raises(InvalidPipelineState, match="Pipeline is not running"):
            await engine.pause_pipeline(pipeline.pipeline_id)

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, engine):
        pipeline = await create(engine)
        with pytest.raises(InvalidPipelineState, match="Pipeline is not paused"):
            await engine.resume_pipeline(pipeline.pipeline_id)


# ── Cancel ───────────────────────────────────────────────────────────────────


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_mid_step_discards_result(self, engine, recorder):
        pipeline = await create(engine)
        pid = pipeline.pipeline_id

        async def cancel():
            await engine.cancel_pipeline(pid)

        recorder.hooks[steps.SUNO_EXPERT] = cancel
        await engine.start_pipeline(pid)

        cancelled = await engine.get_pipeline(pid)
        assert cancelled.status == PipelineStatus.FAILED
        assert cancelled.error_message == CANCELLED_MESSAGE
        state = cancelled.get_step_state(steps.SUNO_EXPERT)
        assert state.status == StepStatus.FAILED
        assert state.error == CANCELLED_MESSAGE
        assert state.result is None
        assert recorder.steps_run == [steps.SONG_ARCHITECT, steps.SUNO_EXPERT]

    @pytest.mark.asyncio
    async def test_cancel_pending_pipeline(self, engine):
        pipeline = await create(engine)
        cancelled = await engine.cancel_pipeline(pipeline.pipeline_id)
        assert cancelled.status == PipelineStatus.FAILED
        assert cancelled.completed_at is not None
        assert CANCELLED_MESSAGE in await messages(engine, pipeline.pipeline_id)

    @pytest.mark.asyncio
    async def test_cancel_finished_pipeline_rejected(self, engine):
        pipeline = await create(engine)
        await engine.start_pipeline(pipeline.pipeline_id)
        with pytest.raises(InvalidPipelineState, match="already finished"):
            await engine.cancel_pipeline(pipeline.pipeline_id)


# ── Retry ────────────────────────────────────────────────────────────────────


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_resumes_from_failed_step(self, engine, recorder):
        async def boom():
            raise StepError("No song versions available for selection")

        recorder.hooks[steps.SONG_SELECTOR] = boom
        pipeline = await create(engine)
        await engine.start_pipeline(pipeline.pipeline_id)
        recorder.hooks.clear()

        retried = await engine.retry_pipeline(pipeline.pipeline_id)

        assert retried.pipeline_id != pipeline.pipeline_id
        assert retried.status == PipelineStatus.COMPLETED
        assert recorder.steps_run == [
            steps.SONG_ARCHITECT,
            steps.SUNO_EXPERT,
            steps.SONG_SELECTOR,
            steps.SONG_SELECTOR,
            steps.VISUAL_DESIGNER,
        ]
        original = await engine.get_pipeline(pipeline.pipeline_id)
        assert original.status == PipelineStatus.FAILED

        logged = await messages(engine, retried.pipeline_id)
        assert logged[0] == f"Retrying pipeline {pipeline.pipeline_id} from step 'song_selector'"

    @pytest.mark.asyncio
    async def test_only_failed_pipelines_retry(self, engine):
        pipeline = await create(engine)
        with pytest.raises(InvalidPipelineState, match="Only failed pipelines"):
            await engine.retry_pipeline(pipeline.pipeline_id)


# ── Queries ──────────────────────────────────────────────────────────────────


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_steps_marks_current(self, engine):
        pipeline = await create(engine, PipelineMode.MANUAL)
        await engine.start_pipeline(pipeline.pipeline_id)

        listed = await engine.list_steps(pipeline.pipeline_id)
        assert [s["step"] for s in listed] == MUSIC_VIDEO_STEPS
        assert [s["is_current"] for s in listed] == [False, True, False, False]
        assert listed[0]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_get_step_state_invalid_step(self, engine):
        pipeline = await create(engine)
        with pytest.raises(InvalidPipelineState, match="Invalid step"):
            await engine.get_step_state(pipeline.pipeline_id, steps.THEME_DIRECTOR)

    @pytest.mark.asyncio
    async def test_list_pipelines(self, engine):
        pipeline = await create(engine)
        listed = await engine.list_pipelines("prj-1")
        assert [p.pipeline_id for p in listed] == [pipeline.pipeline_id]

    @pytest.mark.asyncio
    async def test_step_logs_are_counted(self, engine):
        pipeline = await create(engine, PipelineMode.MANUAL)
        await engine.start_pipeline(pipeline.pipeline_id)
        count = await engine.count_logs(
            pipeline.pipeline_id, agent_type=steps.SONG_ARCHITECT, log_type=LogType.PROGRESS
        )
        assert count == 1


# ── Lock Bookkeeping ─────────────────────────────────────────────────────────


class TestLocks:
    @pytest.mark.asyncio
    async def test_completed_pipeline_releases_lock(self, engine):
        pipeline = await create(engine)
        await engine.start_pipeline(pipeline.pipeline_id)
        assert pipeline.pipeline_id not in engine._locks

    @pytest.mark.asyncio
    async def test_failed_pipeline_releases_lock(self, engine, recorder):
        async def boom():
            raise StepError("nope")

        recorder.hooks[steps.SONG_ARCHITECT] = boom
        pipeline = await create(engine)
        await engine.start_pipeline(pipeline.pipeline_id)
        assert pipeline.pipeline_id not in engine._locks

    @pytest.mark.asyncio
    async def test_cancelled_pipeline_releases_lock(self, engine):
        pipeline = await create(engine, mode=PipelineMode.MANUAL)
        await engine.start_pipeline(pipeline.pipeline_id)
        assert pipeline.pipeline_id in engine._locks

        await engine.cancel_pipeline(pipeline.pipeline_id)
        assert pipeline.pipeline_id not in engine._locks

    @pytest.mark.asyncio
    async def test_late_step_on_finished_pipeline_leaves_no_lock(self, engine):
        pipeline = await create(engine)
        await engine.cancel_pipeline(pipeline.pipeline_id)

        await engine.execute_step(pipeline.pipeline_id, steps.SONG_ARCHITECT)
        assert engine._locks == {}
