"""Pipeline engine — the step state machine for generation pipelines.

Key exports:
    PipelineEngine — create/start/execute/run/pause/resume/cancel/retry.
    StepDispatcher — Protocol for handing a step to whoever executes it.
    PipelineError, PipelineNotFound, InvalidPipelineState — control errors.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Protocol

from pipeforge.agents import EXECUTORS, AgentContext, AgentServices, Executor, StepError
from pipeforge.events import EventEmitter, TopicHub
from pipeforge.pipeline.context import build_step_input
from pipeforge.pipeline.models import (
    LogType,
    Pipeline,
    PipelineLog,
    PipelineMode,
    PipelineStatus,
    PipelineType,
    StepState,
    StepStatus,
)
from pipeforge.pipeline.registry import PipelineRegistry
from pipeforge.pipeline.steps import ORCHESTRATOR, first_step, is_valid_step, next_step

logger = logging.getLogger("pipeforge.pipeline.engine")

CANCELLED_MESSAGE = "Pipeline cancelled by user"


# ── Errors ───────────────────────────────────────────────────────────────────


class PipelineError(Exception):
    """Base class for rejected pipeline control operations."""


class PipelineNotFound(PipelineError):
    def __init__(self, pipeline_id: str):
        super().__init__(f"Pipeline not found: {pipeline_id}")
        self.pipeline_id = pipeline_id


class InvalidPipelineState(PipelineError):
    """The operation is not allowed from the pipeline's current status."""

    def __init__(self, message: str, current_status: PipelineStatus | None = None):
        super().__init__(message)
        self.current_status = current_status


# ── Callback Protocols ───────────────────────────────────────────────────────


class StepDispatcher(Protocol):
    """Called by the engine to have a step executed.

    The default runs ``execute_step`` inline. The server replaces it with
    one that enqueues the step on the work queue.
    """

    async def __call__(self, pipeline_id: str, step: str) -> None: ...


# ── Engine ───────────────────────────────────────────────────────────────────


class PipelineEngine:
    """Drives pipelines through their ordered steps.

    Responsibilities:
    - Validate control operations against the pipeline's status
    - Run one step at a time through its executor
    - Advance (auto mode) or wait for an operator (manual mode)
    - Record orchestrator logs and progress through the EventEmitter

    Usage::

        engine = PipelineEngine(registry, hub, services)
        pipeline = await engine.create_pipeline(project_id, PipelineType.VIDEO)
        await engine.start_pipeline(pipeline.pipeline_id)
    """

    def __init__(
        self,
        registry: PipelineRegistry,
        hub: TopicHub,
        services: AgentServices,
        *,
        executors: Mapping[str, Executor] | None = None,
        dispatcher: StepDispatcher | None = None,
    ):
        self._registry = registry
        self._hub = hub
        self._services = services
        self._executors = dict(EXECUTORS if executors is None else executors)
        self._dispatch: StepDispatcher = dispatcher or self.execute_step
        # Serializes read-modify-write of one pipeline record
        self._locks: dict[str, asyncio.Lock] = {}

    def set_dispatcher(self, dispatcher: StepDispatcher) -> None:
        self._dispatch = dispatcher

    def emitter(self, pipeline_id: str) -> EventEmitter:
        return EventEmitter(self._registry, self._hub.topic(pipeline_id), pipeline_id)

    def _lock(self, pipeline_id: str) -> asyncio.Lock:
        if pipeline_id not in self._locks:
            self._locks[pipeline_id] = asyncio.Lock()
        return self._locks[pipeline_id]

    def _forget_lock(self, pipeline_id: str) -> None:
        # Terminal pipelines are never written again
        self._locks.pop(pipeline_id, None)

    async def _require(self, pipeline_id: str) -> Pipeline:
        pipeline = await self._registry.get_pipeline(pipeline_id)
        if pipeline is None:
            raise PipelineNotFound(pipeline_id)
        return pipeline

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def create_pipeline(
        self,
        project_id: str,
        pipeline_type: PipelineType = PipelineType.VIDEO,
        mode: PipelineMode = PipelineMode.AUTO,
        config: dict[str, Any] | None = None,
    ) -> Pipeline:
        """Create a pending pipeline with every step pending."""
        active = await self._registry.get_active_pipeline_for_project(project_id)
        if active is not None:
            raise InvalidPipelineState(
                "Project already has an active pipeline", active.status
            )

        pipeline = Pipeline(
            pipeline_id=f"pl-{uuid.uuid4().hex[:12]}",
            project_id=project_id,
            pipeline_type=pipeline_type,
            mode=mode,
            config=config or {},
        )
        for step in pipeline.steps:
            pipeline.set_step_state(step, StepState())
        await self._registry.create_pipeline(pipeline)
        logger.info(
            "Created %s pipeline %s for project %s (%s mode)",
            pipeline_type.value,
            pipeline.pipeline_id,
            project_id,
            mode.value,
        )
        return pipeline

    async def start_pipeline(self, pipeline_id: str) -> Pipeline:
        """Move a pending pipeline to running and dispatch its first step."""
        async with self._lock(pipeline_id):
            pipeline = await self._require(pipeline_id)
            if pipeline.status != PipelineStatus.PENDING:
                raise InvalidPipelineState(
                    "Pipeline cannot be started from current state", pipeline.status
                )
            pipeline.status = PipelineStatus.RUNNING
            pipeline.started_at = datetime.now(timezone.utc)
            # A retried pipeline starts from the step that failed
            if pipeline.current_step is None:
                pipeline.current_step = first_step(pipeline.pipeline_type.value)
            await self._registry.update_pipeline(pipeline)

        await self.emitter(pipeline_id).emit(
            ORCHESTRATOR, LogType.INFO, f"Pipeline started in {pipeline.mode.value} mode"
        )
        logger.info("Pipeline %s started at step '%s'", pipeline_id, pipeline.current_step)
        await self._dispatch(pipeline_id, pipeline.current_step)
        return await self._require(pipeline_id)

    async def run_step(self, pipeline_id: str, step: str | None = None) -> Pipeline:
        """Manually trigger the current step of a manual-mode pipeline."""
        pipeline = await self._require(pipeline_id)
        if pipeline.mode != PipelineMode.MANUAL:
            raise InvalidPipelineState("Pipeline is not in manual mode", pipeline.status)
        if pipeline.status != PipelineStatus.RUNNING:
            raise InvalidPipelineState("Pipeline is not running", pipeline.status)

        step = step or pipeline.current_step
        if step is None or not is_valid_step(pipeline.pipeline_type.value, step):
            raise InvalidPipelineState("Invalid step for this pipeline type", pipeline.status)
        if step != pipeline.current_step:
            raise InvalidPipelineState(
                f"Step '{step}' is not the current step", pipeline.status
            )
        if pipeline.get_step_state(step).status != StepStatus.PENDING:
            raise InvalidPipelineState(f"Step '{step}' is not pending", pipeline.status)

        await self._dispatch(pipeline_id, step)
        return await self._require(pipeline_id)

    async def pause_pipeline(self, pipeline_id: str) -> Pipeline:
        async with self._lock(pipeline_id):
            pipeline = await self._require(pipeline_id)
            if pipeline.status != PipelineStatus.RUNNING:
                raise InvalidPipelineState("Pipeline is not running", pipeline.status)
            pipeline.status = PipelineStatus.PAUSED
            await self._registry.update_pipeline(pipeline)

        events = self.emitter(pipeline_id)
        await events.emit(ORCHESTRATOR, LogType.INFO, "Pipeline paused")
        await events.progress(
            pipeline.current_step or ORCHESTRATOR,
            pipeline.current_step_progress,
            status="paused",
            message="Pipeline paused",
        )
        logger.info("Pipeline %s paused", pipeline_id)
        return pipeline

    async def resume_pipeline(self, pipeline_id: str) -> Pipeline:
        async with self._lock(pipeline_id):
            pipeline = await self._require(pipeline_id)
            if pipeline.status != PipelineStatus.PAUSED:
                raise InvalidPipelineState("Pipeline is not paused", pipeline.status)
            pipeline.status = PipelineStatus.RUNNING
            await self._registry.update_pipeline(pipeline)

        await self.emitter(pipeline_id).emit(ORCHESTRATOR, LogType.INFO, "Pipeline resumed")
        logger.info("Pipeline %s resumed", pipeline_id)

        step = pipeline.current_step
        # A step that was already running when paused finishes on its own
        if step and pipeline.get_step_state(step).status == StepStatus.PENDING:
            await self._dispatch(pipeline_id, step)
        return await self._require(pipeline_id)

    async def cancel_pipeline(self, pipeline_id: str) -> Pipeline:
        """Fail a non-terminal pipeline. In-flight provider calls run on."""
        async with self._lock(pipeline_id):
            pipeline = await self._require(pipeline_id)
            if pipeline.status.is_terminal:
                raise InvalidPipelineState("Pipeline already finished", pipeline.status)

            step = pipeline.current_step
            if step and pipeline.get_step_state(step).status == StepStatus.RUNNING:
                pipeline.set_step_state(step, pipeline.get_step_state(step).fail(CANCELLED_MESSAGE))
            pipeline.status = PipelineStatus.FAILED
            pipeline.error_message = CANCELLED_MESSAGE
            pipeline.completed_at = datetime.now(timezone.utc)
            await self._registry.update_pipeline(pipeline)
        self._forget_lock(pipeline_id)

        events = self.emitter(pipeline_id)
        await events.emit(ORCHESTRATOR, LogType.INFO, CANCELLED_MESSAGE)
        await events.progress(
            pipeline.current_step or ORCHESTRATOR, 0, status="cancelled", message="Pipeline cancelled"
        )
        logger.info("Pipeline %s cancelled", pipeline_id)
        return pipeline

    async def retry_pipeline(self, pipeline_id: str) -> Pipeline:
        """Start a new pipeline that picks up where a failed one stopped.

        Completed step states are carried over. The failed record is left
        as it was.
        """
        failed = await self._require(pipeline_id)
        if failed.status != PipelineStatus.FAILED:
            raise InvalidPipelineState("Only failed pipelines can be retried", failed.status)

        pipeline = await self.create_pipeline(
            failed.project_id, failed.pipeline_type, failed.mode, dict(failed.config)
        )
        resume_at: str | None = None
        for step in pipeline.steps:
            state = failed.get_step_state(step)
            if state.status == StepStatus.COMPLETED:
                pipeline.set_step_state(step, state)
            elif resume_at is None:
                resume_at = step
        pipeline.current_step = resume_at
        await self._registry.update_pipeline(pipeline)

        await self.emitter(pipeline.pipeline_id).emit(
            ORCHESTRATOR,
            LogType.INFO,
            f"Retrying pipeline {pipeline_id} from step '{resume_at}'",
            {"retry_of": pipeline_id},
        )
        logger.info("Pipeline %s retried as %s", pipeline_id, pipeline.pipeline_id)
        return await self.start_pipeline(pipeline.pipeline_id)

    # ── Step Execution ───────────────────────────────────────────────────────

    async def execute_step(self, pipeline_id: str, step: str) -> None:
        """Run ``step`` and, in auto mode, every step after it."""
        next_to_run: str | None = step
        while next_to_run is not None:
            next_to_run = await self._execute_one(pipeline_id, next_to_run)

    async def _execute_one(self, pipeline_id: str, step: str) -> str | None:
        """Run one step. Returns the step to run next inline, if any."""
        async with self._lock(pipeline_id):
            pipeline = await self._registry.get_pipeline(pipeline_id)
            if pipeline is None:
                logger.warning("Discarding step '%s': pipeline %s not found", step, pipeline_id)
                self._forget_lock(pipeline_id)
                return None
            if pipeline.status.is_terminal:
                logger.info(
                    "Discarding step '%s': pipeline %s is %s",
                    step,
                    pipeline_id,
                    pipeline.status.value,
                )
                self._forget_lock(pipeline_id)
                return None
            if pipeline.status != PipelineStatus.RUNNING:
                logger.info(
                    "Deferring step '%s': pipeline %s is %s",
                    step,
                    pipeline_id,
                    pipeline.status.value,
                )
                return None
            state = pipeline.get_step_state(step)
            if state.status != StepStatus.PENDING:
                logger.warning(
                    "Skipping step '%s' of pipeline %s: already %s",
                    step,
                    pipeline_id,
                    state.status.value,
                )
                return None
            pipeline.set_step_state(step, state.start())
            pipeline.current_step = step
            await self._registry.update_pipeline(pipeline)

        events = self.emitter(pipeline_id)
        await events.progress(step, 0, message=f"Starting {step}...")
        logger.info("Executing step '%s' of pipeline %s", step, pipeline_id)

        try:
            executor = self._executors.get(step)
            if executor is None:
                msg = f"No executor registered for step '{step}'"
                raise StepError(msg)
            ctx = AgentContext.create(step, events, self._services)
            result = await executor(ctx, build_step_input(pipeline, step))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._on_step_failed(pipeline_id, step, exc, events)
            return None

        return await self._on_step_completed(pipeline_id, step, result or {}, events)

    async def _on_step_completed(
        self,
        pipeline_id: str,
        step: str,
        result: dict[str, Any],
        events: EventEmitter,
    ) -> str | None:
        async with self._lock(pipeline_id):
            pipeline = await self._registry.get_pipeline(pipeline_id)
            if pipeline is None or pipeline.status.is_terminal:
                logger.info("Discarding result of step '%s': pipeline %s finished", step, pipeline_id)
                self._forget_lock(pipeline_id)
                return None
            state = pipeline.get_step_state(step)
            if state.status != StepStatus.RUNNING:
                logger.warning(
                    "Discarding result of step '%s': step is %s", step, state.status.value
                )
                return None

            pipeline.set_step_state(step, state.complete(result))
            following = next_step(pipeline.pipeline_type.value, step)
            if following is None:
                await self._complete_pipeline(pipeline)
            else:
                pipeline.current_step = following
                await self._registry.update_pipeline(pipeline)

        if following is None:
            self._forget_lock(pipeline_id)
            await events.emit(ORCHESTRATOR, LogType.INFO, "Pipeline completed successfully")
            await events.progress(step, 100, status="completed", message="Pipeline completed")
            return None

        await events.progress(step, 100, message=f"{step} completed")
        await events.step_completed(step, result, following)
        logger.info(
            "Step '%s' of pipeline %s completed, next '%s'", step, pipeline_id, following
        )
        if pipeline.mode == PipelineMode.AUTO and pipeline.status == PipelineStatus.RUNNING:
            return following
        return None

    async def _on_step_failed(
        self,
        pipeline_id: str,
        step: str,
        exc: Exception,
        events: EventEmitter,
    ) -> None:
        message = str(exc) or exc.__class__.__name__
        async with self._lock(pipeline_id):
            pipeline = await self._registry.get_pipeline(pipeline_id)
            if pipeline is None or pipeline.status.is_terminal:
                logger.info(
                    "Discarding failure of step '%s': pipeline %s finished: %s",
                    step,
                    pipeline_id,
                    message,
                )
                self._forget_lock(pipeline_id)
                return
            state = pipeline.get_step_state(step)
            if state.status == StepStatus.RUNNING:
                pipeline.set_step_state(step, state.fail(message))
            await self._fail_pipeline(pipeline, message, step=step)
        self._forget_lock(pipeline_id)

        await events.emit(step, LogType.ERROR, message, {"exception": exc.__class__.__name__})
        await events.emit(ORCHESTRATOR, LogType.ERROR, f"Pipeline failed: {message}")
        await events.progress(step, 0, status="failed", message=message)

    async def _complete_pipeline(self, pipeline: Pipeline) -> None:
        """Mark a pipeline as completed. ``current_step`` stays on the last step."""
        pipeline.status = PipelineStatus.COMPLETED
        pipeline.completed_at = datetime.now(timezone.utc)
        await self._registry.update_pipeline(pipeline)
        logger.info("Pipeline %s completed", pipeline.pipeline_id)

    async def _fail_pipeline(self, pipeline: Pipeline, error_message: str, *, step: str) -> None:
        pipeline.status = PipelineStatus.FAILED
        pipeline.error_message = error_message
        pipeline.completed_at = datetime.now(timezone.utc)
        await self._registry.update_pipeline(pipeline)
        logger.error(
            "Pipeline %s failed at step '%s': %s", pipeline.pipeline_id, step, error_message
        )

    # ── Queries ──────────────────────────────────────────────────────────────

    async def get_pipeline(self, pipeline_id: str) -> Pipeline:
        return await self._require(pipeline_id)

    async def get_logs(
        self,
        pipeline_id: str,
        *,
        agent_type: str | None = None,
        log_type: LogType | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[PipelineLog]:
        await self._require(pipeline_id)
        return await self._registry.get_logs(
            pipeline_id, agent_type=agent_type, log_type=log_type, limit=limit, offset=offset
        )

    async def count_logs(
        self,
        pipeline_id: str,
        *,
        agent_type: str | None = None,
        log_type: LogType | None = None,
    ) -> int:
        return await self._registry.count_logs(
            pipeline_id, agent_type=agent_type, log_type=log_type
        )

    async def list_pipelines(self, project_id: str) -> list[Pipeline]:
        return await self._registry.get_pipelines_for_project(project_id)

    async def get_step_state(self, pipeline_id: str, step: str) -> StepState:
        pipeline = await self._require(pipeline_id)
        if not is_valid_step(pipeline.pipeline_type.value, step):
            raise InvalidPipelineState("Invalid step for this pipeline type", pipeline.status)
        return pipeline.get_step_state(step)

    async def list_steps(self, pipeline_id: str) -> list[dict[str, Any]]:
        """Ordered steps with their state, for status displays."""
        pipeline = await self._require(pipeline_id)
        return [
            {
                "step": step,
                "is_current": step == pipeline.current_step,
                **pipeline.get_step_state(step).model_dump(mode="json"),
            }
            for step in pipeline.steps
        ]
