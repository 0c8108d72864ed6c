"""Pipeline Pydantic models — runtime state for generation pipelines.

Key exports:
    Runtime state models: Pipeline, StepState, PipelineLog
    Enums: PipelineType, PipelineMode, PipelineStatus, StepStatus, LogType
    Errors: InvalidStepTransition
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from pipeforge.pipeline.steps import is_valid_step, steps_for


# ── Enums ────────────────────────────────────────────────────────────────────


class PipelineType(str, Enum):
    """Selects the step registry entry for a pipeline."""

    VIDEO = "video"
    MUSIC_VIDEO = "music_video"


class PipelineMode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class PipelineStatus(str, Enum):
    """Pipeline lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStatus.COMPLETED, PipelineStatus.FAILED)


ACTIVE_PIPELINE_STATUSES = (
    PipelineStatus.PENDING,
    PipelineStatus.RUNNING,
    PipelineStatus.PAUSED,
)


class StepStatus(str, Enum):
    """Per-step lifecycle. Only pending → running → completed|failed."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class LogType(str, Enum):
    INFO = "info"
    PROGRESS = "progress"
    RESULT = "result"
    ERROR = "error"
    THINKING = "thinking"


# ── Step State ───────────────────────────────────────────────────────────────


class InvalidStepTransition(ValueError):
    """Raised when a step state would move backward or sideways."""


class StepState(BaseModel):
    """Fixed-schema state of one step inside ``Pipeline.steps_state``.

    ``result`` is set exactly when the step completed; ``error`` exactly
    when it failed. New states are produced through ``start()``,
    ``complete()`` and ``fail()`` rather than by mutation.
    """

    status: StepStatus = StepStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    result: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _check_result_and_error(self) -> StepState:
        if (self.result is not None) != (self.status == StepStatus.COMPLETED):
            msg = f"StepState result must be set iff status is completed (status={self.status.value})"
            raise ValueError(msg)
        if (self.error is not None) != (self.status == StepStatus.FAILED):
            msg = f"StepState error must be set iff status is failed (status={self.status.value})"
            raise ValueError(msg)
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.FAILED)

    def start(self) -> StepState:
        if self.status != StepStatus.PENDING:
            raise InvalidStepTransition(f"Cannot start step in status '{self.status.value}'")
        return StepState(
            status=StepStatus.RUNNING,
            progress=0,
            started_at=datetime.now(timezone.utc),
        )

    def complete(self, result: dict[str, Any]) -> StepState:
        if self.status != StepStatus.RUNNING:
            raise InvalidStepTransition(f"Cannot complete step in status '{self.status.value}'")
        return StepState(
            status=StepStatus.COMPLETED,
            progress=100,
            result=result,
            started_at=self.started_at,
            completed_at=datetime.now(timezone.utc),
        )

    def fail(self, error: str) -> StepState:
        if self.status != StepStatus.RUNNING:
            raise InvalidStepTransition(f"Cannot fail step in status '{self.status.value}'")
        return StepState(
            status=StepStatus.FAILED,
            progress=self.progress,
            error=error or "Step failed",
            started_at=self.started_at,
            completed_at=datetime.now(timezone.utc),
        )


# ── Pipeline ─────────────────────────────────────────────────────────────────


class Pipeline(BaseModel):
    """One orchestrated generation run for one project."""

    pipeline_id: str
    project_id: str
    pipeline_type: PipelineType = PipelineType.VIDEO
    mode: PipelineMode = PipelineMode.AUTO
    status: PipelineStatus = PipelineStatus.PENDING
    current_step: str | None = None
    current_step_progress: int = Field(default=0, ge=0, le=100)
    config: dict[str, Any] = Field(default_factory=dict)
    steps_state: dict[str, StepState] = Field(default_factory=dict)
    error_message: str | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _check_steps(self) -> Pipeline:
        if self.current_step is not None and not is_valid_step(
            self.pipeline_type.value, self.current_step
        ):
            msg = (
                f"current_step '{self.current_step}' is not a step of "
                f"pipeline type '{self.pipeline_type.value}'"
            )
            raise ValueError(msg)
        for step in self.steps_state:
            if not is_valid_step(self.pipeline_type.value, step):
                msg = f"steps_state has unknown step '{step}'"
                raise ValueError(msg)
        return self

    @property
    def steps(self) -> list[str]:
        return steps_for(self.pipeline_type.value)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_PIPELINE_STATUSES

    def get_step_state(self, step: str) -> StepState:
        return self.steps_state.get(step) or StepState()

    def set_step_state(self, step: str, state: StepState) -> None:
        self.steps_state[step] = state


# ── Pipeline Log ─────────────────────────────────────────────────────────────


class PipelineLog(BaseModel):
    """Append-only event record emitted by a step or the orchestrator."""

    id: int | None = None
    pipeline_id: str
    agent_type: str
    log_type: LogType = LogType.INFO
    message: str
    data: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"frozen": True}
