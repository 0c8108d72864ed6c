"""Generation pipelines.

Key exports:
    Pipeline, StepState, PipelineLog — runtime state models
    PipelineRegistry — SQLite persistence
    steps — ordered step ids per pipeline type

The engine lives in ``pipeforge.pipeline.engine``; it is not re-exported
here because it depends on the agent executors, which depend on these
models.
"""

from pipeforge.pipeline.context import build_step_input
from pipeforge.pipeline.models import (
    ACTIVE_PIPELINE_STATUSES,
    InvalidStepTransition,
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

__all__ = [
    "ACTIVE_PIPELINE_STATUSES",
    "InvalidStepTransition",
    "LogType",
    "Pipeline",
    "PipelineLog",
    "PipelineMode",
    "PipelineRegistry",
    "PipelineStatus",
    "PipelineType",
    "StepState",
    "StepStatus",
    "build_step_input",
]
