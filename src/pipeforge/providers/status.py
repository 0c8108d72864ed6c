"""Provider status vocabulary shared by the poller and the webhook path."""

from __future__ import annotations

import enum
from typing import Any


class TaskState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED)


_STATUS_MAP: dict[str, TaskState] = {
    "completed": TaskState.COMPLETED,
    "success": TaskState.COMPLETED,
    "succeeded": TaskState.COMPLETED,
    "done": TaskState.COMPLETED,
    "failed": TaskState.FAILED,
    "error": TaskState.FAILED,
    "fail": TaskState.FAILED,
    "processing": TaskState.RUNNING,
    "running": TaskState.RUNNING,
    "in_progress": TaskState.RUNNING,
    "generating": TaskState.RUNNING,
}


def normalize_status(raw: Any) -> TaskState:
    """Map a provider's raw status string onto TaskState.

    Unknown or missing values are treated as still pending.
    """
    if raw is None:
        return TaskState.PENDING
    return _STATUS_MAP.get(str(raw).strip().lower(), TaskState.PENDING)


def extract_status(payload: dict[str, Any] | None) -> Any:
    """Raw status from a provider payload: ``status``, then ``state``."""
    if not payload:
        return None
    status = payload.get("status")
    if status is None:
        status = payload.get("state")
    return status


def extract_error(payload: dict[str, Any] | None, default: str = "Task failed") -> str:
    if not payload:
        return default
    return payload.get("error") or payload.get("message") or default
