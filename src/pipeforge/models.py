"""Core data models for projects and their generated artifacts."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


# ── Project ──────────────────────────────────────────────────────────────────


class ProjectStatus(str, enum.Enum):
    DRAFT = "draft"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Project(BaseModel):
    """A content project. Only its status fields are owned by this service."""

    project_id: str = Field(description="Unique project identifier, e.g. 'prj-3f9a…'")
    title: str = ""
    status: ProjectStatus = ProjectStatus.DRAFT
    error_message: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None


# ── Asset ────────────────────────────────────────────────────────────────────


class AssetType(str, enum.Enum):
    MUSIC = "music"
    IMAGE = "image"
    VIDEO_CLIP = "video_clip"
    FINAL_VIDEO = "final_video"


class Asset(BaseModel):
    """A generated artifact belonging to a project.

    ``permanent_url`` stays empty while the artifact is pending at the
    provider. Once set it is never overwritten; regeneration creates a new row.
    """

    id: int | None = None
    project_id: str
    asset_type: AssetType
    permanent_url: str = ""
    external_task_id: str | None = Field(
        default=None, description="Provider task handle used to correlate webhooks"
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_resolved(self) -> bool:
        return bool(self.permanent_url)


# ── Job Log ──────────────────────────────────────────────────────────────────


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobLog(BaseModel):
    """Lifecycle record of one dispatched unit of async work for a project."""

    id: int | None = None
    project_id: str
    job_type: str
    status: JobStatus = JobStatus.PENDING
    external_task_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
