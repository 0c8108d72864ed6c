"""Project registry — SQLite persistence for projects, assets, and job logs.

Owns the aiosqlite connection. The pipeline registry shares it so that
pipeline rows can cascade from their project.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from pipeforge.models import (
    Asset,
    AssetType,
    JobLog,
    JobStatus,
    Project,
    ProjectStatus,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    project_id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'draft',
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_projects_status ON projects(status, updated_at);

CREATE TABLE IF NOT EXISTS assets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(project_id) ON DELETE CASCADE,
    asset_type TEXT NOT NULL,
    permanent_url TEXT NOT NULL DEFAULT '',
    external_task_id TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_assets_task ON assets(external_task_id);

CREATE TABLE IF NOT EXISTS job_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(project_id) ON DELETE CASCADE,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    external_task_id TEXT,
    payload TEXT NOT NULL DEFAULT '{}',
    result TEXT,
    error_message TEXT,
    started_at TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_job_logs_project ON job_logs(project_id, status);
CREATE INDEX IF NOT EXISTS idx_job_logs_task ON job_logs(external_task_id);
"""


class ProjectRegistry:
    """SQLite-backed state for projects and their generated artifacts."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Project registry initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Registry not initialized, call initialize() first")
        return self._db

    # ── Projects ─────────────────────────────────────────────────────────────

    async def create_project(self, project: Project) -> Project:
        await self.db.execute(
            """INSERT INTO projects
               (project_id, title, status, error_message, created_at, updated_at, completed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                project.project_id,
                project.title,
                project.status.value,
                project.error_message,
                project.created_at.isoformat(),
                project.updated_at.isoformat(),
                _dt_to_str(project.completed_at),
            ),
        )
        await self.db.commit()
        return project

    async def get_project(self, project_id: str) -> Project | None:
        cursor = await self.db.execute(
            "SELECT * FROM projects WHERE project_id = ?", (project_id,)
        )
        row = await cursor.fetchone()
        return _row_to_project(row) if row else None

    async def update_project(self, project: Project) -> None:
        project.updated_at = datetime.now(timezone.utc)
        await self.db.execute(
            """UPDATE projects SET
               title=?, status=?, error_message=?, updated_at=?, completed_at=?
               WHERE project_id=?""",
            (
                project.title,
                project.status.value,
                project.error_message,
                project.updated_at.isoformat(),
                _dt_to_str(project.completed_at),
                project.project_id,
            ),
        )
        await self.db.commit()

    async def set_project_terminal_if_processing(
        self,
        project_id: str,
        status: ProjectStatus,
        error_message: str | None = None,
    ) -> bool:
        """Move a processing project to a terminal status.

        Returns False when the project already left ``processing``, so the
        first writer wins between the webhook path and the stale sweep.
        """
        now = datetime.now(timezone.utc).isoformat()
        completed_at = now if status == ProjectStatus.COMPLETED else None
        cursor = await self.db.execute(
            """UPDATE projects SET status=?, error_message=?, updated_at=?, completed_at=?
               WHERE project_id=? AND status=?""",
            (
                status.value,
                error_message,
                now,
                completed_at,
                project_id,
                ProjectStatus.PROCESSING.value,
            ),
        )
        await self.db.commit()
        return cursor.rowcount > 0

    async def get_stale_projects(self, older_than: datetime) -> list[Project]:
        """Processing projects not updated since ``older_than``."""
        cursor = await self.db.execute(
            "SELECT * FROM projects WHERE status = ? AND updated_at < ? ORDER BY updated_at",
            (ProjectStatus.PROCESSING.value, older_than.isoformat()),
        )
        rows = await cursor.fetchall()
        return [_row_to_project(r) for r in rows]

    # ── Assets ───────────────────────────────────────────────────────────────

    async def create_asset(self, asset: Asset) -> Asset:
        cursor = await self.db.execute(
            """INSERT INTO assets
               (project_id, asset_type, permanent_url, external_task_id, metadata,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                asset.project_id,
                asset.asset_type.value,
                asset.permanent_url,
                asset.external_task_id,
                json.dumps(asset.metadata),
                asset.created_at.isoformat(),
                asset.updated_at.isoformat(),
            ),
        )
        await self.db.commit()
        asset.id = cursor.lastrowid
        return asset

    async def get_asset(self, asset_id: int) -> Asset | None:
        cursor = await self.db.execute("SELECT * FROM assets WHERE id = ?", (asset_id,))
        row = await cursor.fetchone()
        return _row_to_asset(row) if row else None

    async def get_asset_by_task_id(self, task_id: str) -> Asset | None:
        cursor = await self.db.execute(
            "SELECT * FROM assets WHERE external_task_id = ? ORDER BY id DESC LIMIT 1",
            (task_id,),
        )
        row = await cursor.fetchone()
        return _row_to_asset(row) if row else None

    async def get_assets_for_project(self, project_id: str) -> list[Asset]:
        cursor = await self.db.execute(
            "SELECT * FROM assets WHERE project_id = ? ORDER BY id DESC", (project_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_asset(r) for r in rows]

    async def set_asset_url(
        self, asset_id: int, url: str, metadata: dict[str, Any] | None = None
    ) -> bool:
        """Set the permanent URL once. Returns False if it was already set."""
        asset = await self.get_asset(asset_id)
        if asset is None:
            return False
        merged = {**asset.metadata, **(metadata or {})}
        cursor = await self.db.execute(
            """UPDATE assets SET permanent_url=?, metadata=?, updated_at=?
               WHERE id=? AND permanent_url = ''""",
            (url, json.dumps(merged), datetime.now(timezone.utc).isoformat(), asset_id),
        )
        await self.db.commit()
        return cursor.rowcount > 0

    async def update_asset_metadata(self, asset_id: int, metadata: dict[str, Any]) -> None:
        """Merge ``metadata`` into the asset's existing metadata."""
        asset = await self.get_asset(asset_id)
        if asset is None:
            return
        merged = {**asset.metadata, **metadata}
        await self.db.execute(
            "UPDATE assets SET metadata=?, updated_at=? WHERE id=?",
            (json.dumps(merged), datetime.now(timezone.utc).isoformat(), asset_id),
        )
        await self.db.commit()

    # ── Job Logs ─────────────────────────────────────────────────────────────

    async def create_job_log(self, job: JobLog) -> JobLog:
        cursor = await self.db.execute(
            """INSERT INTO job_logs
               (project_id, job_type, status, external_task_id, payload, result,
                error_message, started_at, completed_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                job.project_id,
                job.job_type,
                job.status.value,
                job.external_task_id,
                json.dumps(job.payload),
                json.dumps(job.result) if job.result is not None else None,
                job.error_message,
                _dt_to_str(job.started_at),
                _dt_to_str(job.completed_at),
                job.created_at.isoformat(),
            ),
        )
        await self.db.commit()
        job.id = cursor.lastrowid
        return job

    async def get_job_log(self, job_id: int) -> JobLog | None:
        cursor = await self.db.execute("SELECT * FROM job_logs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        return _row_to_job_log(row) if row else None

    async def get_job_log_by_task_id(self, task_id: str) -> JobLog | None:
        cursor = await self.db.execute(
            "SELECT * FROM job_logs WHERE external_task_id = ? ORDER BY id DESC LIMIT 1",
            (task_id,),
        )
        row = await cursor.fetchone()
        return _row_to_job_log(row) if row else None

    async def get_job_logs_for_project(self, project_id: str) -> list[JobLog]:
        cursor = await self.db.execute(
            "SELECT * FROM job_logs WHERE project_id = ? ORDER BY id", (project_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_job_log(r) for r in rows]

    async def get_stuck_job_logs(self, started_before: datetime) -> list[JobLog]:
        """Running job logs whose ``started_at`` is older than ``started_before``."""
        cursor = await self.db.execute(
            "SELECT * FROM job_logs WHERE status = ? AND started_at < ? ORDER BY id",
            (JobStatus.RUNNING.value, started_before.isoformat()),
        )
        rows = await cursor.fetchall()
        return [_row_to_job_log(r) for r in rows]

    async def attach_job_log_task(
        self, job_id: int, task_id: str, result: dict[str, Any] | None = None
    ) -> None:
        """Record the provider task a dispatched job is waiting on."""
        await self.db.execute(
            "UPDATE job_logs SET external_task_id=?, result=COALESCE(?, result) WHERE id=?",
            (task_id, json.dumps(result) if result is not None else None, job_id),
        )
        await self.db.commit()

    async def mark_job_log_running(self, job_id: int, result: dict[str, Any] | None = None) -> bool:
        """Move a pending job log to running. No-op for running or terminal rows."""
        now = datetime.now(timezone.utc).isoformat()
        cursor = await self.db.execute(
            """UPDATE job_logs SET status=?, result=COALESCE(?, result),
               started_at=COALESCE(started_at, ?)
               WHERE id=? AND status=?""",
            (
                JobStatus.RUNNING.value,
                json.dumps(result) if result is not None else None,
                now,
                job_id,
                JobStatus.PENDING.value,
            ),
        )
        await self.db.commit()
        return cursor.rowcount > 0

    async def finish_job_log(
        self,
        job_id: int,
        status: JobStatus,
        *,
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Write a terminal status once.

        The update only matches pending or running rows, so a second
        completion of the same job is a no-op. Returns whether a row changed.
        """
        if not status.is_terminal:
            msg = f"finish_job_log requires a terminal status, got '{status.value}'"
            raise ValueError(msg)
        cursor = await self.db.execute(
            """UPDATE job_logs SET status=?, result=COALESCE(?, result),
               error_message=?, completed_at=?
               WHERE id=? AND status IN (?, ?)""",
            (
                status.value,
                json.dumps(result) if result is not None else None,
                error_message,
                datetime.now(timezone.utc).isoformat(),
                job_id,
                JobStatus.PENDING.value,
                JobStatus.RUNNING.value,
            ),
        )
        await self.db.commit()
        return cursor.rowcount > 0


# ── Row Converters ───────────────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_project(row: aiosqlite.Row) -> Project:
    return Project(
        project_id=row["project_id"],
        title=row["title"],
        status=ProjectStatus(row["status"]),
        error_message=row["error_message"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )


def _row_to_asset(row: aiosqlite.Row) -> Asset:
    return Asset(
        id=row["id"],
        project_id=row["project_id"],
        asset_type=AssetType(row["asset_type"]),
        permanent_url=row["permanent_url"] or "",
        external_task_id=row["external_task_id"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_job_log(row: aiosqlite.Row) -> JobLog:
    return JobLog(
        id=row["id"],
        project_id=row["project_id"],
        job_type=row["job_type"],
        status=JobStatus(row["status"]),
        external_task_id=row["external_task_id"],
        payload=json.loads(row["payload"]) if row["payload"] else {},
        result=json.loads(row["result"]) if row["result"] else None,
        error_message=row["error_message"],
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )
