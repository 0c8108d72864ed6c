"""Pipeline registry — SQLite persistence for pipelines and their logs.

Key exports:
    PipelineRegistry — CRUD for pipelines and the append-only pipeline_logs table.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from pipeforge.pipeline.models import (
    ACTIVE_PIPELINE_STATUSES,
    LogType,
    Pipeline,
    PipelineLog,
    PipelineMode,
    PipelineStatus,
    PipelineType,
    StepState,
)

logger = logging.getLogger("pipeforge.pipeline.registry")


class PipelineRegistry:
    """SQLite-backed persistence for pipelines.

    Takes an already-open aiosqlite connection (shared with the project
    registry). Call ``initialize()`` to create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Pipeline registry tables initialized")

    # ── Pipeline CRUD ────────────────────────────────────────────────────────

    async def create_pipeline(self, pipeline: Pipeline) -> None:
        await self._db.execute(
            """
            INSERT INTO pipelines (
                pipeline_id, project_id, pipeline_type, mode, status,
                current_step, current_step_progress, config, steps_state,
                error_message, created_at, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                pipeline.pipeline_id,
                pipeline.project_id,
                pipeline.pipeline_type.value,
                pipeline.mode.value,
                pipeline.status.value,
                pipeline.current_step,
                pipeline.current_step_progress,
                json.dumps(pipeline.config),
                _steps_state_to_json(pipeline.steps_state),
                pipeline.error_message,
                _dt_to_str(pipeline.created_at),
                _dt_to_str(pipeline.started_at),
                _dt_to_str(pipeline.completed_at),
            ),
        )
        await self._db.commit()

    async def get_pipeline(self, pipeline_id: str) -> Pipeline | None:
        cursor = await self._db.execute(
            "SELECT * FROM pipelines WHERE pipeline_id = ?", (pipeline_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_pipeline(row)

    async def get_pipelines_for_project(self, project_id: str) -> list[Pipeline]:
        cursor = await self._db.execute(
            "SELECT * FROM pipelines WHERE project_id = ? ORDER BY created_at DESC",
            (project_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_pipeline(r) for r in rows]

    async def get_active_pipeline_for_project(self, project_id: str) -> Pipeline | None:
        """Return the pending, running or paused pipeline of a project, if any."""
        placeholders = ", ".join("?" for _ in ACTIVE_PIPELINE_STATUSES)
        cursor = await self._db.execute(
            f"SELECT * FROM pipelines WHERE project_id = ? AND status IN ({placeholders}) "
            "ORDER BY created_at DESC LIMIT 1",
            (project_id, *(s.value for s in ACTIVE_PIPELINE_STATUSES)),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_pipeline(row)

    async def update_pipeline(self, pipeline: Pipeline) -> None:
        """Update a pipeline's mutable fields.

        ``current_step_progress`` is left alone; it is only written through
        ``update_progress``.
        """
        await self._db.execute(
            """
            UPDATE pipelines SET
                status = ?, current_step = ?, config = ?, steps_state = ?,
                error_message = ?, started_at = ?, completed_at = ?
            WHERE pipeline_id = ?
            """,
            (
                pipeline.status.value,
                pipeline.current_step,
                json.dumps(pipeline.config),
                _steps_state_to_json(pipeline.steps_state),
                pipeline.error_message,
                _dt_to_str(pipeline.started_at),
                _dt_to_str(pipeline.completed_at),
                pipeline.pipeline_id,
            ),
        )
        await self._db.commit()

    async def update_progress(self, pipeline_id: str, progress: int) -> None:
        await self._db.execute(
            "UPDATE pipelines SET current_step_progress = ? WHERE pipeline_id = ?",
            (progress, pipeline_id),
        )
        await self._db.commit()

    # ── Logs ─────────────────────────────────────────────────────────────────

    async def add_log(self, log: PipelineLog) -> PipelineLog:
        """Append a log row. Returns the stored entry with its id."""
        cursor = await self._db.execute(
            """
            INSERT INTO pipeline_logs (
                pipeline_id, agent_type, log_type, message, data, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                log.pipeline_id,
                log.agent_type,
                log.log_type.value,
                log.message,
                json.dumps(log.data) if log.data is not None else None,
                _dt_to_str(log.created_at),
            ),
        )
        await self._db.commit()
        return log.model_copy(update={"id": cursor.lastrowid})

    async def get_logs(
        self,
        pipeline_id: str,
        *,
        agent_type: str | None = None,
        log_type: LogType | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[PipelineLog]:
        """Logs in insertion order, optionally filtered."""
        query = "SELECT * FROM pipeline_logs WHERE pipeline_id = ?"
        params: list[Any] = [pipeline_id]
        if agent_type:
            query += " AND agent_type = ?"
            params.append(agent_type)
        if log_type:
            query += " AND log_type = ?"
            params.append(log_type.value)
        query += " ORDER BY id LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        cursor = await self._db.execute(query, params)
        rows = await cursor.fetchall()
        return [_row_to_log(r) for r in rows]

    async def count_logs(
        self,
        pipeline_id: str,
        *,
        agent_type: str | None = None,
        log_type: LogType | None = None,
    ) -> int:
        query = "SELECT COUNT(*) FROM pipeline_logs WHERE pipeline_id = ?"
        params: list[Any] = [pipeline_id]
        if agent_type:
            query += " AND agent_type = ?"
            params.append(agent_type)
        if log_type:
            query += " AND log_type = ?"
            params.append(log_type.value)
        cursor = await self._db.execute(query, params)
        row = await cursor.fetchone()
        return row[0] if row else 0


# ── Schema ───────────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipelines (
    pipeline_id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(project_id) ON DELETE CASCADE,
    pipeline_type TEXT NOT NULL DEFAULT 'video',
    mode TEXT NOT NULL DEFAULT 'auto',
    status TEXT NOT NULL DEFAULT 'pending',

    current_step TEXT,
    current_step_progress INTEGER NOT NULL DEFAULT 0,

    config TEXT NOT NULL DEFAULT '{}',
    steps_state TEXT NOT NULL DEFAULT '{}',
    error_message TEXT,

    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_pipelines_project
    ON pipelines(project_id, status);

CREATE TABLE IF NOT EXISTS pipeline_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pipeline_id TEXT NOT NULL REFERENCES pipelines(pipeline_id) ON DELETE CASCADE,
    agent_type TEXT NOT NULL,
    log_type TEXT NOT NULL DEFAULT 'info',
    message TEXT NOT NULL,
    data TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_pipeline_logs_pipeline
    ON pipeline_logs(pipeline_id, agent_type, log_type);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _steps_state_to_json(steps_state: dict[str, StepState]) -> str:
    return json.dumps({step: state.model_dump(mode="json") for step, state in steps_state.items()})


def _row_to_pipeline(row: aiosqlite.Row) -> Pipeline:
    config = row["config"]
    if isinstance(config, str):
        config = json.loads(config)
    raw_states = json.loads(row["steps_state"] or "{}")

    return Pipeline(
        pipeline_id=row["pipeline_id"],
        project_id=row["project_id"],
        pipeline_type=PipelineType(row["pipeline_type"]),
        mode=PipelineMode(row["mode"]),
        status=PipelineStatus(row["status"]),
        current_step=row["current_step"],
        current_step_progress=row["current_step_progress"] or 0,
        config=config or {},
        steps_state={step: StepState.model_validate(s) for step, s in raw_states.items()},
        error_message=row["error_message"],
        created_at=_str_to_dt(row["created_at"]) or datetime.now(timezone.utc),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )


def _row_to_log(row: aiosqlite.Row) -> PipelineLog:
    data = row["data"]
    return PipelineLog(
        id=row["id"],
        pipeline_id=row["pipeline_id"],
        agent_type=row["agent_type"],
        log_type=LogType(row["log_type"]),
        message=row["message"],
        data=json.loads(data) if data else None,
        created_at=_str_to_dt(row["created_at"]) or datetime.now(timezone.utc),
    )
