"""Stale-state reconciliation — periodic sweep for stuck projects and jobs.

Runs every ``cleanup.interval`` seconds (default 30 minutes) to:
1. Diagnose projects left in ``processing`` longer than ``stale_minutes``
2. Fail JobLogs running longer than ``job_timeout``

This is the safety net for lost webhooks and dead queue workers. Project
writes only apply while the project is still ``processing``, so a webhook
that completes a project concurrently always wins.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from pipeforge.models import JobLog, JobStatus, Project, ProjectStatus

if TYPE_CHECKING:
    from pipeforge.config import CleanupConfig
    from pipeforge.registry import ProjectRegistry

logger = logging.getLogger(__name__)

NEVER_EXECUTED_MESSAGE = "Job was never executed. Queue worker may have been unavailable."
FAILED_WITHOUT_MESSAGE = "Job failed without error message"
STUCK_JOB_MESSAGE = "Job timed out - stuck in running state"
SWEPT_JOB_MESSAGE = "Job timed out - marked as failed by cleanup command"


class VerdictAction(str, enum.Enum):
    FAIL = "fail"
    COMPLETE = "complete"
    LEAVE = "leave"


@dataclass(frozen=True)
class ProjectVerdict:
    project_id: str
    action: VerdictAction
    error_message: str | None = None
    stuck_job_ids: tuple[int, ...] = ()
    reason: str = ""


@dataclass
class CleanupReport:
    dry_run: bool = False
    stale_projects_found: int = 0
    projects_cleaned: int = 0
    stale_jobs_found: int = 0
    jobs_failed: int = 0
    verdicts: list[ProjectVerdict] = field(default_factory=list)

    def summary(self) -> str:
        prefix = "[DRY RUN] Would have cleaned" if self.dry_run else "Cleaned"
        return (
            f"{prefix} {self.projects_cleaned} of {self.stale_projects_found} stale projects; "
            f"{self.stale_jobs_found} jobs stuck in running"
        )


def diagnose_project(
    project: Project,
    job_logs: list[JobLog],
    now: datetime,
    job_timeout: int,
) -> ProjectVerdict:
    """Decide what to do with a project stuck in ``processing``.

    Pure: the same inputs always give the same verdict.
    """
    pid = project.project_id
    if not job_logs:
        return ProjectVerdict(pid, VerdictAction.FAIL, NEVER_EXECUTED_MESSAGE, reason="no jobs")

    if all(j.status == JobStatus.COMPLETED for j in job_logs):
        return ProjectVerdict(pid, VerdictAction.COMPLETE, reason="all jobs completed")

    failed = next((j for j in job_logs if j.status == JobStatus.FAILED), None)
    if failed is not None:
        return ProjectVerdict(
            pid,
            VerdictAction.FAIL,
            failed.error_message or FAILED_WITHOUT_MESSAGE,
            reason="failed jobs",
        )

    cutoff = now - timedelta(minutes=job_timeout)
    stuck = tuple(
        j.id
        for j in job_logs
        if j.status == JobStatus.RUNNING and j.started_at is not None and j.started_at < cutoff
    )
    if stuck:
        return ProjectVerdict(
            pid,
            VerdictAction.FAIL,
            f"Jobs stuck in running state for more than {job_timeout} minutes",
            stuck_job_ids=stuck,
            reason="stuck jobs",
        )

    pending = sum(1 for j in job_logs if j.status == JobStatus.PENDING)
    return ProjectVerdict(pid, VerdictAction.LEAVE, reason=f"{pending} pending jobs")


class StaleStateReconciler:
    """Periodic background cleanup of stuck projects and jobs."""

    def __init__(self, config: CleanupConfig, projects: ProjectRegistry):
        self.config = config
        self.projects = projects

        self.interval = config.interval
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="stale-reconciliation")
        logger.info("Stale-state reconciler started (interval=%ds)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Stale-state reconciler stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.reconcile()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Reconciliation error")

    async def reconcile(
        self,
        *,
        dry_run: bool = False,
        stale_minutes: int | None = None,
        job_timeout: int | None = None,
        now: datetime | None = None,
    ) -> CleanupReport:
        """Run one pass. Under ``dry_run`` verdicts are reported, not applied."""
        stale_minutes = self.config.stale_minutes if stale_minutes is None else stale_minutes
        job_timeout = self.config.job_timeout if job_timeout is None else job_timeout
        now = now or datetime.now(timezone.utc)
        report = CleanupReport(dry_run=dry_run)

        stale = await self.projects.get_stale_projects(now - timedelta(minutes=stale_minutes))
        report.stale_projects_found = len(stale)
        if stale:
            logger.info(
                "Found %d projects processing for more than %d minutes", len(stale), stale_minutes
            )

        for project in stale:
            jobs = await self.projects.get_job_logs_for_project(project.project_id)
            verdict = diagnose_project(project, jobs, now, job_timeout)
            report.verdicts.append(verdict)
            if verdict.action == VerdictAction.LEAVE:
                logger.debug("Project %s left alone: %s", project.project_id, verdict.reason)
                continue
            logger.warning(
                "Project %s: %s, marking %s",
                project.project_id,
                verdict.reason,
                "completed" if verdict.action == VerdictAction.COMPLETE else "failed",
            )
            if dry_run or await self._apply(verdict):
                report.projects_cleaned += 1

        stuck = await self.projects.get_stuck_job_logs(now - timedelta(minutes=job_timeout))
        report.stale_jobs_found = len(stuck)
        for job in stuck:
            logger.warning(
                "Job log %s (project %s, type %s) stuck in running",
                job.id,
                job.project_id,
                job.job_type,
            )
            if dry_run:
                continue
            if await self.projects.finish_job_log(
                job.id, JobStatus.FAILED, error_message=SWEPT_JOB_MESSAGE
            ):
                report.jobs_failed += 1

        logger.info(
            "Stale-state reconciliation done: dry_run=%s stale_projects=%d cleaned=%d stale_jobs=%d",
            dry_run,
            report.stale_projects_found,
            report.projects_cleaned,
            report.stale_jobs_found,
        )
        return report

    async def _apply(self, verdict: ProjectVerdict) -> bool:
        for job_id in verdict.stuck_job_ids:
            await self.projects.finish_job_log(
                job_id, JobStatus.FAILED, error_message=STUCK_JOB_MESSAGE
            )
        if verdict.action == VerdictAction.COMPLETE:
            return await self.projects.set_project_terminal_if_processing(
                verdict.project_id, ProjectStatus.COMPLETED
            )
        return await self.projects.set_project_terminal_if_processing(
            verdict.project_id, ProjectStatus.FAILED, verdict.error_message
        )
