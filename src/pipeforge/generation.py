"""Standalone generation jobs — one kie.ai task per dispatched unit.

A request moves the project to ``processing`` and queues one dispatch unit
per task. Each unit records a running JobLog, submits to kie.ai (which
calls back to ``/webhooks/kie``), and creates the pending Asset the callback
will resolve.

When ``generation.poll_fallback`` is on, a poll-check unit follows the same
task so the JobLog still finishes if the callback is lost. Both paths apply
results through ``WebhookReconciler``; whichever observes the terminal
status first wins and the other is a no-op.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from pipeforge.agents.base import dig
from pipeforge.config import GenerationConfig, PollConfig
from pipeforge.models import Asset, AssetType, JobLog, JobStatus, Project, ProjectStatus
from pipeforge.providers.poller import TaskFailedError, TaskTimeoutError, poll_task
from pipeforge.providers.status import TaskState

if TYPE_CHECKING:
    from pipeforge.providers.kie import KieClient
    from pipeforge.registry import ProjectRegistry
    from pipeforge.webhook_reconciler import WebhookReconciler
    from pipeforge.worker import WorkQueue

logger = logging.getLogger(__name__)

JOB_GENERATE_MUSIC = "generate_music"
JOB_GENERATE_IMAGE = "generate_image"

_ASSET_TYPES = {
    JOB_GENERATE_MUSIC: AssetType.MUSIC,
    JOB_GENERATE_IMAGE: AssetType.IMAGE,
}
_LABELS = {
    JOB_GENERATE_MUSIC: "Music",
    JOB_GENERATE_IMAGE: "Image",
}


class ProjectNotFound(LookupError):
    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


def status_output_url(job_type: str, payload: dict[str, Any]) -> str | None:
    """Pull the generated file's URL out of a kie.ai status payload."""
    if job_type == JOB_GENERATE_MUSIC:
        clips = dig(payload, ("response", "sunoData"), ("data", "sunoData"), ("sunoData",))
        if isinstance(clips, list) and clips and isinstance(clips[0], dict):
            url = clips[0].get("audioUrl") or clips[0].get("audio_url")
            if url:
                return url
        return dig(payload, ("data", "audio_url"), ("audio_url",), ("result", "audio_url"))

    url = dig(
        payload,
        ("response", "imageUrl"),
        ("data", "output"),
        ("output",),
        ("imageUrl",),
        ("image_url",),
        ("url",),
    )
    if isinstance(url, list):
        return url[0] if url else None
    return url


class GenerationService:
    """Dispatches music and image generation for a project."""

    def __init__(
        self,
        projects: ProjectRegistry,
        kie: KieClient,
        queue: WorkQueue,
        reconciler: WebhookReconciler,
        *,
        poll: PollConfig | None = None,
        config: GenerationConfig | None = None,
    ):
        self.projects = projects
        self.kie = kie
        self.queue = queue
        self.reconciler = reconciler
        self.poll = poll or PollConfig()
        self.config = config or GenerationConfig()

    # ── Requests ─────────────────────────────────────────────────────────────

    async def start_music(self, project_id: str, config: dict[str, Any]) -> Project:
        project = await self._begin(project_id)
        await self.queue.enqueue(
            f"generate-music:{project_id}", self.dispatch, project_id, JOB_GENERATE_MUSIC, config
        )
        logger.info("Music generation queued for project %s", project_id)
        return project

    async def start_images(self, project_id: str, configs: list[dict[str, Any]]) -> Project:
        project = await self._begin(project_id)
        for index, config in enumerate(configs):
            await self.queue.enqueue(
                f"generate-image:{project_id}:{index}",
                self.dispatch,
                project_id,
                JOB_GENERATE_IMAGE,
                config,
            )
        logger.info("%d image generation(s) queued for project %s", len(configs), project_id)
        return project

    async def _begin(self, project_id: str) -> Project:
        project = await self.projects.get_project(project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        project.status = ProjectStatus.PROCESSING
        project.error_message = None
        project.completed_at = None
        await self.projects.update_project(project)
        return project

    # ── Queued Units ─────────────────────────────────────────────────────────

    async def dispatch(self, project_id: str, job_type: str, config: dict[str, Any]) -> JobLog:
        """Submit one task and record what the callback needs to find it.

        A submission failure fails the JobLog and the project, then re-raises
        so the work queue logs it. Transient provider errors were already
        retried inside the client.
        """
        job = await self.projects.create_job_log(
            JobLog(
                project_id=project_id,
                job_type=job_type,
                status=JobStatus.RUNNING,
                payload=config,
                started_at=datetime.now(timezone.utc),
            )
        )

        try:
            task_id = await self._submit(job_type, config)
        except Exception as exc:
            await self.projects.finish_job_log(job.id, JobStatus.FAILED, error_message=str(exc))
            await self.projects.set_project_terminal_if_processing(
                project_id,
                ProjectStatus.FAILED,
                f"{_LABELS[job_type]} generation failed: {exc}",
            )
            logger.error(
                "%s generation failed for project %s: %s", _LABELS[job_type], project_id, exc
            )
            raise

        asset = await self.projects.create_asset(
            Asset(
                project_id=project_id,
                asset_type=_ASSET_TYPES[job_type],
                external_task_id=task_id,
                metadata={"config": config, "job_type": job_type},
            )
        )
        await self.projects.attach_job_log_task(
            job.id, task_id, {"task_id": task_id, "asset_id": asset.id}
        )
        job.external_task_id = task_id
        logger.info(
            "%s generation started: project=%s task=%s asset=%s",
            _LABELS[job_type],
            project_id,
            task_id,
            asset.id,
        )

        if self.config.poll_fallback:
            await self.queue.enqueue(
                f"poll:{task_id}",
                self.check_task,
                job.id,
                asset.id,
                job_type,
                task_id,
                max_tries=self.config.poll_tries,
                backoff=self.poll.interval,
            )
        return job

    async def check_task(self, job_id: int, asset_id: int, job_type: str, task_id: str) -> None:
        """Poll a dispatched task and apply its terminal status.

        Stops early if the callback already finished the JobLog. A task that
        outlives the polling budget is left to the callback and the stale
        sweep.
        """
        job = await self.projects.get_job_log(job_id)
        if job is None or job.status.is_terminal:
            return

        if job_type == JOB_GENERATE_MUSIC:
            fetch, max_attempts = self.kie.music_status, self.poll.music_max_attempts
        else:
            fetch, max_attempts = self.kie.image_status, self.poll.image_max_attempts

        try:
            payload = await poll_task(
                fetch, task_id, interval=self.poll.interval, max_attempts=max_attempts
            )
        except TaskFailedError as exc:
            update = {
                **exc.payload,
                "task_id": task_id,
                "status": TaskState.FAILED.value,
                "error": str(exc),
            }
        except TaskTimeoutError as exc:
            logger.warning("Stopped polling task %s: %s", task_id, exc)
            return
        else:
            update = {
                **payload,
                "task_id": task_id,
                "status": TaskState.COMPLETED.value,
                "output_url": status_output_url(job_type, payload),
            }

        await self.reconciler.process(update, asset_id, job_id)

    async def _submit(self, job_type: str, config: dict[str, Any]) -> str:
        if job_type == JOB_GENERATE_MUSIC:
            lyrics = config.get("lyrics")
            return await self.kie.submit_music(
                lyrics or config["prompt"],
                custom_mode=bool(lyrics),
                instrumental=bool(config.get("instrumental")),
                style=config.get("style"),
                title=config.get("title"),
            )
        kwargs: dict[str, Any] = {
            "aspect_ratio": config.get("aspect_ratio") or "16:9",
            "resolution": config.get("resolution") or "1K",
        }
        if config.get("provider"):
            kwargs["model"] = config["provider"]
        return await self.kie.submit_image(config["prompt"], **kwargs)


def project_progress(jobs: list[JobLog]) -> dict[str, Any]:
    """Job counts by status and the completed share as a percentage."""
    counts = {"total": len(jobs)}
    for status in JobStatus:
        counts[status.value] = sum(1 for j in jobs if j.status == status)
    progress = round(counts[JobStatus.COMPLETED.value] / len(jobs) * 100) if jobs else 0
    return {"jobs": counts, "progress": progress}
