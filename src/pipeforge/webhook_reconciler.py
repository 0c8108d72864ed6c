"""Applies provider webhook payloads to JobLogs, Assets and Projects.

Runs as a queued unit (see ``pipeforge.webhook``), so it must tolerate
redelivery: a finished JobLog is never rewritten and an Asset's permanent
URL is only set once.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from pipeforge.models import Asset, JobLog, JobStatus, ProjectStatus
from pipeforge.providers.status import TaskState, extract_error, extract_status, normalize_status
from pipeforge.storage import (
    StorageError,
    extension_from_url,
    generate_asset_path,
    guess_extension,
)

if TYPE_CHECKING:
    from pipeforge.registry import ProjectRegistry
    from pipeforge.storage import Storage

logger = logging.getLogger(__name__)

JOBS_FAILED_MESSAGE = "One or more generation jobs failed"


def extract_task_id(payload: dict[str, Any]) -> str | None:
    task_id = payload.get("task_id") or payload.get("id")
    return str(task_id) if task_id else None


def extract_output_url(payload: dict[str, Any]) -> str | None:
    """``output_url``, ``url``, ``result.url`` or ``data.url``, first one set."""
    url = payload.get("output_url") or payload.get("url")
    if url:
        return url
    for key in ("result", "data"):
        nested = payload.get(key)
        if isinstance(nested, dict) and nested.get("url"):
            return nested["url"]
    return None


class WebhookReconciler:
    """Moves stored records forward from one webhook delivery."""

    def __init__(self, projects: ProjectRegistry, storage: Storage):
        self.projects = projects
        self.storage = storage
        # One upload per asset at a time within this process
        self._asset_locks: weakref.WeakValueDictionary[int, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def process(
        self,
        payload: dict[str, Any],
        asset_id: int | None = None,
        job_log_id: int | None = None,
    ) -> None:
        raw_status = extract_status(payload)
        state = normalize_status(raw_status)
        logger.info(
            "Processing kie.ai webhook: task=%s status=%s asset=%s job_log=%s",
            extract_task_id(payload),
            raw_status,
            asset_id,
            job_log_id,
        )

        if job_log_id is not None:
            job = await self.projects.get_job_log(job_log_id)
            if job is not None:
                await self._update_job_log(job, state, raw_status, payload)

        asset = await self.projects.get_asset(asset_id) if asset_id is not None else None
        if asset is not None:
            if state == TaskState.COMPLETED:
                await self._store_asset(asset, payload)
            await self._check_project_completion(asset.project_id)

    async def _update_job_log(
        self,
        job: JobLog,
        state: TaskState,
        raw_status: Any,
        payload: dict[str, Any],
    ) -> None:
        if job.status.is_terminal:
            logger.debug("Job log %s already %s, ignoring webhook", job.id, job.status.value)
            return

        if state == TaskState.COMPLETED:
            changed = await self.projects.finish_job_log(
                job.id, JobStatus.COMPLETED, result=payload
            )
        elif state == TaskState.FAILED:
            changed = await self.projects.finish_job_log(
                job.id, JobStatus.FAILED, result=payload, error_message=extract_error(payload)
            )
        elif raw_status is not None:
            changed = await self.projects.mark_job_log_running(job.id, result=payload)
        else:
            return

        if not changed:
            logger.debug("Job log %s was updated concurrently, skipping", job.id)

    async def _store_asset(self, asset: Asset, payload: dict[str, Any]) -> None:
        lock = self._asset_locks.get(asset.id)
        if lock is None:
            lock = asyncio.Lock()
            self._asset_locks[asset.id] = lock
        async with lock:
            current = await self.projects.get_asset(asset.id)
            if current is not None:
                await self._upload_asset(current, payload)

    async def _upload_asset(self, asset: Asset, payload: dict[str, Any]) -> None:
        if asset.is_resolved:
            logger.info("Asset %s already stored at %s, skipping upload", asset.id, asset.permanent_url)
            return

        output_url = extract_output_url(payload)
        if not output_url:
            logger.warning("No output URL in webhook payload for asset %s", asset.id)
            return

        try:
            extension = extension_from_url(output_url) or guess_extension(asset.asset_type.value)
            path = generate_asset_path(asset.project_id, asset.asset_type.value, extension)
            permanent_url = await self.storage.upload_from_url(output_url, path)
        except StorageError as e:
            if e.retryable:
                logger.warning(
                    "Storage upload for asset %s failed, will retry: %s (code=%d)",
                    asset.id,
                    e.message,
                    e.code,
                )
                raise
            await self._mark_asset_failed(asset, e)
            return
        except Exception as e:
            await self._mark_asset_failed(asset, e)
            return

        stored = await self.projects.set_asset_url(
            asset.id,
            permanent_url,
            {
                "original_url": output_url,
                "webhook_data": payload,
                "processed_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        if stored:
            logger.info("Asset %s uploaded to %s", asset.id, permanent_url)
        else:
            logger.info("Asset %s was stored concurrently, discarding %s", asset.id, permanent_url)

    async def _mark_asset_failed(self, asset: Asset, exc: Exception) -> None:
        logger.error(
            "Failed to process asset %s (%s): %s", asset.id, exc.__class__.__name__, exc
        )
        await self.projects.update_asset_metadata(
            asset.id,
            {"error": str(exc), "failed_at": datetime.now(timezone.utc).isoformat()},
        )

    async def _check_project_completion(self, project_id: str) -> None:
        """Derive the project's terminal status once no job is outstanding."""
        project = await self.projects.get_project(project_id)
        if project is None or project.status != ProjectStatus.PROCESSING:
            return

        jobs = await self.projects.get_job_logs_for_project(project_id)
        if any(not j.status.is_terminal for j in jobs):
            return

        if any(j.status == JobStatus.FAILED for j in jobs):
            changed = await self.projects.set_project_terminal_if_processing(
                project_id, ProjectStatus.FAILED, JOBS_FAILED_MESSAGE
            )
            status = ProjectStatus.FAILED
        else:
            changed = await self.projects.set_project_terminal_if_processing(
                project_id, ProjectStatus.COMPLETED
            )
            status = ProjectStatus.COMPLETED
        if changed:
            logger.info("Project %s marked %s", project_id, status.value)
