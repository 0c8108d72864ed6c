"""Webhook receiver — FastAPI endpoint for kie.ai task callbacks.

Verifies the optional HMAC-SHA256 signature, correlates the task with a
stored Asset or JobLog, and enqueues reconciliation. Responds 200 as soon
as the unit is queued.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from pipeforge.webhook_reconciler import extract_task_id

if TYPE_CHECKING:
    from pipeforge.registry import ProjectRegistry
    from pipeforge.webhook_reconciler import WebhookReconciler
    from pipeforge.worker import WorkQueue

logger = logging.getLogger(__name__)

router = APIRouter()

# These are set during server startup (see server.py)
_projects: ProjectRegistry | None = None
_queue: WorkQueue | None = None
_reconciler: WebhookReconciler | None = None
_secret: str | None = None
_tries: int = 3
_backoff: float = 60.0


def configure(
    projects: ProjectRegistry,
    queue: WorkQueue,
    reconciler: WebhookReconciler,
    *,
    secret: str | None = None,
    tries: int = 3,
    backoff: float = 60.0,
) -> None:
    """Wire the webhook endpoint to the registry and work queue.

    Args:
        projects: Registry used to correlate task ids.
        queue: Work queue that runs reconciliation units.
        reconciler: Applies payloads to stored records.
        secret: If set, require a valid ``X-Kie-Signature``.
        tries: Attempts per reconciliation unit.
        backoff: Seconds between attempts.
    """
    global _projects, _queue, _reconciler, _secret, _tries, _backoff
    _projects = projects
    _queue = queue
    _reconciler = reconciler
    _secret = secret
    _tries = tries
    _backoff = backoff


def verify_signature(body: bytes, signature: str, secret: str | None) -> bool:
    """Constant-time HMAC-SHA256 check of the raw body. No secret, no check."""
    if not secret:
        return True
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or "")


@router.post("/webhooks/kie")
async def handle_kie_webhook(
    request: Request,
    x_kie_signature: str = Header(default=""),
) -> JSONResponse:
    body = await request.body()

    if not verify_signature(body, x_kie_signature, _secret):
        logger.warning("Invalid kie.ai webhook signature")
        return JSONResponse({"error": "Invalid signature"}, status_code=401)

    try:
        payload: Any = json.loads(body or b"{}")
    except ValueError:
        return JSONResponse({"error": "Invalid JSON payload"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"error": "Invalid JSON payload"}, status_code=400)

    task_id = extract_task_id(payload)
    if not task_id:
        return JSONResponse({"error": "Missing task_id"}, status_code=400)

    if _projects is None or _queue is None or _reconciler is None:
        logger.error("Webhook receiver not configured, dropping task %s", task_id)
        return JSONResponse({"error": "Webhook receiver not configured"}, status_code=503)

    asset = await _projects.get_asset_by_task_id(task_id)
    job = await _projects.get_job_log_by_task_id(task_id)
    if asset is None and job is None:
        logger.warning("kie.ai webhook: no matching asset or job for task %s", task_id)
        return JSONResponse({"message": "No matching task found"})

    logger.info("kie.ai webhook received for task %s", task_id)
    await _queue.enqueue(
        f"kie-webhook:{task_id}",
        _reconciler.process,
        payload,
        asset.id if asset else None,
        job.id if job else None,
        max_tries=_tries,
        backoff=_backoff,
    )
    return JSONResponse({"message": "Webhook received"})
