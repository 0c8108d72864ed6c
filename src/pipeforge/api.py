"""Pipeline control API — REST endpoints plus a live SSE stream.

Endpoints:
    POST /projects/{project_id}/pipelines       create a pipeline
    GET  /projects/{project_id}/pipelines       list a project's pipelines
    GET  /pipelines/{id}                        pipeline with recent logs
    POST /pipelines/{id}/start|pause|resume|cancel|retry
    POST /pipelines/{id}/run-step               manual-mode step trigger
    GET  /pipelines/{id}/logs                   filtered, paginated logs
    GET  /pipelines/{id}/steps                  ordered step ids with state
    GET  /pipelines/{id}/steps/{step}           one step's state
    GET  /pipelines/{id}/stream                 SSE progress/log events
    POST /projects/{project_id}/generate/music  queue one music generation
    POST /projects/{project_id}/generate/images queue one image generation per prompt
    GET  /projects/{project_id}/status         job counts and progress
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Literal

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from pipeforge.generation import ProjectNotFound, project_progress
from pipeforge.models import AssetType
from pipeforge.pipeline.engine import InvalidPipelineState, PipelineNotFound
from pipeforge.pipeline.models import LogType, PipelineMode, PipelineType

if TYPE_CHECKING:
    from pipeforge.events import TopicHub
    from pipeforge.generation import GenerationService
    from pipeforge.pipeline.engine import PipelineEngine
    from pipeforge.registry import ProjectRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["pipelines"])

# Module-level references (configured at startup)
_engine: PipelineEngine | None = None
_projects: ProjectRegistry | None = None
_hub: TopicHub | None = None
_generation: GenerationService | None = None

SSE_HEARTBEAT_SECONDS = 30.0
_RECENT_LOGS = 50


def configure(
    engine: PipelineEngine,
    projects: ProjectRegistry,
    hub: TopicHub,
    generation: GenerationService | None = None,
) -> None:
    """Configure the pipeline router with required dependencies."""
    global _engine, _projects, _hub, _generation
    _engine = engine
    _projects = projects
    _hub = hub
    _generation = generation
    logger.info("Pipeline API configured")


def register_exception_handlers(app: FastAPI) -> None:
    """Map engine errors to ``{"error": ...}`` responses."""

    @app.exception_handler(PipelineNotFound)
    async def _not_found(request: Request, exc: PipelineNotFound) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=404)

    @app.exception_handler(ProjectNotFound)
    async def _project_not_found(request: Request, exc: ProjectNotFound) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=404)

    @app.exception_handler(InvalidPipelineState)
    async def _invalid_state(request: Request, exc: InvalidPipelineState) -> JSONResponse:
        body: dict[str, str | None] = {"error": str(exc)}
        body["current_status"] = exc.current_status.value if exc.current_status else None
        return JSONResponse(body, status_code=400)


def _require_engine() -> PipelineEngine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Pipeline engine not available")
    return _engine


# ── Request Models ───────────────────────────────────────────────────────────


class CreatePipelineRequest(BaseModel):
    pipeline_type: PipelineType = PipelineType.VIDEO
    mode: PipelineMode = PipelineMode.AUTO
    theme: str | None = Field(default=None, max_length=500)
    song_brief: str | None = Field(default=None, max_length=2000)
    duration: int = Field(default=60, ge=15, le=300)
    platform: Literal["youtube", "tiktok", "instagram"] = "youtube"


class RunStepRequest(BaseModel):
    step: str | None = None


class GenerateMusicRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=1000)
    lyrics: str | None = Field(default=None, max_length=5000)
    title: str | None = Field(default=None, max_length=255)
    style: str | None = Field(default=None, max_length=100)
    instrumental: bool = False


class ImagePrompt(BaseModel):
    prompt: str = Field(min_length=1, max_length=10000)
    name: str | None = Field(default=None, max_length=100)


class GenerateImagesRequest(BaseModel):
    prompts: list[ImagePrompt] = Field(min_length=1)
    provider: Literal["nano-banana", "nano-banana-pro"] = "nano-banana-pro"
    aspect_ratio: Literal["1:1", "2:3", "3:2", "4:3", "9:16", "16:9", "21:9"] = "16:9"
    resolution: Literal["1K", "2K", "4K"] = "1K"


# ── Lifecycle ────────────────────────────────────────────────────────────────


@router.post("/projects/{project_id}/pipelines", status_code=201)
async def create_pipeline(project_id: str, body: CreatePipelineRequest):
    engine = _require_engine()
    if _projects is not None:
        project = await _projects.get_project(project_id)
        if project is None:
            return JSONResponse({"error": f"Project not found: {project_id}"}, status_code=404)
        title = project.title
    else:
        title = ""

    theme = body.theme or title
    config = {"theme": theme, "duration": body.duration, "platform": body.platform}
    if body.pipeline_type == PipelineType.MUSIC_VIDEO:
        config["song_brief"] = body.song_brief or theme

    pipeline = await engine.create_pipeline(project_id, body.pipeline_type, body.mode, config)
    return {
        "message": "Pipeline created successfully",
        "pipeline": pipeline.model_dump(mode="json"),
    }


@router.get("/projects/{project_id}/pipelines")
async def list_project_pipelines(project_id: str):
    engine = _require_engine()
    pipelines = await engine.list_pipelines(project_id)
    return {"pipelines": [p.model_dump(mode="json") for p in pipelines]}


@router.get("/pipelines/{pipeline_id}")
async def get_pipeline(pipeline_id: str):
    engine = _require_engine()
    pipeline = await engine.get_pipeline(pipeline_id)
    logs = await engine.get_logs(pipeline_id, limit=_RECENT_LOGS)
    data = pipeline.model_dump(mode="json")
    data["logs"] = [entry.model_dump(mode="json") for entry in logs]
    return {"pipeline": data}


@router.post("/pipelines/{pipeline_id}/start")
async def start_pipeline(pipeline_id: str):
    pipeline = await _require_engine().start_pipeline(pipeline_id)
    return {"message": "Pipeline started", "pipeline": pipeline.model_dump(mode="json")}


@router.post("/pipelines/{pipeline_id}/pause")
async def pause_pipeline(pipeline_id: str):
    pipeline = await _require_engine().pause_pipeline(pipeline_id)
    return {"message": "Pipeline paused", "pipeline": pipeline.model_dump(mode="json")}


@router.post("/pipelines/{pipeline_id}/resume")
async def resume_pipeline(pipeline_id: str):
    pipeline = await _require_engine().resume_pipeline(pipeline_id)
    return {"message": "Pipeline resumed", "pipeline": pipeline.model_dump(mode="json")}


@router.post("/pipelines/{pipeline_id}/cancel")
async def cancel_pipeline(pipeline_id: str):
    pipeline = await _require_engine().cancel_pipeline(pipeline_id)
    return {"message": "Pipeline cancelled", "pipeline": pipeline.model_dump(mode="json")}


@router.post("/pipelines/{pipeline_id}/retry")
async def retry_pipeline(pipeline_id: str):
    pipeline = await _require_engine().retry_pipeline(pipeline_id)
    return {"message": "Pipeline retried", "pipeline": pipeline.model_dump(mode="json")}


@router.post("/pipelines/{pipeline_id}/run-step")
async def run_step(pipeline_id: str, body: RunStepRequest | None = None):
    step = body.step if body else None
    pipeline = await _require_engine().run_step(pipeline_id, step)
    return {
        "message": f"Step {step or pipeline.current_step} queued",
        "pipeline": pipeline.model_dump(mode="json"),
    }


# ── Generation ───────────────────────────────────────────────────────────────


def _require_generation() -> GenerationService:
    if _generation is None:
        raise HTTPException(status_code=503, detail="Generation service not available")
    return _generation


@router.post("/projects/{project_id}/generate/music", status_code=202)
async def generate_music(project_id: str, body: GenerateMusicRequest):
    project = await _require_generation().start_music(
        project_id, body.model_dump(exclude_none=True)
    )
    return {"message": "Music generation started", "project": project.model_dump(mode="json")}


@router.post("/projects/{project_id}/generate/images", status_code=202)
async def generate_images(project_id: str, body: GenerateImagesRequest):
    configs = [
        {
            **prompt.model_dump(exclude_none=True),
            "provider": body.provider,
            "aspect_ratio": body.aspect_ratio,
            "resolution": body.resolution,
        }
        for prompt in body.prompts
    ]
    project = await _require_generation().start_images(project_id, configs)
    return {
        "message": "Image generation started",
        "image_count": len(configs),
        "project": project.model_dump(mode="json"),
    }


@router.get("/projects/{project_id}/status")
async def project_status(project_id: str):
    if _projects is None:
        raise HTTPException(status_code=503, detail="Project registry not available")
    project = await _projects.get_project(project_id)
    if project is None:
        raise ProjectNotFound(project_id)
    jobs = await _projects.get_job_logs_for_project(project_id)
    assets = await _projects.get_assets_for_project(project_id)
    return {
        "project": project.model_dump(mode="json"),
        **project_progress(jobs),
        "assets": {
            "music": sum(1 for a in assets if a.asset_type == AssetType.MUSIC),
            "images": sum(1 for a in assets if a.asset_type == AssetType.IMAGE),
        },
    }


# ── Queries ──────────────────────────────────────────────────────────────────


@router.get("/pipelines/{pipeline_id}/logs")
async def get_logs(
    pipeline_id: str,
    agent_type: str | None = Query(default=None),
    log_type: LogType | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    engine = _require_engine()
    logs = await engine.get_logs(
        pipeline_id, agent_type=agent_type, log_type=log_type, limit=limit, offset=offset
    )
    total = await engine.count_logs(pipeline_id, agent_type=agent_type, log_type=log_type)
    return {
        "logs": [entry.model_dump(mode="json") for entry in logs],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/pipelines/{pipeline_id}/steps")
async def get_steps(pipeline_id: str):
    engine = _require_engine()
    pipeline = await engine.get_pipeline(pipeline_id)
    return {
        "pipeline_type": pipeline.pipeline_type.value,
        "steps": pipeline.steps,
        "states": await engine.list_steps(pipeline_id),
    }


@router.get("/pipelines/{pipeline_id}/steps/{step}")
async def get_step(pipeline_id: str, step: str):
    state = await _require_engine().get_step_state(pipeline_id, step)
    return {"step": step, "state": state.model_dump(mode="json")}


# ── SSE Streaming ────────────────────────────────────────────────────────────


async def _sse_generator(pipeline_id: str):
    """Stream one pipeline's topic until the client disconnects.

    Delivery is best-effort; clients refetch the pipeline after reconnecting.
    """
    if _hub is None:
        yield 'event: error\ndata: {"error": "Event hub not configured"}\n\n'
        return

    topic = _hub.topic(pipeline_id)
    queue = await topic.subscribe()
    try:
        yield f'event: connected\ndata: {{"channel": "{topic.name}"}}\n\n'
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=SSE_HEARTBEAT_SECONDS)
                yield f"event: {event.event}\ndata: {event.to_sse_data()}\n\n"
            except asyncio.TimeoutError:
                yield "event: heartbeat\ndata: {}\n\n"
            except asyncio.CancelledError:
                break
    finally:
        await topic.unsubscribe(queue)
        _hub.discard(pipeline_id)


@router.get("/pipelines/{pipeline_id}/stream")
async def stream_pipeline(pipeline_id: str):
    """Stream ``pipeline.progress``, ``pipeline.log`` and ``pipeline.step.completed`` events.

    Connect with EventSource::

        const es = new EventSource('/pipelines/pl-abc123/stream');
        es.addEventListener('pipeline.progress', (e) => console.log(JSON.parse(e.data)));
    """
    await _require_engine().get_pipeline(pipeline_id)
    return StreamingResponse(
        _sse_generator(pipeline_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
