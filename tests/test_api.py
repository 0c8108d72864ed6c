"""Tests for the pipeline control API."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

import pipeforge.api as api_mod
from pipeforge.events import ProgressEvent, TopicHub
from pipeforge.generation import ProjectNotFound
from pipeforge.models import Asset, AssetType, JobLog, JobStatus, Project, ProjectStatus
from pipeforge.pipeline.engine import InvalidPipelineState, PipelineNotFound
from pipeforge.pipeline.models import (
    LogType,
    Pipeline,
    PipelineLog,
    PipelineMode,
    PipelineStatus,
    PipelineType,
    StepState,
)


def make_pipeline(**overrides) -> Pipeline:
    defaults: dict = dict(pipeline_id="pl-1", project_id="prj-1")
    defaults.update(overrides)
    return Pipeline(**defaults)


@pytest.fixture
def engine():
    engine = MagicMock()
    pipeline = make_pipeline()
    for name in (
        "create_pipeline",
        "get_pipeline",
        "start_pipeline",
        "pause_pipeline",
        "resume_pipeline",
        "cancel_pipeline",
        "retry_pipeline",
        "run_step",
    ):
        setattr(engine, name, AsyncMock(return_value=pipeline))
    engine.list_pipelines = AsyncMock(return_value=[pipeline])
    engine.get_logs = AsyncMock(
        return_value=[PipelineLog(id=1, pipeline_id="pl-1", agent_type="orchestrator", message="hi")]
    )
    engine.count_logs = AsyncMock(return_value=12)
    engine.get_step_state = AsyncMock(return_value=StepState())
    engine.list_steps = AsyncMock(return_value=[{"step": "theme_director", "is_current": True}])
    return engine


@pytest.fixture
def projects():
    projects = MagicMock()
    projects.get_project = AsyncMock(return_value=Project(project_id="prj-1", title="Neon Nights"))
    return projects


@pytest.fixture
def hub():
    return TopicHub()


@pytest.fixture
def generation():
    generation = MagicMock()
    project = Project(project_id="prj-1", title="Neon Nights", status=ProjectStatus.PROCESSING)
    generation.start_music = AsyncMock(return_value=project)
    generation.start_images = AsyncMock(return_value=project)
    return generation


@pytest.fixture
def app(engine, projects, hub, generation):
    api_mod.configure(engine, projects, hub, generation)
    app = FastAPI()
    app.include_router(api_mod.router)
    api_mod.register_exception_handlers(app)
    yield app
    api_mod._engine = api_mod._projects = api_mod._hub = api_mod._generation = None


@pytest.fixture
def client(app):
    return TestClient(app, raise_server_exceptions=False)


# ── Create ───────────────────────────────────────────────────────────────────


class TestCreatePipeline:
    def test_defaults_theme_to_project_title(self, client, engine):
        resp = client.post("/projects/prj-1/pipelines", json={})
        assert resp.status_code == 201
        assert resp.json()["message"] == "Pipeline created successfully"
        engine.create_pipeline.assert_awaited_once_with(
            "prj-1",
            PipelineType.VIDEO,
            PipelineMode.AUTO,
            {"theme": "Neon Nights", "duration": 60, "platform": "youtube"},
        )

    def test_music_video_gets_song_brief(self, client, engine):
        resp = client.post(
            "/projects/prj-1/pipelines",
            json={
                "pipeline_type": "music_video",
                "mode": "manual",
                "theme": "summer",
                "song_brief": "an upbeat summer anthem",
            },
        )
        assert resp.status_code == 201
        args = engine.create_pipeline.await_args.args
        assert args[1] == PipelineType.MUSIC_VIDEO
        assert args[2] == PipelineMode.MANUAL
        assert args[3]["song_brief"] == "an upbeat summer anthem"

    def test_unknown_project(self, client, projects):
        projects.get_project.return_value = None
        resp = client.post("/projects/prj-x/pipelines", json={})
        assert resp.status_code == 404
        assert resp.json() == {"error": "Project not found: prj-x"}

    @pytest.mark.parametrize(
        "body",
        [
            {"duration": 5},
            {"duration": 301},
            {"platform": "myspace"},
            {"pipeline_type": "podcast"},
            {"theme": "x" * 501},
        ],
    )
    def test_validation(self, client, body):
        assert client.post("/projects/prj-1/pipelines", json=body).status_code == 422

    def test_active_pipeline_conflict(self, client, engine):
        engine.create_pipeline.side_effect = InvalidPipelineState(
            "Project already has an active pipeline", PipelineStatus.RUNNING
        )
        resp = client.post("/projects/prj-1/pipelines", json={})
        assert resp.status_code == 400
        assert resp.json() == {
            "error": "Project already has an active pipeline",
            "current_status": "running",
        }


# ── Control ──────────────────────────────────────────────────────────────────


class TestControl:
    @pytest.mark.parametrize(
        "action,method,message",
        [
            ("start", "start_pipeline", "Pipeline started"),
            ("pause", "pause_pipeline", "Pipeline paused"),
            ("resume", "resume_pipeline", "Pipeline resumed"),
            ("cancel", "cancel_pipeline", "Pipeline cancelled"),
            ("retry", "retry_pipeline", "Pipeline retried"),
        ],
    )
    def test_actions(self, client, engine, action, method, message):
        resp = client.post(f"/pipelines/pl-1/{action}")
        assert resp.status_code == 200
        assert resp.json()["message"] == message
        assert resp.json()["pipeline"]["pipeline_id"] == "pl-1"
        getattr(engine, method).assert_awaited_once_with("pl-1")

    def test_not_found(self, client, engine):
        engine.start_pipeline.side_effect = PipelineNotFound("pl-x")
        resp = client.post("/pipelines/pl-x/start")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Pipeline not found: pl-x"}

    def test_invalid_state(self, client, engine):
        engine.pause_pipeline.side_effect = InvalidPipelineState(
            "Pipeline is not running", PipelineStatus.PAUSED
        )
        resp = client.post("/pipelines/pl-1/pause")
        assert resp.status_code == 400
        assert resp.json()["current_status"] == "paused"

    def test_run_step_with_body(self, client, engine):
        resp = client.post("/pipelines/pl-1/run-step", json={"step": "music_composer"})
        assert resp.status_code == 200
        assert resp.json()["message"] == "Step music_composer queued"
        engine.run_step.assert_awaited_once_with("pl-1", "music_composer")

    def test_run_step_without_body(self, client, engine):
        engine.run_step.return_value = make_pipeline(current_step="theme_director")
        resp = client.post("/pipelines/pl-1/run-step")
        assert resp.status_code == 200
        assert resp.json()["message"] == "Step theme_director queued"
        engine.run_step.assert_awaited_once_with("pl-1", None)


# ── Generation ───────────────────────────────────────────────────────────────


class TestGeneration:
    def test_music_queued(self, client, generation):
        resp = client.post("/projects/prj-1/generate/music", json={"prompt": "synthwave"})
        assert resp.status_code == 202
        assert resp.json()["message"] == "Music generation started"
        assert resp.json()["project"]["status"] == "processing"
        generation.start_music.assert_awaited_once_with(
            "prj-1", {"prompt": "synthwave", "instrumental": False}
        )

    def test_music_requires_prompt(self, client, generation):
        assert client.post("/projects/prj-1/generate/music", json={}).status_code == 422
        generation.start_music.assert_not_awaited()

    def test_images_queued_per_prompt(self, client, generation):
        resp = client.post(
            "/projects/prj-1/generate/images",
            json={
                "prompts": [{"prompt": "neon city", "name": "scene_1"}, {"prompt": "sunrise"}],
                "aspect_ratio": "9:16",
            },
        )
        assert resp.status_code == 202
        assert resp.json()["image_count"] == 2
        generation.start_images.assert_awaited_once_with(
            "prj-1",
            [
                {
                    "prompt": "neon city",
                    "name": "scene_1",
                    "provider": "nano-banana-pro",
                    "aspect_ratio": "9:16",
                    "resolution": "1K",
                },
                {
                    "prompt": "sunrise",
                    "provider": "nano-banana-pro",
                    "aspect_ratio": "9:16",
                    "resolution": "1K",
                },
            ],
        )

    @pytest.mark.parametrize(
        "body",
        [
            {"prompts": []},
            {"prompts": [{"prompt": "x"}], "aspect_ratio": "5:4"},
            {"prompts": [{"prompt": "x"}], "resolution": "8K"},
        ],
    )
    def test_images_validation(self, client, body):
        assert client.post("/projects/prj-1/generate/images", json=body).status_code == 422

    def test_unknown_project(self, client, generation):
        generation.start_music.side_effect = ProjectNotFound("prj-x")
        resp = client.post("/projects/prj-x/generate/music", json={"prompt": "x"})
        assert resp.status_code == 404
        assert resp.json() == {"error": "Project not found: prj-x"}

    def test_unconfigured_generation(self, client):
        api_mod._generation = None
        resp = client.post("/projects/prj-1/generate/music", json={"prompt": "x"})
        assert resp.status_code == 503

    def test_project_status(self, client, projects):
        projects.get_job_logs_for_project = AsyncMock(
            return_value=[
                JobLog(project_id="prj-1", job_type="generate_music", status=JobStatus.COMPLETED),
                JobLog(project_id="prj-1", job_type="generate_image", status=JobStatus.RUNNING),
            ]
        )
        projects.get_assets_for_project = AsyncMock(
            return_value=[
                Asset(project_id="prj-1", asset_type=AssetType.MUSIC),
                Asset(project_id="prj-1", asset_type=AssetType.IMAGE),
                Asset(project_id="prj-1", asset_type=AssetType.IMAGE),
            ]
        )
        resp = client.get("/projects/prj-1/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["project"]["project_id"] == "prj-1"
        assert body["jobs"]["total"] == 2
        assert body["jobs"]["running"] == 1
        assert body["progress"] == 50
        assert body["assets"] == {"music": 1, "images": 2}

    def test_project_status_unknown(self, client, projects):
        projects.get_project.return_value = None
        assert client.get("/projects/prj-x/status").status_code == 404


# ── Queries ──────────────────────────────────────────────────────────────────


class TestQueries:
    def test_get_pipeline_includes_logs(self, client, engine):
        resp = client.get("/pipelines/pl-1")
        assert resp.status_code == 200
        data = resp.json()["pipeline"]
        assert data["status"] == "pending"
        assert data["logs"][0]["message"] == "hi"
        engine.get_logs.assert_awaited_once_with("pl-1", limit=50)

    def test_list_project_pipelines(self, client):
        resp = client.get("/projects/prj-1/pipelines")
        assert [p["pipeline_id"] for p in resp.json()["pipelines"]] == ["pl-1"]

    def test_logs_filters_and_pagination(self, client, engine):
        resp = client.get(
            "/pipelines/pl-1/logs",
            params={"agent_type": "theme_director", "log_type": "error", "limit": 10, "offset": 5},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 12
        assert body["limit"] == 10
        assert body["offset"] == 5
        engine.get_logs.assert_awaited_once_with(
            "pl-1", agent_type="theme_director", log_type=LogType.ERROR, limit=10, offset=5
        )

    def test_logs_limit_bounds(self, client):
        assert client.get("/pipelines/pl-1/logs", params={"limit": 501}).status_code == 422
        assert client.get("/pipelines/pl-1/logs", params={"limit": 0}).status_code == 422

    def test_steps(self, client):
        resp = client.get("/pipelines/pl-1/steps")
        body = resp.json()
        assert body["pipeline_type"] == "video"
        assert body["steps"][0] == "theme_director"
        assert len(body["steps"]) == 5
        assert body["states"][0]["is_current"] is True

    def test_single_step(self, client, engine):
        resp = client.get("/pipelines/pl-1/steps/theme_director")
        assert resp.json() == {
            "step": "theme_director",
            "state": StepState().model_dump(mode="json"),
        }
        engine.get_step_state.assert_awaited_once_with("pl-1", "theme_director")

    def test_unconfigured_engine(self):
        api_mod._engine = None
        app = FastAPI()
        app.include_router(api_mod.router)
        resp = TestClient(app).get("/pipelines/pl-1")
        assert resp.status_code == 503


# ── Streaming ────────────────────────────────────────────────────────────────


class TestStream:
    def test_stream_unknown_pipeline(self, client, engine):
        engine.get_pipeline.side_effect = PipelineNotFound("pl-x")
        assert client.get("/pipelines/pl-x/stream").status_code == 404

    @pytest.mark.asyncio
    async def test_generator_forwards_events(self, app, hub):
        gen = api_mod._sse_generator("pl-1")
        connected = await gen.__anext__()
        assert connected.startswith("event: connected\n")
        assert '"channel": "pipeline.pl-1"' in connected

        await hub.topic("pl-1").publish(ProgressEvent(pipeline_id="pl-1", step="x", progress=40))
        frame = await gen.__anext__()
        assert frame.startswith("event: pipeline.progress\ndata: ")
        assert '"progress": 40' in frame

        await gen.aclose()
        assert hub.topic("pl-1").subscriber_count == 0

    @pytest.mark.asyncio
    async def test_generator_without_hub(self, app):
        api_mod._hub = None
        frames = [frame async for frame in api_mod._sse_generator("pl-1")]
        assert frames == ['event: error\ndata: {"error": "Event hub not configured"}\n\n']
