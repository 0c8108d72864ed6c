"""Shared fixtures: a temp SQLite database with both registries."""

from __future__ import annotations

import pytest_asyncio

from pipeforge.models import Project, ProjectStatus
from pipeforge.pipeline.registry import PipelineRegistry
from pipeforge.registry import ProjectRegistry


@pytest_asyncio.fixture
async def projects(tmp_path):
    reg = ProjectRegistry(str(tmp_path / "test.db"))
    await reg.initialize()
    yield reg
    await reg.close()


@pytest_asyncio.fixture
async def pipeline_registry(projects):
    reg = PipelineRegistry(projects.db)
    await reg.initialize()
    return reg


@pytest_asyncio.fixture
async def project(projects):
    return await projects.create_project(
        Project(project_id="prj-1", title="Neon Nights", status=ProjectStatus.PROCESSING)
    )
