"""pipeforge server — FastAPI application that ties all components together.

Startup sequence:
1. Load pipeforge.yaml
2. Initialize SQLite database (projects, assets, job logs, pipelines)
3. Start provider clients (kie.ai, LLM) and storage
4. Start the work queue
5. Create the pipeline engine, dispatching steps onto the work queue
6. Start the stale-state reconciler
7. Create the generation service
8. Begin accepting API calls and webhooks

Shutdown:
1. Stop the reconciler
2. Stop the work queue (in-flight steps are cancelled)
3. Close provider clients
4. Close database
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from pipeforge.agents import AgentServices
from pipeforge.api import configure as configure_api
from pipeforge.api import register_exception_handlers
from pipeforge.api import router as api_router
from pipeforge.config import PipeforgeConfig, load_config
from pipeforge.events import TopicHub
from pipeforge.generation import GenerationService
from pipeforge.pipeline.engine import PipelineEngine
from pipeforge.pipeline.registry import PipelineRegistry
from pipeforge.providers import KieClient, LLMClient
from pipeforge.reconciliation import StaleStateReconciler
from pipeforge.registry import ProjectRegistry
from pipeforge.storage import R2Storage
from pipeforge.webhook import configure as configure_webhook
from pipeforge.webhook import router as webhook_router
from pipeforge.webhook_reconciler import WebhookReconciler
from pipeforge.worker import WorkQueue

logger = logging.getLogger(__name__)


class PipeforgeServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, config_path: Path | None = None):
        self.config_path = config_path

        # Components (initialized in start())
        self.config: PipeforgeConfig | None = None
        self.projects: ProjectRegistry | None = None
        self.pipeline_registry: PipelineRegistry | None = None
        self.hub = TopicHub()
        self.kie: KieClient | None = None
        self.llm: LLMClient | None = None
        self.storage: R2Storage | None = None
        self.queue: WorkQueue | None = None
        self.engine: PipelineEngine | None = None
        self.reconciler: StaleStateReconciler | None = None
        self.webhook_reconciler: WebhookReconciler | None = None
        self.generation: GenerationService | None = None

    async def start(self) -> None:
        """Initialize all components and start background loops."""
        # 1. Load config
        self.config = load_config(self.config_path)
        config = self.config

        # 2. Initialize database; pipelines share the project connection
        self.projects = ProjectRegistry(config.database.path)
        await self.projects.initialize()
        self.pipeline_registry = PipelineRegistry(self.projects.db)
        await self.pipeline_registry.initialize()

        # 3. Providers and storage
        if not config.kie.api_key:
            logger.warning("%s is not set; kie.ai requests will fail", config.kie.api_key_env)
        if not config.llm.api_key:
            logger.warning("%s is not set; LLM requests will fail", config.llm.api_key_env)
        self.kie = KieClient(
            api_key=config.kie.api_key,
            base_url=config.kie.base_url,
            timeout=config.kie.timeout,
            max_retries=config.kie.max_retries,
            callback_url=config.kie.callback_url,
        )
        await self.kie.start()
        self.llm = LLMClient(
            api_key=config.llm.api_key,
            base_url=config.llm.base_url,
            default_model=config.llm.default_model,
            timeout=config.llm.timeout,
            max_retries=config.llm.max_retries,
        )
        await self.llm.start()
        self.storage = R2Storage.from_config(config.storage)

        # 4. Work queue
        self.queue = WorkQueue(concurrency=config.worker.concurrency)
        await self.queue.start()

        # 5. Pipeline engine
        services = AgentServices(
            llm=self.llm,
            kie=self.kie,
            poll=config.poll,
            agent_settings=config.agents.for_agent,
        )
        self.engine = PipelineEngine(
            self.pipeline_registry, self.hub, services, dispatcher=self._enqueue_step
        )

        # 6. Stale-state reconciler
        self.reconciler = StaleStateReconciler(config.cleanup, self.projects)
        await self.reconciler.start()

        # 7. Generation jobs share the webhook reconciler with the callback path
        self.webhook_reconciler = WebhookReconciler(self.projects, self.storage)
        self.generation = GenerationService(
            self.projects,
            self.kie,
            self.queue,
            self.webhook_reconciler,
            poll=config.poll,
            config=config.generation,
        )
        if not config.kie.callback_url:
            logger.warning("No kie.ai callback URL configured, generation relies on polling")

        # 8. Wire routers
        configure_api(self.engine, self.projects, self.hub, self.generation)
        configure_webhook(
            self.projects,
            self.queue,
            self.webhook_reconciler,
            secret=config.kie.webhook_secret,
            tries=config.worker.webhook_tries,
            backoff=config.worker.webhook_backoff,
        )
        if not config.kie.webhook_secret:
            logger.warning("No kie.ai webhook secret configured, skipping signature verification")

        logger.info("pipeforge server started (db=%s)", config.database.path)

    async def _enqueue_step(self, pipeline_id: str, step: str) -> None:
        # Step failures are final; the engine records them on the pipeline
        await self.queue.enqueue(
            f"step:{pipeline_id}:{step}", self.engine.execute_step, pipeline_id, step, max_tries=1
        )

    async def stop(self) -> None:
        """Graceful shutdown — stop all components."""
        logger.info("pipeforge server shutting down")

        if self.reconciler:
            await self.reconciler.stop()
        if self.queue:
            await self.queue.stop()
        if self.kie:
            await self.kie.close()
        if self.llm:
            await self.llm.close()
        if self.projects:
            await self.projects.close()

        logger.info("pipeforge server stopped")


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = PipeforgeServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(config_path: Path | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = PipeforgeServer(config_path)

    app = FastAPI(
        title="pipeforge",
        version="0.1.0",
        description="Multi-step AI content generation pipelines",
        lifespan=lifespan,
    )

    # Mount routes
    app.include_router(webhook_router)
    app.include_router(api_router)
    register_exception_handlers(app)

    @app.get("/health")
    async def health():
        """Health check endpoint with operational metrics."""
        return {
            "status": "ok",
            "database": _server.config.database.path if _server.config else None,
            "queue_depth": _server.queue.pending if _server.queue else 0,
            "workers": _server.queue.concurrency if _server.queue else 0,
        }

    return app
