"""Configuration models and loader for pipeforge.

Reads ``pipeforge.yaml``. Secrets are never stored in the file; each
provider section names the environment variable that holds its key.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("pipeforge.yaml")


class DatabaseConfig(BaseModel):
    path: str = "pipeforge.db"


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class KieConfig(BaseModel):
    base_url: str = "https://api.kie.ai"
    api_key_env: str = "KIE_API_KEY"
    webhook_secret_env: str = "KIE_WEBHOOK_SECRET"
    callback_url: str | None = None
    timeout: float = 120.0
    max_retries: int = 3

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)

    @property
    def webhook_secret(self) -> str | None:
        return os.environ.get(self.webhook_secret_env) or None


class LLMConfig(BaseModel):
    base_url: str = "https://openrouter.ai/api/v1"
    api_key_env: str = "OPENROUTER_API_KEY"
    default_model: str = "google/gemini-2.0-flash-exp"
    timeout: float = 120.0
    max_retries: int = 3

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class PollConfig(BaseModel):
    interval: float = 5.0  # seconds between status checks
    music_max_attempts: int = 60
    image_max_attempts: int = 120  # per-scene renders in the video pipeline
    cover_max_attempts: int = 60  # single cover image in the music video pipeline


class StorageConfig(BaseModel):
    account_id_env: str = "R2_ACCOUNT_ID"
    access_key_env: str = "R2_ACCESS_KEY_ID"
    secret_key_env: str = "R2_SECRET_ACCESS_KEY"
    bucket: str = "pipeforge-assets"
    public_url: str = ""
    max_file_size: int = 100 * 1024 * 1024
    download_timeout: float = 180.0


class CleanupConfig(BaseModel):
    interval: int = 1800  # seconds between stale-state sweeps
    stale_minutes: int = 30
    job_timeout: int = 60  # minutes


class WorkerConfig(BaseModel):
    concurrency: int = 4
    webhook_tries: int = 3
    webhook_backoff: float = 60.0  # seconds


class GenerationConfig(BaseModel):
    poll_fallback: bool = True  # also poll kie.ai in case the callback never arrives
    poll_tries: int = 3


class AgentSettings(BaseModel):
    model: str | None = None  # falls back to llm.default_model
    temperature: float = 0.7
    max_tokens: int = 2000
    system_prompt: str = "You are a creative assistant in a content production pipeline."


class AgentsConfig(BaseModel):
    defaults: AgentSettings = Field(default_factory=AgentSettings)
    overrides: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def for_agent(self, agent_type: str) -> AgentSettings:
        """Get merged settings for a specific agent."""
        base = self.defaults.model_dump()
        base.update(self.overrides.get(agent_type, {}))
        return AgentSettings(**base)


class PipeforgeConfig(BaseModel):
    """Top-level configuration (matches pipeforge.yaml)."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    kie: KieConfig = Field(default_factory=KieConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    poll: PollConfig = Field(default_factory=PollConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    agents: AgentsConfig = Field(default_factory=AgentsConfig)


def load_config(path: Path | str | None = None) -> PipeforgeConfig:
    """Load configuration from YAML, falling back to defaults when absent.

    Raises:
        ValueError: If config validation fails.
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        config = PipeforgeConfig(**raw)
        logger.info("Loaded pipeforge config: %s", config_path)
    elif path:
        raise FileNotFoundError(f"pipeforge config not found: {config_path}")
    else:
        config = PipeforgeConfig()
        logger.info("No %s found, using default configuration", config_path)

    # Environment variable overrides for deployment
    db_path = os.environ.get("PIPEFORGE_DB_PATH")
    if db_path:
        config.database.path = db_path

    poll_interval = os.environ.get("PIPEFORGE_POLL_INTERVAL")
    if poll_interval:
        config.poll.interval = float(poll_interval)

    return config
