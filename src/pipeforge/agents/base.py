"""Runtime context handed to every step executor."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pipeforge.config import AgentSettings, PollConfig
from pipeforge.pipeline.models import LogType

if TYPE_CHECKING:
    from pipeforge.events import EventEmitter
    from pipeforge.providers.kie import KieClient
    from pipeforge.providers.llm import LLMClient

logger = logging.getLogger(__name__)


class StepError(RuntimeError):
    """A step executor could not produce its result."""


Executor = Callable[["AgentContext", dict[str, Any]], Awaitable[dict[str, Any]]]


@dataclass
class AgentServices:
    """Provider clients and settings shared by all executors."""

    llm: LLMClient
    kie: KieClient
    poll: PollConfig = field(default_factory=PollConfig)
    agent_settings: Callable[[str], AgentSettings] = lambda _step: AgentSettings()


@dataclass
class AgentContext:
    """What one step execution may touch.

    Executors never see the Pipeline record; they get this context plus
    the input dict built from earlier step results.
    """

    step: str
    events: EventEmitter
    llm: LLMClient
    kie: KieClient
    poll: PollConfig = field(default_factory=PollConfig)
    settings: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def create(cls, step: str, events: EventEmitter, services: AgentServices) -> AgentContext:
        return cls(
            step=step,
            events=events,
            llm=services.llm,
            kie=services.kie,
            poll=services.poll,
            settings=services.agent_settings(step),
        )

    # ── Logging ──────────────────────────────────────────────────────────

    async def info(self, message: str, data: dict[str, Any] | None = None) -> None:
        await self.events.emit(self.step, LogType.INFO, message, data)

    async def thinking(self, message: str) -> None:
        await self.events.emit(self.step, LogType.THINKING, message)

    async def progress(self, value: int, message: str | None = None) -> None:
        await self.events.emit(
            self.step, LogType.PROGRESS, message or f"Progress: {value}%", {"progress": value}
        )
        await self.events.progress(self.step, value)

    async def result(self, message: str, data: dict[str, Any]) -> None:
        await self.events.emit(self.step, LogType.RESULT, message, data)

    async def error(self, message: str, data: dict[str, Any] | None = None) -> None:
        await self.events.emit(self.step, LogType.ERROR, message, data)

    # ── LLM ──────────────────────────────────────────────────────────────

    @property
    def model(self) -> str:
        return self.settings.model or self.llm.default_model

    async def call_llm(self, prompt: str) -> dict[str, Any]:
        """Ask the configured model for a JSON object."""
        await self.thinking(f"Sending request to {self.model}...")
        return await self.llm.generate_json(
            self.settings.system_prompt,
            prompt,
            model=self.model,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )


def dig(payload: dict[str, Any], *paths: tuple[str, ...]) -> Any:
    """First non-empty value found along any of ``paths``.

    Providers nest the same field differently between endpoints and
    versions, e.g. ``data.audio_url`` vs ``audio_url``.
    """
    for path in paths:
        value: Any = payload
        for key in path:
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(key)
        if value:
            return value
    return None
