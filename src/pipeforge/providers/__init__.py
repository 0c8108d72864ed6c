"""External generation providers.

Key exports:
    KieClient — music and image generation (kie.ai)
    LLMClient — chat completions (OpenRouter-compatible)
    poll_task — cancellable status poller
    TaskState, normalize_status, extract_status — shared status vocabulary
"""

from pipeforge.providers.errors import (
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from pipeforge.providers.kie import KieClient
from pipeforge.providers.llm import LLMClient
from pipeforge.providers.poller import TaskFailedError, TaskTimeoutError, poll_task
from pipeforge.providers.status import TaskState, extract_status, normalize_status

__all__ = [
    "KieClient",
    "LLMClient",
    "PermanentProviderError",
    "ProviderError",
    "TaskFailedError",
    "TaskState",
    "TaskTimeoutError",
    "TransientProviderError",
    "extract_status",
    "normalize_status",
    "poll_task",
]
