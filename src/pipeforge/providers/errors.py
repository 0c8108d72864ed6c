"""Provider error taxonomy.

Permanent errors mean retrying the same request cannot succeed (bad key,
no credits, invalid input). Transient errors (rate limits, provider
outages, timeouts) are retried by tenacity inside the client or by the
work queue.
"""

from __future__ import annotations

from typing import Any


class ProviderError(Exception):
    """Base for failures reported by an external generation provider."""

    def __init__(self, message: str, *, status_code: int | None = None, body: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body

    @property
    def retryable(self) -> bool:
        return False


class PermanentProviderError(ProviderError):
    pass


class TransientProviderError(ProviderError):
    @property
    def retryable(self) -> bool:
        return True


def error_for_status(status_code: int, provider: str, body: Any = None) -> ProviderError:
    """Map an HTTP error status to the matching provider error."""
    if status_code == 401:
        return PermanentProviderError("Invalid API key", status_code=401, body=body)
    if status_code == 402:
        return PermanentProviderError("Insufficient credits", status_code=402, body=body)
    if status_code == 422:
        return PermanentProviderError("Invalid request data", status_code=422, body=body)
    if status_code == 429:
        return TransientProviderError("Rate limit exceeded", status_code=429, body=body)
    if status_code >= 500:
        return TransientProviderError(
            f"{provider} server error ({status_code})", status_code=status_code, body=body
        )
    return PermanentProviderError(
        f"{provider} request failed ({status_code})", status_code=status_code, body=body
    )
