"""OpenRouter-compatible chat completions client."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pipeforge.providers.errors import (
    PermanentProviderError,
    TransientProviderError,
    error_for_status,
)

logger = logging.getLogger(__name__)

OPENROUTER_API = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "google/gemini-2.0-flash-exp"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2000

JSON_INSTRUCTION = (
    "\n\nIMPORTANT: You must respond with valid JSON only. "
    "No markdown, no explanation, just the JSON object."
)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_OBJECT_SPAN = re.compile(r"\{[\s\S]*\}")


class LLMClient:
    """Async chat-completions client."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str = OPENROUTER_API,
        default_model: str = DEFAULT_MODEL,
        timeout: float = 120.0,
        max_retries: int = 3,
        retry_backoff: float = 2.0,
        app_name: str = "pipeforge",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.default_model = default_model
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.app_name = app_name
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key or ''}",
                "Content-Type": "application/json",
                "X-Title": self.app_name,
            },
            timeout=self.timeout,
            transport=self._transport,
        )
        logger.info("LLM client started (%s)", self.base_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("LLM client not started")
        return self._client

    async def chat(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str | None = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> str:
        """Single-turn chat. Returns the assistant message content."""
        payload = {
            "model": model or self.default_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        response = await self._request(payload)
        return extract_content(response)

    async def generate_json(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str | None = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> dict[str, Any]:
        """Chat in JSON mode and parse the reply into a dict."""
        payload = {
            "model": model or self.default_model,
            "messages": [
                {"role": "system", "content": system_prompt + JSON_INSTRUCTION},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }
        response = await self._request(payload)
        return parse_json(extract_content(response))

    async def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_retries)),
            wait=wait_exponential(multiplier=self.retry_backoff, min=self.retry_backoff, max=30),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._do_request(payload)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _do_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self.client.post("/chat/completions", json=payload)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientProviderError(f"LLM request failed: {exc}") from exc

        if not resp.is_success:
            try:
                body = resp.json()
            except ValueError:
                body = resp.text
            logger.error("LLM API error %d: %s", resp.status_code, str(body)[:200])
            raise error_for_status(resp.status_code, "LLM", body)

        try:
            return resp.json()
        except ValueError as exc:
            raise PermanentProviderError("LLM returned a malformed response") from exc


def extract_content(response: dict[str, Any]) -> str:
    try:
        return response["choices"][0]["message"]["content"] or ""
    except (KeyError, IndexError, TypeError):
        return response.get("content") or ""


def parse_json(content: str) -> dict[str, Any]:
    """Parse a JSON object from model output.

    Tries the raw text, then the first fenced code block, then the widest
    ``{...}`` span.
    """
    candidates = [content]
    fenced = _FENCED_BLOCK.search(content)
    if fenced:
        candidates.append(fenced.group(1))
    span = _OBJECT_SPAN.search(content)
    if span:
        candidates.append(span.group(0))

    for candidate in candidates:
        try:
            decoded = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(decoded, dict):
            return decoded

    raise PermanentProviderError(f"Failed to parse JSON response: {content[:200]}")
