"""kie.ai API client — music (Suno) and image (Nano Banana) generation.

Every request goes through ``_request``, which unwraps the ``data``
envelope, maps HTTP failures onto the provider error taxonomy, and retries
transient failures with tenacity. Permanent failures propagate immediately.
"""

from __future__ import annotations

import logging
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

KIE_API = "https://api.kie.ai"

MUSIC_MODEL = "V5"
IMAGE_MODEL = "nano-banana-pro"


class KieClient:
    """Async kie.ai client."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str = KIE_API,
        timeout: float = 120.0,
        max_retries: int = 3,
        retry_backoff: float = 2.0,
        callback_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.callback_url = callback_url
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key or ''}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            transport=self._transport,
        )
        logger.info("kie.ai client started (%s)", self.base_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("kie.ai client not started")
        return self._client

    # ── Music ────────────────────────────────────────────────────────────

    async def submit_music(
        self,
        prompt: str,
        *,
        model: str = MUSIC_MODEL,
        custom_mode: bool = False,
        instrumental: bool = False,
        style: str | None = None,
        title: str | None = None,
    ) -> str:
        """Start a Suno generation. Returns the provider task id."""
        payload: dict[str, Any] = {
            "prompt": prompt,
            "model": model,
            "customMode": custom_mode,
            "instrumental": instrumental,
        }
        if self.callback_url:
            payload["callBackUrl"] = self.callback_url
        if style:
            payload["style"] = style
        if title:
            payload["title"] = title

        data = await self._request("POST", "/api/v1/generate", json=payload)
        return _task_id(data)

    async def music_status(self, task_id: str) -> dict[str, Any]:
        return await self._request(
            "GET", "/api/v1/generate/record-info", params={"taskId": task_id}
        )

    # ── Images ───────────────────────────────────────────────────────────

    async def submit_image(
        self,
        prompt: str,
        *,
        aspect_ratio: str = "16:9",
        resolution: str = "2K",
        output_format: str = "PNG",
        model: str = IMAGE_MODEL,
        image_inputs: list[str] | None = None,
    ) -> str:
        """Start an image generation. Returns the provider task id."""
        payload: dict[str, Any] = {
            "model": model,
            "input": {
                "prompt": prompt,
                "aspect_ratio": aspect_ratio,
                "resolution": resolution,
                "output_format": output_format,
            },
        }
        if image_inputs:
            payload["input"]["image_input"] = image_inputs[:8]
        if self.callback_url:
            payload["callBackUrl"] = self.callback_url

        data = await self._request("POST", "/api/v1/jobs/createTask", json=payload)
        return _task_id(data)

    async def image_status(self, task_id: str) -> dict[str, Any]:
        return await self._request("GET", "/api/v1/jobs/getTask", params={"taskId": task_id})

    # ── Transport ────────────────────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_retries)),
            wait=wait_exponential(multiplier=self.retry_backoff, min=self.retry_backoff, max=60),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._do_request(method, path, **kwargs)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _do_request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = await self.client.request(method, path, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientProviderError(f"kie.ai connection error: {exc}") from exc

        try:
            body = resp.json()
        except ValueError:
            body = None

        if not resp.is_success:
            logger.error("kie.ai API error %d on %s %s", resp.status_code, method, path)
            err = error_for_status(resp.status_code, "kie.ai", body)
            if (
                isinstance(err, PermanentProviderError)
                and err.status_code not in (401, 402, 422)
                and isinstance(body, dict)
                and body.get("msg")
            ):
                err = PermanentProviderError(body["msg"], status_code=resp.status_code, body=body)
            raise err

        if not isinstance(body, dict):
            raise PermanentProviderError(
                "kie.ai returned a malformed response", status_code=resp.status_code
            )

        code = body.get("code")
        if code is not None and code != 200:
            raise PermanentProviderError(body.get("msg") or "API error", status_code=code, body=body)

        data = body.get("data")
        return data if isinstance(data, dict) else body


def _task_id(data: dict[str, Any]) -> str:
    task_id = data.get("taskId") or data.get("task_id")
    if not task_id:
        raise PermanentProviderError("kie.ai response did not include a task id", body=data)
    return str(task_id)
