"""Tests for the kie.ai client — request shapes, error mapping, retries."""

from __future__ import annotations

import json

import httpx
import pytest
import pytest_asyncio

from pipeforge.providers.errors import PermanentProviderError, TransientProviderError
from pipeforge.providers.kie import KieClient


class Recorder:
    """MockTransport handler that replays queued responses and records requests."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


def ok(data: dict) -> httpx.Response:
    return httpx.Response(200, json={"code": 200, "msg": "success", "data": data})


async def _client(handler: Recorder, **kwargs) -> KieClient:
    client = KieClient(
        api_key="test-key",
        retry_backoff=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )
    await client.start()
    return client


@pytest_asyncio.fixture
async def make_client():
    clients: list[KieClient] = []

    async def factory(handler: Recorder, **kwargs) -> KieClient:
        client = await _client(handler, **kwargs)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.close()


class TestRequests:
    @pytest.mark.asyncio
    async def test_submit_music(self, make_client):
        handler = Recorder(ok({"taskId": "music-1"}))
        client = await make_client(handler, callback_url="https://me/webhooks/kie")

        task_id = await client.submit_music("lofi beats", style="lofi", title="Rain")

        assert task_id == "music-1"
        request = handler.requests[0]
        assert request.url.path == "/api/v1/generate"
        assert request.headers["Authorization"] == "Bearer test-key"
        body = json.loads(request.content)
        assert body["prompt"] == "lofi beats"
        assert body["model"] == "V5"
        assert body["style"] == "lofi"
        assert body["callBackUrl"] == "https://me/webhooks/kie"

    @pytest.mark.asyncio
    async def test_music_status_unwraps_data(self, make_client):
        handler = Recorder(ok({"status": "SUCCESS", "response": {"sunoData": []}}))
        client = await make_client(handler)

        data = await client.music_status("music-1")

        assert data["status"] == "SUCCESS"
        assert handler.requests[0].url.params["taskId"] == "music-1"

    @pytest.mark.asyncio
    async def test_submit_image_caps_inputs(self, make_client):
        handler = Recorder(ok({"task_id": "img-1"}))
        client = await make_client(handler)

        task_id = await client.submit_image("a fox", image_inputs=[f"u{i}" for i in range(10)])

        assert task_id == "img-1"
        body = json.loads(handler.requests[0].content)
        assert body["model"] == "nano-banana-pro"
        assert body["input"]["aspect_ratio"] == "16:9"
        assert len(body["input"]["image_input"]) == 8

    @pytest.mark.asyncio
    async def test_missing_task_id(self, make_client):
        client = await make_client(Recorder(ok({})))
        with pytest.raises(PermanentProviderError, match="task id"):
            await client.submit_music("x")

    @pytest.mark.asyncio
    async def test_not_started(self):
        client = KieClient(api_key="k")
        with pytest.raises(RuntimeError, match="not started"):
            await client.music_status("t")


class TestErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "message"),
        [
            (401, "Invalid API key"),
            (402, "Insufficient credits"),
            (422, "Invalid request data"),
        ],
    )
    async def test_permanent_status_codes_not_retried(self, make_client, status, message):
        handler = Recorder(httpx.Response(status, json={"msg": "nope"}))
        client = await make_client(handler, max_retries=3)

        with pytest.raises(PermanentProviderError, match=message):
            await client.music_status("t")
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_retried_then_succeeds(self, make_client):
        handler = Recorder(
            httpx.Response(429, json={}),
            httpx.Response(503, text="down"),
            ok({"status": "GENERATING"}),
        )
        client = await make_client(handler, max_retries=3)

        data = await client.music_status("t")

        assert data["status"] == "GENERATING"
        assert len(handler.requests) == 3

    @pytest.mark.asyncio
    async def test_transient_exhausts_retries(self, make_client):
        handler = Recorder(*[httpx.Response(500, text="boom") for _ in range(2)])
        client = await make_client(handler, max_retries=2)

        with pytest.raises(TransientProviderError, match="server error"):
            await client.music_status("t")
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_envelope_error_code(self, make_client):
        handler = Recorder(httpx.Response(200, json={"code": 400, "msg": "bad prompt"}))
        client = await make_client(handler)
        with pytest.raises(PermanentProviderError, match="bad prompt"):
            await client.submit_music("x")

    @pytest.mark.asyncio
    async def test_other_client_error_uses_body_message(self, make_client):
        handler = Recorder(httpx.Response(404, json={"msg": "task not found"}))
        client = await make_client(handler)
        with pytest.raises(PermanentProviderError, match="task not found"):
            await client.image_status("t")

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, make_client):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = KieClient(
            api_key="k", retry_backoff=0, max_retries=1, transport=httpx.MockTransport(handler)
        )
        await client.start()
        try:
            with pytest.raises(TransientProviderError, match="connection error"):
                await client.music_status("t")
        finally:
            await client.close()
