"""Tests for the opencode HTTP client using httpx's mock transport."""

import json
from typing import List

import httpx
import pytest

from ocloop.clients.opencode import (
    ApiError,
    OpencodeClient,
    decode_event,
    iter_sse_data,
    parse_model,
)


async def alines(lines: List[str]):
    for line in lines:
        yield line


async def collect(aiter):
    return [item async for item in aiter]


class TestParseModel:
    def test_provider_and_model(self):
        assert parse_model("anthropic/claude-sonnet-4") == {
            "providerID": "anthropic",
            "modelID": "claude-sonnet-4",
        }

    def test_model_id_keeps_later_slashes(self):
        assert parse_model("openrouter/meta/llama-3") == {
            "providerID": "openrouter",
            "modelID": "meta/llama-3",
        }

    @pytest.mark.parametrize("value", [None, "", "gpt-5", "/model", "provider/"])
    def test_invalid(self, value):
        assert parse_model(value) is None


class TestServerSentEvents:
    @pytest.mark.asyncio
    async def test_records_split_on_blank_lines(self):
        lines = ['data: {"a": 1}', "", 'data: {"b": 2}', ""]
        assert await collect(iter_sse_data(alines(lines))) == ['{"a": 1}', '{"b": 2}']

    @pytest.mark.asyncio
    async def test_multiline_data_and_ignored_fields(self):
        lines = [": keepalive", "event: message", "id: 7", "data: line1", "data:line2", ""]
        assert await collect(iter_sse_data(alines(lines))) == ["line1\nline2"]

    @pytest.mark.asyncio
    async def test_trailing_record_flushed(self):
        assert await collect(iter_sse_data(alines(["data: x"]))) == ["x"]

    def test_decode_event(self):
        assert decode_event('{"type": "session.idle"}') == {"type": "session.idle"}
        assert decode_event("not json") is None
        assert decode_event("[1, 2]") is None


class TestOpencodeClient:
    @pytest.mark.asyncio
    async def test_create_session_passes_directory(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "ses_1"})

        client = OpencodeClient(
            "http://127.0.0.1:4096/", directory="/work", transport=httpx.MockTransport(handler)
        )
        assert await client.create_session() == {"id": "ses_1"}
        await client.close()

        assert seen[0].method == "POST"
        assert seen[0].url.path == "/session"
        assert seen[0].url.params["directory"] == "/work"

    @pytest.mark.asyncio
    async def test_prompt_body_includes_model(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/session/ses_1/prompt_async"
            bodies.append(json.loads(request.content))
            return httpx.Response(204)

        client = OpencodeClient("http://server", transport=httpx.MockTransport(handler))
        await client.prompt_async("ses_1", "do the thing", model="anthropic/claude")
        await client.prompt_async("ses_1", "again")
        await client.close()

        assert bodies[0] == {
            "parts": [{"type": "text", "text": "do the thing"}],
            "model": {"providerID": "anthropic", "modelID": "claude"},
        }
        assert "model" not in bodies[1]

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        client = OpencodeClient(
            "http://server",
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="kaput")),
        )
        with pytest.raises(ApiError) as exc_info:
            await client.create_session()
        await client.close()

        assert exc_info.value.status_code == 500
        assert "kaput" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_abort_session(self):
        responses = iter([httpx.Response(200, json=True), httpx.Response(200)])
        client = OpencodeClient(
            "http://server", transport=httpx.MockTransport(lambda request: next(responses))
        )
        assert await client.abort_session("ses_1") is True
        assert await client.abort_session("ses_1") is True
        await client.close()

    @pytest.mark.asyncio
    async def test_get_config(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/config"
            return httpx.Response(200, json={"model": "openai/gpt-5"})

        client = OpencodeClient("http://server", transport=httpx.MockTransport(handler))
        assert await client.get_config() == {"model": "openai/gpt-5"}
        await client.close()

    @pytest.mark.asyncio
    async def test_events_stream(self):
        body = (
            ": connected\n\n"
            'data: {"type": "server.connected", "properties": {}}\n\n'
            "data: garbage\n\n"
            'data: {"type": "session.idle", "properties": {"sessionID": "s"}}\n\n'
        )

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/event"
            assert request.headers["accept"] == "text/event-stream"
            return httpx.Response(
                200, content=body.encode(), headers={"content-type": "text/event-stream"}
            )

        opened = []
        client = OpencodeClient("http://server", transport=httpx.MockTransport(handler))
        events = await collect(client.events(on_open=lambda: opened.append(True)))
        await client.close()

        assert opened == [True]
        assert [event["type"] for event in events] == ["server.connected", "session.idle"]

    @pytest.mark.asyncio
    async def test_events_rejected(self):
        client = OpencodeClient(
            "http://server",
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text="busy")),
        )
        opened = []
        with pytest.raises(ApiError):
            await collect(client.events(on_open=lambda: opened.append(True)))
        await client.close()

        assert opened == []
