"""Tests for the Ollama HTTP client and its error mapping."""

from __future__ import annotations

import json

import httpx
import pytest

from embedded_ollama.client import OllamaClient
from embedded_ollama.errors import (
    ModelNotFoundError,
    RequestTimeoutError,
    ServerHTTPError,
    ServerUnreachableError,
)

BASE_URL = "http://127.0.0.1:9527"


def _client(handler) -> OllamaClient:
    return OllamaClient(BASE_URL, transport=httpx.MockTransport(handler))


def _ndjson(*events: dict) -> bytes:
    return b"".join(json.dumps(event).encode("utf-8") + b"\n" for event in events)


@pytest.mark.asyncio
async def test_is_alive_reports_success_and_status_failures() -> None:
    statuses = iter([200, 503])

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/tags"
        return httpx.Response(next(statuses), json={"models": []})

    client = _client(handler)

    assert await client.is_alive(timeout=1.0) == (True, None)
    assert await client.is_alive(timeout=1.0) == (False, "server returned status 503")


@pytest.mark.asyncio
async def test_is_alive_reports_connection_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    alive, reason = await _client(handler).is_alive(timeout=1.0)

    assert alive is False
    assert reason == "connection refused"


@pytest.mark.asyncio
async def test_generate_forces_non_stream_payload() -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(200, json={"response": "hello", "done": True})

    result = await _client(handler).generate({"model": "phi3:mini", "prompt": "hi", "stream": True})

    assert result["response"] == "hello"
    assert captured["stream"] is False
    assert captured["model"] == "phi3:mini"


@pytest.mark.asyncio
async def test_generate_maps_404_to_model_not_found() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "model 'nope' not found"})

    with pytest.raises(ModelNotFoundError) as exc_info:
        await _client(handler).generate({"model": "nope", "prompt": "hi"})

    assert exc_info.value.status_code == 404
    assert exc_info.value.detail == "model 'nope' not found"
    assert exc_info.value.exit_code == 4


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [408, 504])
async def test_request_timeout_statuses_map_to_timeout_error(status_code: int) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, text="slow")

    with pytest.raises(RequestTimeoutError):
        await _client(handler).list_tags()


@pytest.mark.asyncio
async def test_server_errors_map_to_http_error_with_detail() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"detail": "kaput"})

    with pytest.raises(ServerHTTPError) as exc_info:
        await _client(handler).list_tags()

    assert exc_info.value.status_code == 500
    assert str(exc_info.value) == "list model tags failed with HTTP 500: kaput"


@pytest.mark.asyncio
async def test_transport_errors_are_mapped() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    def stall(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("stalled", request=request)

    with pytest.raises(ServerUnreachableError):
        await _client(refuse).list_tags()
    with pytest.raises(RequestTimeoutError):
        await _client(stall).list_tags()


@pytest.mark.asyncio
async def test_stream_ndjson_skips_blank_and_invalid_lines() -> None:
    body = _ndjson({"status": "pulling"}) + b"\n   \nnot-json\n[1, 2]\n" + _ndjson({"status": "ok"})

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/pull"
        assert json.loads(request.content) == {"name": "phi3:mini"}
        return httpx.Response(200, content=body)

    client = _client(handler)
    events = [
        event
        async for event in client.stream_ndjson(
            "POST",
            "/api/pull",
            json_payload={"name": "phi3:mini"},
            action="pull",
        )
    ]

    assert events == [{"status": "pulling"}, {"status": "ok"}]


@pytest.mark.asyncio
async def test_stream_ndjson_raises_on_error_event() -> None:
    body = _ndjson({"status": "pulling"}, {"error": "manifest unknown"})

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body)

    seen: list[dict] = []
    with pytest.raises(ServerHTTPError, match="manifest unknown"):
        async for event in _client(handler).stream_ndjson("POST", "/api/pull", action="pull"):
            seen.append(event)

    assert seen == [{"status": "pulling"}]


@pytest.mark.asyncio
async def test_stream_ndjson_maps_error_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "not found"})

    with pytest.raises(ModelNotFoundError, match="not found"):
        async for _event in _client(handler).stream_ndjson("POST", "/api/pull", action="pull"):
            pass
