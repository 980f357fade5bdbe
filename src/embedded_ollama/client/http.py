"""Async HTTP client for the locally-run Ollama server API."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from embedded_ollama.errors import (
    EmbeddedOllamaError,
    ModelNotFoundError,
    RequestTimeoutError,
    ServerHTTPError,
    ServerUnreachableError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
LIVENESS_PATH = "/api/tags"
GENERATE_PATH = "/api/generate"
PULL_PATH = "/api/pull"


class OllamaClient:
    """Minimal async client for the Ollama endpoints the embedded service drives."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def base_url(self) -> str:
        return self._base_url

    async def list_tags(self, *, timeout: float | None = None) -> dict[str, Any]:
        """Fetch installed model tags; doubles as the liveness check."""
        return await self._request_json(
            "GET",
            LIVENESS_PATH,
            action="list model tags",
            timeout=timeout,
        )

    async def is_alive(self, *, timeout: float) -> tuple[bool, str | None]:
        """Probe the liveness endpoint, returning success and the failure reason."""
        try:
            async with self._client(timeout=timeout) as client:
                response = await client.get(LIVENESS_PATH)
        except httpx.HTTPError as exc:
            return False, str(exc) or exc.__class__.__name__
        if response.status_code == 200:
            return True, None
        return False, f"server returned status {response.status_code}"

    async def generate(
        self,
        payload: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Submit a non-streaming generate request."""
        request_payload = {**payload, "stream": False}
        return await self._request_json(
            "POST",
            GENERATE_PATH,
            json_payload=request_payload,
            action=f"generate with model {payload.get('model')!r}",
            timeout=timeout,
        )

    async def stream_ndjson(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None = None,
        action: str,
        timeout: float | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield newline-delimited JSON objects as the server emits them."""
        try:
            async with self._client(timeout=timeout) as client:
                async with client.stream(method, path, json=json_payload) as response:
                    if response.is_error:
                        await response.aread()
                        detail = _extract_error_detail(response)
                        raise _map_http_error(
                            action=action,
                            status_code=response.status_code,
                            detail=detail,
                        )
                    async for raw_line in response.aiter_lines():
                        event = _decode_event(raw_line)
                        if event is None:
                            continue
                        error = event.get("error")
                        if isinstance(error, str) and error:
                            raise ServerHTTPError(action=action, detail=error)
                        yield event
        except EmbeddedOllamaError:
            raise
        except httpx.HTTPError as exc:
            raise _map_transport_error(action=action, exc=exc) from exc

    def _client(self, *, timeout: float | None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout if timeout is None else timeout,
            transport=self._transport,
        )

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None = None,
        action: str,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        try:
            async with self._client(timeout=timeout) as client:
                response = await client.request(method, path, json=json_payload)
        except httpx.HTTPError as exc:
            raise _map_transport_error(action=action, exc=exc) from exc

        if response.is_error:
            detail = _extract_error_detail(response)
            raise _map_http_error(action=action, status_code=response.status_code, detail=detail)

        try:
            data = response.json()
        except ValueError as exc:
            raise ServerHTTPError(
                action=action,
                detail="server returned non-JSON response",
            ) from exc

        if not isinstance(data, dict):
            raise ServerHTTPError(
                action=action,
                detail="server returned unexpected JSON payload",
            )
        return data


def _decode_event(raw_line: str) -> dict[str, Any] | None:
    line = raw_line.strip()
    if not line:
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("skipping non-JSON stream line: %r", line[:200])
        return None
    if not isinstance(payload, dict):
        logger.debug("skipping non-object stream line: %r", line[:200])
        return None
    return payload


def _map_transport_error(*, action: str, exc: httpx.HTTPError) -> EmbeddedOllamaError:
    detail = str(exc) or exc.__class__.__name__
    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeoutError(action=action, detail=detail)
    if isinstance(exc, httpx.RequestError):
        return ServerUnreachableError(action=action, detail=detail)
    return EmbeddedOllamaError(action=action, detail=detail)


def _extract_error_detail(response: httpx.Response) -> str:
    text = response.text.strip()
    if not text:
        return f"HTTP {response.status_code}"

    try:
        payload = response.json()
    except ValueError:
        return text

    if isinstance(payload, dict):
        for key in ("error", "detail"):
            detail = payload.get(key)
            if isinstance(detail, str) and detail:
                return detail
    return text


def _map_http_error(*, action: str, status_code: int, detail: str) -> EmbeddedOllamaError:
    if status_code in {408, 504}:
        return RequestTimeoutError(action=action, status_code=status_code, detail=detail)

    if status_code == 404:
        return ModelNotFoundError(action=action, status_code=status_code, detail=detail)

    return ServerHTTPError(action=action, status_code=status_code, detail=detail)
