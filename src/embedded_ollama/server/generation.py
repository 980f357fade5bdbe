"""Text generation against the supervised server, batch or streamed."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt

from embedded_ollama.client import GENERATE_PATH
from embedded_ollama.core.config import GenerateDefaults
from embedded_ollama.errors import EmbeddedOllamaError, InvalidApiResponseError

from .supervisor import ServerSupervisor

logger = logging.getLogger(__name__)

THINKING_PLACEHOLDER = "_Thinking..._"

ChunkCallback = Callable[[str], None]


class GenerateOptions(BaseModel):
    """Per-request generation options."""

    model_config = ConfigDict(extra="forbid")

    max_tokens: StrictInt = Field(default=2048, gt=0)
    temperature: float = Field(default=0.7, ge=0)
    stream: StrictBool = True
    timeout: float = Field(default=30.0, gt=0)

    @classmethod
    def from_defaults(cls, defaults: GenerateDefaults, **overrides: Any) -> GenerateOptions:
        values: dict[str, Any] = {
            "max_tokens": defaults.max_tokens,
            "temperature": defaults.temperature,
            "timeout": defaults.timeout,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls.model_validate(values)


class GenerationClient:
    """Issue generate requests, making sure the server is up first."""

    def __init__(self, *, supervisor: ServerSupervisor) -> None:
        self._supervisor = supervisor

    async def generate(
        self,
        model: str,
        prompt: str,
        options: GenerateOptions | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        """Return the full generated text.

        With ``options.stream`` set and an ``on_chunk`` callback, fragments are
        forwarded as they arrive: first a placeholder, then an empty string that
        clears it, then each fragment. Errors are reported inline to the
        callback before being raised.
        """
        resolved = options or GenerateOptions()
        await self._supervisor.ensure_running()

        payload: dict[str, Any] = {
            "model": model,
            "prompt": prompt,
            "options": {
                "num_predict": resolved.max_tokens,
                "temperature": resolved.temperature,
            },
        }
        if resolved.stream and on_chunk is not None:
            return await self._generate_streaming(payload, resolved, on_chunk)
        return await self._generate_once(payload, resolved)

    async def _generate_once(self, payload: dict[str, Any], options: GenerateOptions) -> str:
        data = await self._supervisor.client.generate(payload, timeout=options.timeout)
        text = data.get("response")
        if not isinstance(text, str):
            raise InvalidApiResponseError(
                action=f"generate with model {payload['model']!r}",
                detail="response is missing the 'response' text field",
            )
        return text

    async def _generate_streaming(
        self,
        payload: dict[str, Any],
        options: GenerateOptions,
        on_chunk: ChunkCallback,
    ) -> str:
        on_chunk(THINKING_PLACEHOLDER)
        fragments: list[str] = []
        cleared = False
        events = self._supervisor.client.stream_ndjson(
            "POST",
            GENERATE_PATH,
            json_payload={**payload, "stream": True},
            action=f"generate with model {payload['model']!r}",
            timeout=options.timeout,
        )
        try:
            async for event in events:
                fragment = event.get("response")
                if not isinstance(fragment, str) or not fragment:
                    continue
                if not cleared:
                    on_chunk("")
                    cleared = True
                fragments.append(fragment)
                on_chunk(fragment)
        except EmbeddedOllamaError as exc:
            logger.warning("streaming generation failed: %s", exc)
            on_chunk(f"\n\n_Error: {exc}_")
            raise

        if not cleared:
            on_chunk("")
        return "".join(fragments)
