"""Async HTTP client for the locally-run Ollama server."""

from .http import (
    DEFAULT_TIMEOUT_SECONDS,
    GENERATE_PATH,
    LIVENESS_PATH,
    PULL_PATH,
    OllamaClient,
)

__all__ = [
    "DEFAULT_TIMEOUT_SECONDS",
    "GENERATE_PATH",
    "LIVENESS_PATH",
    "PULL_PATH",
    "OllamaClient",
]
