"""embedded_ollama package."""

from typing import Any

__all__ = ["EmbeddedOllama", "__version__"]
__version__ = "0.1.0"


def __getattr__(name: str) -> Any:
    if name == "EmbeddedOllama":
        from .service import EmbeddedOllama

        return EmbeddedOllama
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
