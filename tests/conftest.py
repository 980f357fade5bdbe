"""Pytest configuration for embedded_ollama tests."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from embedded_ollama.core.storage import EmbeddedPaths


@pytest.fixture(scope="session", autouse=True)
def _disable_ansi_colors() -> None:
    """Disable ANSI colors in CLI output for consistent test assertions."""
    os.environ["TERM"] = "dumb"


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("EMBEDDED_OLLAMA_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("EMBEDDED_OLLAMA_RESOURCES", str(tmp_path / "app" / "resources"))
    monkeypatch.delenv("EMBEDDED_OLLAMA_PORT", raising=False)
    monkeypatch.delenv("EMBEDDED_OLLAMA_LOG_LEVEL", raising=False)


@pytest.fixture
def paths(tmp_path: Path) -> EmbeddedPaths:
    return EmbeddedPaths(
        base_dir=tmp_path / "home",
        resources_dir=tmp_path / "app" / "resources",
        temp_dir=tmp_path / "tmp",
    )
