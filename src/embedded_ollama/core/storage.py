"""Filesystem layout and install records for embedded Ollama state."""

from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._:-]*$")

INSTALL_RECORD_NAME = "install.json"
DOWNLOAD_DIR_NAME = "embedded-ollama-download"
PACKAGE_RESOURCES_DIR = Path(__file__).resolve().parents[1] / "resources"


@dataclass(frozen=True)
class EmbeddedPaths:
    """Filesystem layout for local embedded Ollama state.

    ``base_dir`` is the per-user home (models, config, fallback binaries).
    ``resources_dir`` holds bundled payloads; its sibling ``bin`` directory is
    the preferred, app-local location for the extracted server executable.
    """

    base_dir: Path
    resources_dir: Path
    temp_dir: Path | None = None

    @classmethod
    def default(cls) -> EmbeddedPaths:
        home_override = os.environ.get("EMBEDDED_OLLAMA_HOME")
        resources_override = os.environ.get("EMBEDDED_OLLAMA_RESOURCES")
        base_dir = (
            Path(home_override).expanduser()
            if home_override
            else Path.home() / ".embedded-ollama"
        )
        resources_dir = (
            Path(resources_override).expanduser()
            if resources_override
            else PACKAGE_RESOURCES_DIR
        )
        return cls(base_dir=base_dir, resources_dir=resources_dir)

    @property
    def models_dir(self) -> Path:
        return self.base_dir / "models"

    @property
    def app_bin_dir(self) -> Path:
        return self.resources_dir.parent / "bin"

    @property
    def staging_bin_dir(self) -> Path:
        return self.base_dir / "bin"

    @property
    def bundled_binaries_dir(self) -> Path:
        return self.resources_dir / "binaries"

    @property
    def bundled_models_dir(self) -> Path:
        return self.resources_dir / "models"

    @property
    def download_dir(self) -> Path:
        root = self.temp_dir if self.temp_dir is not None else Path(tempfile.gettempdir())
        return root / DOWNLOAD_DIR_NAME

    @property
    def config_path(self) -> Path:
        return self.base_dir / "config.json"

    def model_dir(self, name: str) -> Path:
        return self.models_dir / validate_model_name(name)

    def bundled_model_dir(self, name: str) -> Path:
        return self.bundled_models_dir / validate_model_name(name)

    def install_record_path(self, name: str) -> Path:
        return self.model_dir(name) / INSTALL_RECORD_NAME


def is_model_present(name: str, *, paths: EmbeddedPaths) -> bool:
    """Check whether the on-disk directory for one model exists."""
    return paths.model_dir(name).is_dir()


def read_install_record(name: str, *, paths: EmbeddedPaths) -> dict[str, Any] | None:
    """Read one model install record, or ``None`` when absent."""
    record_path = paths.install_record_path(name)
    if not record_path.exists():
        return None

    payload = json.loads(record_path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"invalid install record content: {record_path}")
    return payload


def write_install_record(
    name: str,
    *,
    source: str,
    files: list[str] | None = None,
    paths: EmbeddedPaths,
) -> dict[str, Any]:
    """Atomically write one model install record."""
    record: dict[str, Any] = {
        "name": validate_model_name(name),
        "source": source,
        "files": sorted(files or []),
        "installed_at": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
    }
    record_path = paths.install_record_path(name)
    record_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = record_path.with_suffix(".tmp")
    temp_path.write_text(
        json.dumps(record, indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    temp_path.replace(record_path)
    return record


def remove_model_dir(name: str, *, paths: EmbeddedPaths) -> bool:
    """Remove a locally installed model directory."""
    model_dir = paths.model_dir(name)
    if not model_dir.exists():
        return False

    shutil.rmtree(model_dir)
    return True


def validate_model_name(name: str) -> str:
    if not _NAME_PATTERN.fullmatch(name) or ".." in name:
        raise ValueError(f"invalid model name: {name!r}")
    return name
