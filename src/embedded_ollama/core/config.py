"""Persistent embedded Ollama configuration defaults."""

from __future__ import annotations

import json
import os
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
)

from .storage import EmbeddedPaths

DEFAULT_HOST = "127.0.0.1"
# Distinct from Ollama's own default of 11434.
DEFAULT_PORT = 9527
DEFAULT_MODEL = "deepseek-coder-v2:latest"

PORT_ENV_NAME = "EMBEDDED_OLLAMA_PORT"


class ServerDefaults(BaseModel):
    """Bind address and supervision timings for the server subprocess."""

    model_config = ConfigDict(extra="forbid", strict=True)

    host: StrictStr = DEFAULT_HOST
    port: StrictInt = Field(default=DEFAULT_PORT, ge=1, le=65535)
    start_attempts: StrictInt = Field(default=15, gt=0)
    poll_interval: StrictFloat = Field(default=1.0, gt=0)
    probe_timeout: StrictFloat = Field(default=1.0, gt=0)
    health_timeout: StrictFloat = Field(default=2.0, gt=0)
    stop_timeout: StrictFloat = Field(default=5.0, gt=0)


class GenerateDefaults(BaseModel):
    """Default generation options applied when callers omit them."""

    model_config = ConfigDict(extra="forbid", strict=True)

    max_tokens: StrictInt = Field(default=2048, gt=0)
    temperature: StrictFloat = Field(default=0.7, ge=0)
    timeout: StrictFloat = Field(default=30.0, gt=0)


class EmbeddedConfig(BaseModel):
    """Top-level persisted embedded Ollama config."""

    model_config = ConfigDict(extra="forbid", strict=True)

    version: StrictInt = 1
    default_model: StrictStr = DEFAULT_MODEL
    server: ServerDefaults = Field(default_factory=ServerDefaults)
    generate: GenerateDefaults = Field(default_factory=GenerateDefaults)


CONFIG_KEY_DESCRIPTIONS: dict[str, str] = {
    "default_model": "Model used by generate when --model is omitted.",
    "server.host": "Loopback address the embedded server binds to.",
    "server.port": "Port the embedded server binds to (overridden by EMBEDDED_OLLAMA_PORT).",
    "server.start_attempts": "Health-poll attempts before a start is abandoned.",
    "server.poll_interval": "Seconds to wait before each health-poll attempt.",
    "server.probe_timeout": "Timeout in seconds for the pre-start port probe.",
    "server.health_timeout": "Timeout in seconds for each health-poll request.",
    "server.stop_timeout": "Seconds allowed for shutdown, forced kill included.",
    "generate.max_tokens": "Default num_predict sent with generate requests.",
    "generate.temperature": "Default sampling temperature for generate requests.",
    "generate.timeout": "Timeout in seconds for generate requests.",
}


class ConfigFileError(RuntimeError):
    """Raised when the persisted config cannot be parsed or validated."""


def load_config(paths: EmbeddedPaths) -> EmbeddedConfig:
    """Load config file or return defaults when missing."""
    config_path = paths.config_path
    if not config_path.exists():
        return EmbeddedConfig()

    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigFileError(f"invalid JSON in {config_path}: {exc.msg}") from exc
    except OSError as exc:
        raise ConfigFileError(f"unable to read {config_path}: {exc}") from exc

    try:
        return EmbeddedConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigFileError(f"invalid config in {config_path}: {exc}") from exc


def save_config(paths: EmbeddedPaths, config: EmbeddedConfig) -> None:
    """Atomically persist config using a .tmp file then rename."""
    config_path = paths.config_path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = config_path.with_name(f"{config_path.name}.tmp")
    payload = config.model_dump(mode="json")
    temp_path.write_text(
        json.dumps(payload, indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    temp_path.replace(config_path)


def update_config(paths: EmbeddedPaths, updates: dict[str, Any]) -> EmbeddedConfig:
    """Apply partial updates and persist the resulting config."""
    current = load_config(paths)
    merged = current.model_dump(mode="json")
    _deep_merge_dict(merged, updates)
    try:
        updated = EmbeddedConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigFileError(f"invalid config update: {exc}") from exc
    save_config(paths, updated)
    return updated


def resolve_port(config: EmbeddedConfig, environ: dict[str, str] | None = None) -> int:
    """Return the configured port, honouring the environment override."""
    env = os.environ if environ is None else environ
    raw_value = env.get(PORT_ENV_NAME)
    if raw_value is None or not raw_value.strip():
        return config.server.port
    return parse_port(raw_value, env_name=PORT_ENV_NAME)


def parse_port(value: str, *, env_name: str) -> int:
    try:
        port = int(value.strip())
    except ValueError as exc:
        raise ValueError(f"invalid {env_name}: {value!r}") from exc
    if not 1 <= port <= 65535:
        raise ValueError(f"invalid {env_name}: {value!r}")
    return port


def _deep_merge_dict(target: dict[str, Any], updates: dict[str, Any]) -> None:
    for key, value in updates.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            _deep_merge_dict(existing, value)
            continue
        target[key] = value
