"""Catalog, configuration, storage and progress helpers for embedded_ollama."""

from .catalog import ModelDescriptor, ModelRegistry, load_catalog
from .config import EmbeddedConfig, load_config, save_config, update_config
from .progress import CancellationToken, DownloadProgress, ProgressUpdate
from .storage import EmbeddedPaths

__all__ = [
    "CancellationToken",
    "DownloadProgress",
    "EmbeddedConfig",
    "EmbeddedPaths",
    "ModelDescriptor",
    "ModelRegistry",
    "ProgressUpdate",
    "load_catalog",
    "load_config",
    "save_config",
    "update_config",
]
