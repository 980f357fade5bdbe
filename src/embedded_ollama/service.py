"""High-level facade wiring provisioning, supervision, installs and generation."""

from __future__ import annotations

import logging
import os
import platform
from typing import Any

import httpx

from embedded_ollama.core.catalog import ModelDescriptor, ModelRegistry
from embedded_ollama.core.config import EmbeddedConfig, load_config, resolve_port
from embedded_ollama.core.progress import CancellationToken, ProgressCallback
from embedded_ollama.core.storage import EmbeddedPaths, read_install_record
from embedded_ollama.server.generation import ChunkCallback, GenerateOptions, GenerationClient
from embedded_ollama.server.installer import InstallOutcome, ModelInstaller
from embedded_ollama.server.provisioner import BinaryProvisioner
from embedded_ollama.server.supervisor import ServerSupervisor

logger = logging.getLogger(__name__)


class EmbeddedOllama:
    """One long-lived embedded server session.

    The registry and supervisor are constructed once here and handed to the
    installer and generation client.
    """

    def __init__(
        self,
        *,
        paths: EmbeddedPaths | None = None,
        config: EmbeddedConfig | None = None,
        registry: ModelRegistry | None = None,
        provisioner: BinaryProvisioner | None = None,
        port: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._paths = paths or EmbeddedPaths.default()
        self._config = config or load_config(self._paths)
        self._registry = registry or ModelRegistry()
        self._provisioner = provisioner or BinaryProvisioner(paths=self._paths)
        self._supervisor = ServerSupervisor(
            provisioner=self._provisioner,
            paths=self._paths,
            settings=self._config.server,
            port=port if port is not None else resolve_port(self._config),
            transport=transport,
        )
        self._installer = ModelInstaller(
            registry=self._registry,
            supervisor=self._supervisor,
            paths=self._paths,
        )
        self._generation = GenerationClient(supervisor=self._supervisor)
        self._disposed = False
        _log_system_info(self._paths, self._supervisor.port)

    @property
    def paths(self) -> EmbeddedPaths:
        return self._paths

    @property
    def config(self) -> EmbeddedConfig:
        return self._config

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    @property
    def supervisor(self) -> ServerSupervisor:
        return self._supervisor

    @property
    def is_running(self) -> bool:
        return self._supervisor.is_running

    def get_base_url(self) -> str:
        return self._supervisor.base_url

    def status(self) -> dict[str, Any]:
        return self._supervisor.get_status()

    async def ensure_running(self) -> None:
        await self._supervisor.ensure_running()

    async def stop(self) -> None:
        await self._supervisor.stop()

    def list_catalog(self, *, refresh: bool = False) -> list[ModelDescriptor]:
        """List catalog models, optionally re-checking installed flags against disk."""
        if refresh:
            return self._installer.refresh()
        return self._registry.list_catalog()

    async def install(
        self,
        name: str,
        *,
        progress_cb: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> InstallOutcome:
        return await self._installer.install(
            name,
            progress_cb=progress_cb,
            cancel_token=cancel_token,
        )

    def remove(self, name: str) -> bool:
        return self._installer.remove(name)

    def install_record(self, name: str) -> dict[str, Any] | None:
        """Return the on-disk install record for one model, if readable."""
        try:
            return read_install_record(name, paths=self._paths)
        except (OSError, ValueError) as exc:
            logger.warning("ignoring unreadable install record for %s: %s", name, exc)
            return None

    async def list_server_models(self) -> list[str]:
        """List model tags the server on the configured port reports, without starting one."""
        payload = await self._supervisor.client.list_tags(
            timeout=self._config.server.probe_timeout,
        )
        models = payload.get("models")
        if not isinstance(models, list):
            return []
        names = {
            str(entry["name"])
            for entry in models
            if isinstance(entry, dict) and entry.get("name")
        }
        return sorted(names)

    async def generate(
        self,
        model: str,
        prompt: str,
        options: GenerateOptions | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        resolved = options or GenerateOptions.from_defaults(self._config.generate)
        return await self._generation.generate(model, prompt, resolved, on_chunk)

    async def dispose(self) -> None:
        """Stop the server and drop temporary download data; never raises."""
        if self._disposed:
            return
        self._disposed = True
        await self._supervisor.stop()
        try:
            self._provisioner.cleanup_staging()
        except OSError as exc:
            logger.warning("failed to remove temporary download data: %s", exc)

    async def __aenter__(self) -> EmbeddedOllama:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.dispose()


def _log_system_info(paths: EmbeddedPaths, port: int) -> None:
    logger.info(
        "embedded ollama on %s %s (%s cpus), port %d",
        platform.system(),
        platform.machine(),
        os.cpu_count(),
        port,
    )
    logger.debug(
        "home %s, resources %s, models %s",
        paths.base_dir,
        paths.resources_dir,
        paths.models_dir,
    )
