"""Model installation from bundled payloads or streamed server pulls."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from embedded_ollama.client import PULL_PATH
from embedded_ollama.core.catalog import ModelDescriptor, ModelRegistry
from embedded_ollama.core.progress import (
    CancellationToken,
    DownloadProgress,
    ProgressCallback,
    emit,
    run_cancellable,
)
from embedded_ollama.core.storage import (
    EmbeddedPaths,
    is_model_present,
    remove_model_dir,
    write_install_record,
)
from embedded_ollama.errors import (
    DownloadCancelledError,
    DownloadFailedError,
    DownloadIncompleteError,
    ExtractionFailedError,
    RequestTimeoutError,
    ServerHTTPError,
    ServerUnreachableError,
    UnknownModelError,
)

from .supervisor import ServerSupervisor

logger = logging.getLogger(__name__)

# A pull that ends cleanly at or below this percentage is treated as truncated.
COMPLETION_THRESHOLD_PERCENT = 50
PULL_TIMEOUT_SECONDS = 600.0


@dataclass(frozen=True, slots=True)
class InstallOutcome:
    """Terminal result of one install call."""

    model: ModelDescriptor
    success: bool
    cancelled: bool = False


class ModelInstaller:
    """Install catalog models locally and keep registry flags in sync with disk."""

    def __init__(
        self,
        *,
        registry: ModelRegistry,
        supervisor: ServerSupervisor,
        paths: EmbeddedPaths,
    ) -> None:
        self._registry = registry
        self._supervisor = supervisor
        self._paths = paths

    async def install(
        self,
        name: str,
        *,
        progress_cb: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> InstallOutcome:
        descriptor = self._registry.get(name)
        if descriptor is None:
            raise UnknownModelError(
                action=f"install model {name!r}",
                detail="model is not defined in the catalog",
            )

        if descriptor.is_installed:
            if is_model_present(name, paths=self._paths):
                logger.info("model %s is already installed", name)
                emit(progress_cb, f"{descriptor.display_name} is already installed", 100)
                return InstallOutcome(model=descriptor, success=True)
            logger.warning("model %s is flagged installed but its directory is missing", name)

        bundled_dir = self._paths.bundled_model_dir(name)
        try:
            if bundled_dir.is_dir():
                files = await self._extract_bundled(
                    descriptor,
                    bundled_dir,
                    progress_cb=progress_cb,
                )
                source = "bundled"
            else:
                await self._pull(descriptor, progress_cb=progress_cb, cancel_token=cancel_token)
                files = []
                source = "pull"
        except DownloadCancelledError:
            logger.info("installation of %s was cancelled", name)
            emit(progress_cb, f"Installation of {descriptor.display_name} cancelled")
            return InstallOutcome(model=descriptor, success=False, cancelled=True)

        write_install_record(name, source=source, files=files, paths=self._paths)
        installed = self._registry.set_installed(name, True)
        logger.info("model %s installed from %s", name, source)
        return InstallOutcome(model=installed, success=True)

    def refresh(self) -> list[ModelDescriptor]:
        """Re-derive every installed flag from the models directory."""
        for descriptor in list(self._registry):
            present = is_model_present(descriptor.name, paths=self._paths)
            if present != descriptor.is_installed:
                logger.info(
                    "model %s installed flag corrected to %s",
                    descriptor.name,
                    present,
                )
                self._registry.set_installed(descriptor.name, present)
        return self._registry.list_catalog()

    def remove(self, name: str) -> bool:
        """Delete one model directory and clear its flag; returns whether files were removed."""
        if name not in self._registry:
            raise UnknownModelError(
                action=f"remove model {name!r}",
                detail="model is not defined in the catalog",
            )
        removed = remove_model_dir(name, paths=self._paths)
        self._registry.set_installed(name, False)
        return removed

    async def _extract_bundled(
        self,
        descriptor: ModelDescriptor,
        source_dir: Path,
        *,
        progress_cb: ProgressCallback | None,
    ) -> list[str]:
        name = descriptor.name
        destination = self._paths.model_dir(name)
        action = f"extract bundled model {name!r}"
        logger.info("extracting bundled model %s from %s", name, source_dir)
        try:
            destination.mkdir(parents=True, exist_ok=True)
            sources = sorted(path for path in source_dir.rglob("*") if path.is_file())
            total = len(sources)
            copied: list[str] = []
            for index, source in enumerate(sources, start=1):
                relative = source.relative_to(source_dir)
                target = destination / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
                copied.append(relative.as_posix())
                emit(
                    progress_cb,
                    f"Extracting {descriptor.display_name} ({index}/{total})",
                    round(index / total * 100),
                )
                await asyncio.sleep(0)
        except OSError as exc:
            raise ExtractionFailedError(action=action, detail=str(exc)) from exc

        emit(progress_cb, f"{descriptor.display_name} extracted", 100)
        return copied

    async def _pull(
        self,
        descriptor: ModelDescriptor,
        *,
        progress_cb: ProgressCallback | None,
        cancel_token: CancellationToken | None,
    ) -> None:
        name = descriptor.name
        action = f"pull model {name!r}"
        if cancel_token is not None and cancel_token.cancelled:
            raise DownloadCancelledError(action=action, detail="cancelled by caller")

        await self._supervisor.ensure_running()
        emit(progress_cb, f"Downloading {descriptor.display_name}...")
        logger.info("pulling model %s from %s", name, self._supervisor.base_url)
        try:
            last_percent = await run_cancellable(
                self._consume_pull_stream(descriptor, action=action, progress_cb=progress_cb),
                cancel_token,
                action=action,
            )
        except (ServerHTTPError, ServerUnreachableError, RequestTimeoutError) as exc:
            raise DownloadFailedError(
                action=action,
                status_code=exc.status_code,
                detail=exc.detail,
            ) from exc

        if last_percent is None or last_percent <= COMPLETION_THRESHOLD_PERCENT:
            reached = "no progress" if last_percent is None else f"{last_percent}%"
            raise DownloadIncompleteError(
                action=action,
                detail=f"stream ended after {reached}",
            )
        emit(progress_cb, f"{descriptor.display_name} downloaded", 100)

    async def _consume_pull_stream(
        self,
        descriptor: ModelDescriptor,
        *,
        action: str,
        progress_cb: ProgressCallback | None,
    ) -> int | None:
        payload = {"name": descriptor.name, "stream": True, "insecure": True}
        last_percent: int | None = None
        events = self._supervisor.client.stream_ndjson(
            "POST",
            PULL_PATH,
            json_payload=payload,
            action=action,
            timeout=PULL_TIMEOUT_SECONDS,
        )
        async for event in events:
            progress = _progress_from_event(event)
            percent = progress.percent
            if percent is not None:
                last_percent = percent
                label = progress.status or "downloading"
                emit(progress_cb, f"{descriptor.display_name}: {label} ({percent}%)", percent)
            elif progress.status:
                emit(progress_cb, f"{descriptor.display_name}: {progress.status}")
        return last_percent


def _progress_from_event(event: dict[str, object]) -> DownloadProgress:
    completed = event.get("completed")
    total = event.get("total")
    status = event.get("status")
    return DownloadProgress(
        completed_bytes=completed if isinstance(completed, int) else None,
        total_bytes=total if isinstance(total, int) else None,
        status=status if isinstance(status, str) else None,
    )
