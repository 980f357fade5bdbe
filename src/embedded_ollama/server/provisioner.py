"""Platform-specific server executable resolution, extraction and download."""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import shutil
import tarfile
import zipfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import httpx

from embedded_ollama.core.progress import (
    CancellationToken,
    DownloadProgress,
    ProgressCallback,
    emit,
    run_cancellable,
)
from embedded_ollama.core.storage import EmbeddedPaths
from embedded_ollama.errors import (
    DownloadCancelledError,
    DownloadFailedError,
    EmbeddedOllamaError,
    ExecutableNotFoundError,
    PermissionDeniedError,
    PlatformUnsupportedError,
)

logger = logging.getLogger(__name__)

DOWNLOAD_BASE_URL = "https://ollama.com/download"
DOWNLOAD_TIMEOUT_SECONDS = 60.0
EXECUTABLE_MODE = 0o755

_SYSTEM_NAMES: dict[str, str] = {
    "windows": "windows",
    "darwin": "darwin",
    "linux": "linux",
}

_MACHINE_ALIASES: dict[str, str] = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
}

DOWNLOAD_ASSETS: dict[tuple[str, str], str] = {
    ("windows", "x64"): "ollama-windows-amd64.zip",
    ("windows", "arm64"): "ollama-windows-arm64.zip",
    ("darwin", "x64"): "ollama-darwin-amd64",
    ("darwin", "arm64"): "ollama-darwin-arm64",
    ("linux", "x64"): "ollama-linux-amd64",
    ("linux", "arm64"): "ollama-linux-arm64",
}

_ARCHIVE_SUFFIXES = (".zip", ".tgz", ".tar.gz")

UNIX_SYSTEM_PATHS: tuple[str, ...] = (
    "/usr/local/bin/ollama",
    "/usr/bin/ollama",
    "/opt/ollama/ollama",
)


@dataclass(frozen=True)
class PlatformTarget:
    """Normalized {system, arch} pair used to pick a server binary."""

    system: str
    arch: str

    @property
    def key(self) -> str:
        return f"{self.system}-{self.arch}"

    @property
    def executable_name(self) -> str:
        return "ollama.exe" if self.system == "windows" else "ollama"

    @property
    def is_windows(self) -> bool:
        return self.system == "windows"


def detect_platform(system: str | None = None, machine: str | None = None) -> PlatformTarget:
    """Normalize the host platform, rejecting combinations with no known binary."""
    raw_system = (system if system is not None else platform.system()).strip().lower()
    raw_machine = (machine if machine is not None else platform.machine()).strip().lower()

    normalized_system = _SYSTEM_NAMES.get(raw_system)
    normalized_arch = _MACHINE_ALIASES.get(raw_machine)
    if normalized_system is None or normalized_arch is None:
        raise PlatformUnsupportedError(
            action="detect platform",
            detail=f"no server binary for {raw_system or '?'}-{raw_machine or '?'}",
        )
    return PlatformTarget(system=normalized_system, arch=normalized_arch)


class BinaryProvisioner:
    """Resolve the server executable, installing it on first use."""

    def __init__(
        self,
        *,
        paths: EmbeddedPaths,
        target: PlatformTarget | None = None,
        download_base_url: str = DOWNLOAD_BASE_URL,
        system_search_paths: Sequence[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._paths = paths
        self._target = target
        self._download_base_url = download_base_url.rstrip("/")
        self._system_search_paths = system_search_paths
        self._transport = transport
        self._executable_path: Path | None = None

    @property
    def executable_path(self) -> Path | None:
        return self._executable_path

    async def resolve_executable(
        self,
        *,
        progress_cb: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Path:
        """Return a runnable server executable or raise ``ExecutableNotFoundError``."""
        cached = self._executable_path
        if cached is not None and cached.is_file():
            return cached

        last_error: EmbeddedOllamaError | None = None
        try:
            resolved = await self._provision(progress_cb=progress_cb, cancel_token=cancel_token)
        except DownloadCancelledError:
            raise
        except EmbeddedOllamaError as exc:
            logger.warning("embedded server binary setup failed: %s", exc)
            last_error = exc
        else:
            self._executable_path = resolved
            logger.info("server executable ready at %s", resolved)
            return resolved

        system_path = self._find_system_executable()
        if system_path is not None:
            logger.info("using system Ollama installation at %s", system_path)
            self._executable_path = system_path
            return system_path

        detail = "no embedded binary could be installed and no system installation was found"
        if last_error is not None:
            detail = f"{detail} ({last_error})"
        raise ExecutableNotFoundError(
            action="resolve server executable",
            detail=detail,
        ) from last_error

    def cleanup_staging(self) -> bool:
        """Remove temporary download data; returns whether anything was removed."""
        download_dir = self._paths.download_dir
        if not download_dir.exists():
            return False
        shutil.rmtree(download_dir, ignore_errors=True)
        return not download_dir.exists()

    async def _provision(
        self,
        *,
        progress_cb: ProgressCallback | None,
        cancel_token: CancellationToken | None,
    ) -> Path:
        target = self._target or detect_platform()
        executable_name = target.executable_name

        for bin_dir in (self._paths.app_bin_dir, self._paths.staging_bin_dir):
            existing = bin_dir / executable_name
            if existing.is_file():
                _ensure_executable(existing, target=target)
                return existing

        bundled = self._paths.bundled_binaries_dir / target.key / executable_name
        if bundled.is_file():
            logger.info("extracting bundled server binary from %s", bundled)
            installed = await self._install_file(bundled, executable_name)
            _ensure_executable(installed, target=target)
            return installed

        logger.info("no bundled server binary for %s, downloading", target.key)
        installed = await self._download_executable(
            target,
            progress_cb=progress_cb,
            cancel_token=cancel_token,
        )
        _ensure_executable(installed, target=target)
        return installed

    async def _install_file(self, source: Path, executable_name: str) -> Path:
        failures: list[str] = []
        for bin_dir in (self._paths.app_bin_dir, self._paths.staging_bin_dir):
            if not _is_writable(bin_dir):
                logger.info("cannot write to %s, trying the next location", bin_dir)
                failures.append(f"{bin_dir} is not writable")
                continue

            destination = bin_dir / executable_name
            try:
                shutil.copy2(source, destination)
            except OSError as exc:
                logger.warning("copying %s to %s failed: %s", source, destination, exc)
                failures.append(f"{destination}: {exc}")
                continue
            await asyncio.sleep(0)
            logger.info("server binary installed to %s", destination)
            return destination

        raise PermissionDeniedError(
            action="install server binary",
            detail="; ".join(failures) or "no writable location",
        )

    async def _download_executable(
        self,
        target: PlatformTarget,
        *,
        progress_cb: ProgressCallback | None,
        cancel_token: CancellationToken | None,
    ) -> Path:
        asset = DOWNLOAD_ASSETS.get((target.system, target.arch))
        if asset is None:
            raise PlatformUnsupportedError(
                action="download server binary",
                detail=f"no download available for {target.key}",
            )

        url = f"{self._download_base_url}/{asset}"
        download_dir = self._paths.download_dir
        download_dir.mkdir(parents=True, exist_ok=True)
        temp_file = download_dir / asset
        action = f"download server binary from {url}"
        try:
            emit(progress_cb, f"Downloading from {url}...")
            await run_cancellable(
                self._stream_to_file(url, temp_file, action=action, progress_cb=progress_cb),
                cancel_token,
                action=action,
            )
            emit(progress_cb, "Processing download...")
            source = temp_file
            if asset.endswith(_ARCHIVE_SUFFIXES):
                source = _extract_executable(
                    temp_file,
                    download_dir / "extracted",
                    target.executable_name,
                    action=action,
                )
            installed = await self._install_file(source, target.executable_name)
            emit(progress_cb, "Download complete", 100)
            return installed
        finally:
            shutil.rmtree(download_dir, ignore_errors=True)

    async def _stream_to_file(
        self,
        url: str,
        destination: Path,
        *,
        action: str,
        progress_cb: ProgressCallback | None,
    ) -> None:
        last_percent: int | None = None
        try:
            async with httpx.AsyncClient(
                timeout=DOWNLOAD_TIMEOUT_SECONDS,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    if response.is_error:
                        raise DownloadFailedError(
                            action=action,
                            status_code=response.status_code,
                            detail="download request was rejected",
                        )
                    total = _content_length(response)
                    completed = 0
                    with destination.open("wb") as handle:
                        async for chunk in response.aiter_bytes():
                            handle.write(chunk)
                            completed += len(chunk)
                            progress = DownloadProgress(
                                completed_bytes=completed,
                                total_bytes=total,
                                status="downloading",
                            )
                            percent = progress.percent
                            if percent is not None and percent != last_percent:
                                last_percent = percent
                                emit(progress_cb, f"Downloading Ollama ({percent}%)", percent)
        except httpx.HTTPError as exc:
            raise DownloadFailedError(action=action, detail=str(exc)) from exc
        except OSError as exc:
            raise DownloadFailedError(action=action, detail=f"cannot write {destination}: {exc}") from exc

    def _find_system_executable(self) -> Path | None:
        logger.info("checking for a system Ollama installation")
        found = shutil.which("ollama")
        if found:
            return Path(found)

        if self._system_search_paths is not None:
            candidates = list(self._system_search_paths)
        elif os.name == "nt":
            program_files = os.environ.get("ProgramFiles", "C:\\Program Files")
            candidates = [str(Path(program_files) / "Ollama" / "ollama.exe")]
        else:
            candidates = list(UNIX_SYSTEM_PATHS)

        for candidate in candidates:
            path = Path(candidate)
            if path.is_file():
                return path
        logger.info("no system Ollama installation found")
        return None


def _extract_executable(
    archive: Path,
    extract_dir: Path,
    executable_name: str,
    *,
    action: str,
) -> Path:
    extract_dir.mkdir(parents=True, exist_ok=True)
    try:
        if archive.name.endswith(".zip"):
            with zipfile.ZipFile(archive) as bundle:
                bundle.extractall(extract_dir)
        else:
            with tarfile.open(archive, "r:*") as bundle:
                bundle.extractall(extract_dir, filter="data")
    except (OSError, zipfile.BadZipFile, tarfile.TarError) as exc:
        raise DownloadFailedError(action=action, detail=f"cannot unpack {archive.name}: {exc}") from exc

    for candidate in sorted(extract_dir.rglob(executable_name)):
        if candidate.is_file():
            return candidate
    raise DownloadFailedError(
        action=action,
        detail=f"could not find {executable_name} in {archive.name}",
    )


def _ensure_executable(path: Path, *, target: PlatformTarget) -> None:
    if target.is_windows:
        return
    try:
        path.chmod(EXECUTABLE_MODE)
    except OSError as exc:
        logger.warning("failed to set executable permissions on %s: %s", path, exc)


def _is_writable(directory: Path) -> bool:
    probe = directory / ".write_test"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        probe.write_text("test", encoding="utf-8")
        probe.unlink()
    except OSError:
        return False
    return True


def _content_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None
