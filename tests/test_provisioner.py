"""Tests for server binary resolution, extraction and download."""

from __future__ import annotations

import asyncio
import io
import os
import zipfile
from pathlib import Path

import httpx
import pytest

from embedded_ollama.core.progress import CancellationToken, ProgressUpdate
from embedded_ollama.core.storage import EmbeddedPaths
from embedded_ollama.errors import (
    DownloadCancelledError,
    DownloadFailedError,
    ExecutableNotFoundError,
    PlatformUnsupportedError,
)
from embedded_ollama.server import provisioner as provisioner_module
from embedded_ollama.server.provisioner import (
    BinaryProvisioner,
    PlatformTarget,
    detect_platform,
)

LINUX = PlatformTarget(system="linux", arch="x64")
WINDOWS = PlatformTarget(system="windows", arch="x64")


@pytest.fixture(autouse=True)
def _no_system_ollama(monkeypatch) -> None:
    monkeypatch.setattr(provisioner_module.shutil, "which", lambda name: None)


def _write_bundled(paths: EmbeddedPaths, target: PlatformTarget, payload: bytes) -> Path:
    bundled = paths.bundled_binaries_dir / target.key / target.executable_name
    bundled.parent.mkdir(parents=True)
    bundled.write_bytes(payload)
    return bundled


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected download of {request.url}")


def _provisioner(
    paths: EmbeddedPaths,
    *,
    target: PlatformTarget = LINUX,
    handler=_unreachable,
    system_search_paths: list[str] | None = None,
) -> BinaryProvisioner:
    return BinaryProvisioner(
        paths=paths,
        target=target,
        download_base_url="https://downloads.test/ollama",
        system_search_paths=system_search_paths or [],
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.parametrize(
    ("system", "machine", "expected"),
    [
        ("Linux", "x86_64", "linux-x64"),
        ("Darwin", "arm64", "darwin-arm64"),
        ("Windows", "AMD64", "windows-x64"),
        ("Linux", "aarch64", "linux-arm64"),
    ],
)
def test_detect_platform_normalizes_names(system: str, machine: str, expected: str) -> None:
    assert detect_platform(system, machine).key == expected


def test_detect_platform_rejects_unknown_combinations() -> None:
    with pytest.raises(PlatformUnsupportedError):
        detect_platform("Linux", "riscv64")
    with pytest.raises(PlatformUnsupportedError):
        detect_platform("SunOS", "x86_64")


def test_executable_name_depends_on_system() -> None:
    assert LINUX.executable_name == "ollama"
    assert WINDOWS.executable_name == "ollama.exe"


@pytest.mark.asyncio
async def test_bundled_binary_is_copied_to_app_bin(paths: EmbeddedPaths) -> None:
    _write_bundled(paths, LINUX, b"#!/bin/sh\n")
    provisioner = _provisioner(paths)

    resolved = await provisioner.resolve_executable()

    assert resolved == paths.app_bin_dir / "ollama"
    assert resolved.read_bytes() == b"#!/bin/sh\n"
    assert provisioner.executable_path == resolved
    if os.name != "nt":
        assert os.access(resolved, os.X_OK)


@pytest.mark.asyncio
async def test_existing_binary_is_reused_without_copy(paths: EmbeddedPaths) -> None:
    paths.staging_bin_dir.mkdir(parents=True)
    existing = paths.staging_bin_dir / "ollama"
    existing.write_bytes(b"already here")

    resolved = await _provisioner(paths).resolve_executable()

    assert resolved == existing


@pytest.mark.asyncio
async def test_bundled_binary_falls_back_to_staging_dir(monkeypatch, paths: EmbeddedPaths) -> None:
    _write_bundled(paths, LINUX, b"binary")
    real_is_writable = provisioner_module._is_writable

    def fake_is_writable(directory: Path) -> bool:
        if directory == paths.app_bin_dir:
            return False
        return real_is_writable(directory)

    monkeypatch.setattr(provisioner_module, "_is_writable", fake_is_writable)

    resolved = await _provisioner(paths).resolve_executable()

    assert resolved == paths.staging_bin_dir / "ollama"
    assert resolved.read_bytes() == b"binary"


@pytest.mark.asyncio
async def test_download_streams_raw_binary_with_progress(paths: EmbeddedPaths) -> None:
    payload = b"x" * 1000
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, content=payload)

    updates: list[ProgressUpdate] = []
    provisioner = _provisioner(paths, handler=handler)

    resolved = await provisioner.resolve_executable(progress_cb=updates.append)

    assert requested == ["https://downloads.test/ollama/ollama-linux-amd64"]
    assert resolved == paths.app_bin_dir / "ollama"
    assert resolved.read_bytes() == payload
    assert updates[-1] == ProgressUpdate(message="Download complete", percent=100)
    assert any(update.percent == 100 for update in updates[:-1])
    assert not paths.download_dir.exists()


@pytest.mark.asyncio
async def test_download_extracts_zip_archives(paths: EmbeddedPaths) -> None:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as bundle:
        bundle.writestr("README.txt", "docs")
        bundle.writestr("bin/ollama.exe", b"windows binary")

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/ollama-windows-amd64.zip")
        return httpx.Response(200, content=buffer.getvalue())

    resolved = await _provisioner(paths, target=WINDOWS, handler=handler).resolve_executable()

    assert resolved == paths.app_bin_dir / "ollama.exe"
    assert resolved.read_bytes() == b"windows binary"
    assert not paths.download_dir.exists()


@pytest.mark.asyncio
async def test_download_failure_falls_back_to_system_install(
    paths: EmbeddedPaths,
    tmp_path: Path,
) -> None:
    system_binary = tmp_path / "usr" / "bin" / "ollama"
    system_binary.parent.mkdir(parents=True)
    system_binary.write_bytes(b"system")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="missing")

    provisioner = _provisioner(
        paths,
        handler=handler,
        system_search_paths=[str(tmp_path / "nowhere"), str(system_binary)],
    )

    assert await provisioner.resolve_executable() == system_binary


@pytest.mark.asyncio
async def test_which_result_is_preferred_for_system_install(monkeypatch, paths: EmbeddedPaths) -> None:
    monkeypatch.setattr(provisioner_module.shutil, "which", lambda name: "/opt/found/ollama")

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    resolved = await _provisioner(paths, handler=handler).resolve_executable()

    assert resolved == Path("/opt/found/ollama")


@pytest.mark.asyncio
async def test_every_path_failing_raises_executable_not_found(paths: EmbeddedPaths) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="broken")

    with pytest.raises(ExecutableNotFoundError) as exc_info:
        await _provisioner(paths, handler=handler).resolve_executable()

    assert isinstance(exc_info.value.__cause__, DownloadFailedError)
    assert exc_info.value.hint is not None
    assert "https://ollama.com/download" in exc_info.value.hint
    assert exc_info.value.exit_code == 3


@pytest.mark.asyncio
async def test_cancelled_download_is_not_replaced_by_system_install(
    monkeypatch,
    paths: EmbeddedPaths,
) -> None:
    monkeypatch.setattr(provisioner_module.shutil, "which", lambda name: "/usr/bin/ollama")
    token = CancellationToken()
    release = asyncio.Event()

    class _SlowStream(httpx.AsyncByteStream):
        async def __aiter__(self):
            yield b"partial"
            await release.wait()
            yield b"rest"

    def handler(request: httpx.Request) -> httpx.Response:
        token.cancel()
        return httpx.Response(200, stream=_SlowStream())

    with pytest.raises(DownloadCancelledError):
        await _provisioner(paths, handler=handler).resolve_executable(cancel_token=token)

    assert not paths.download_dir.exists()
    assert not (paths.app_bin_dir / "ollama").exists()


def test_cleanup_staging_removes_download_dir(paths: EmbeddedPaths) -> None:
    provisioner = _provisioner(paths)
    assert provisioner.cleanup_staging() is False

    paths.download_dir.mkdir(parents=True)
    (paths.download_dir / "partial").write_bytes(b"x")

    assert provisioner.cleanup_staging() is True
    assert not paths.download_dir.exists()
