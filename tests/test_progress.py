"""Tests for progress helpers and cancellable work."""

from __future__ import annotations

import asyncio

import pytest

from embedded_ollama.core.progress import (
    CancellationToken,
    DownloadProgress,
    ProgressUpdate,
    emit,
    run_cancellable,
)
from embedded_ollama.errors import DownloadCancelledError


def test_download_progress_percent_requires_both_counters() -> None:
    assert DownloadProgress().percent is None
    assert DownloadProgress(completed_bytes=10).percent is None
    assert DownloadProgress(total_bytes=10).percent is None
    assert DownloadProgress(completed_bytes=1, total_bytes=0).percent is None
    assert DownloadProgress(completed_bytes=2, total_bytes=3).percent == 67
    assert DownloadProgress(completed_bytes=5, total_bytes=5).percent == 100


def test_emit_ignores_missing_callback() -> None:
    received: list[ProgressUpdate] = []

    emit(None, "ignored")
    emit(received.append, "Downloading", 40)

    assert received == [ProgressUpdate(message="Downloading", percent=40)]


@pytest.mark.asyncio
async def test_run_cancellable_returns_result_without_token() -> None:
    async def work() -> str:
        return "done"

    assert await run_cancellable(work(), None, action="download") == "done"


@pytest.mark.asyncio
async def test_run_cancellable_returns_result_when_not_cancelled() -> None:
    async def work() -> int:
        await asyncio.sleep(0)
        return 7

    assert await run_cancellable(work(), CancellationToken(), action="download") == 7


@pytest.mark.asyncio
async def test_run_cancellable_raises_when_token_already_cancelled() -> None:
    started = False

    async def work() -> None:
        nonlocal started
        started = True

    token = CancellationToken()
    token.cancel()

    with pytest.raises(DownloadCancelledError) as exc_info:
        await run_cancellable(work(), token, action="download thing")

    assert started is False
    assert exc_info.value.exit_code == 130
    assert "download thing failed" in str(exc_info.value)


@pytest.mark.asyncio
async def test_run_cancellable_aborts_pending_work() -> None:
    token = CancellationToken()
    work_cancelled = asyncio.Event()

    async def work() -> None:
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            work_cancelled.set()
            raise

    async def cancel_soon() -> None:
        await asyncio.sleep(0)
        token.cancel()

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(DownloadCancelledError):
        await run_cancellable(work(), token, action="download")
    await canceller

    assert token.cancelled is True
    assert work_cancelled.is_set()


@pytest.mark.asyncio
async def test_run_cancellable_propagates_work_errors() -> None:
    async def work() -> None:
        raise ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        await run_cancellable(work(), CancellationToken(), action="download")
