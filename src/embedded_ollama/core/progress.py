"""Progress reporting and cancellation shared by downloads and streamed pulls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from embedded_ollama.errors import DownloadCancelledError

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class ProgressUpdate:
    """One message for the caller's progress sink."""

    message: str
    percent: int | None = None


ProgressCallback = Callable[[ProgressUpdate], None]


@dataclass(frozen=True, slots=True)
class DownloadProgress:
    """Byte counters and phase label derived from one progress event."""

    completed_bytes: int | None = None
    total_bytes: int | None = None
    status: str | None = None

    @property
    def percent(self) -> int | None:
        if self.completed_bytes is None or self.total_bytes is None:
            return None
        if self.total_bytes <= 0:
            return None
        return round(self.completed_bytes / self.total_bytes * 100)


class CancellationToken:
    """Caller-owned signal that aborts a cancellable transfer."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


def emit(progress_cb: ProgressCallback | None, message: str, percent: int | None = None) -> None:
    if progress_cb is None:
        return
    progress_cb(ProgressUpdate(message=message, percent=percent))


async def run_cancellable(
    work: Awaitable[T],
    token: CancellationToken | None,
    *,
    action: str,
) -> T:
    """Await ``work`` unless ``token`` fires first.

    When the token wins, the work task is cancelled (closing any open stream)
    and ``DownloadCancelledError`` is raised instead of waiting for it.
    """
    if token is None:
        return await work
    if token.cancelled:
        if asyncio.iscoroutine(work):
            work.close()
        raise DownloadCancelledError(action=action, detail="cancelled by caller")

    work_task = asyncio.ensure_future(work)
    cancel_task = asyncio.ensure_future(token.wait())
    try:
        done, _pending = await asyncio.wait(
            {work_task, cancel_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        work_task.cancel()
        cancel_task.cancel()
        raise

    if work_task in done:
        cancel_task.cancel()
        return work_task.result()

    work_task.cancel()
    try:
        await work_task
    except asyncio.CancelledError:
        pass
    except Exception:  # noqa: BLE001
        # The transfer already lost the race; its own failure is not the outcome.
        pass
    raise DownloadCancelledError(action=action, detail="cancelled by caller")
