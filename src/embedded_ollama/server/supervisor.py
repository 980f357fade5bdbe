"""Embedded server subprocess supervision and liveness verification."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import subprocess
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import httpx

from embedded_ollama.client import OllamaClient
from embedded_ollama.core.config import ServerDefaults
from embedded_ollama.core.storage import EmbeddedPaths
from embedded_ollama.errors import ExecutableNotFoundError, ServerStartTimeoutError

from .provisioner import BinaryProvisioner

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("embedded_ollama.server.output")

KILL_WAIT_SECONDS = 1.0


class ServerStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ServerEvent(str, Enum):
    START = "start"
    READY = "ready"
    START_FAILED = "start_failed"
    STOP = "stop"
    STOPPED = "stopped"
    PROCESS_EXITED = "process_exited"


_TRANSITIONS: dict[tuple[ServerStatus, ServerEvent], ServerStatus] = {
    (ServerStatus.STOPPED, ServerEvent.START): ServerStatus.STARTING,
    (ServerStatus.STARTING, ServerEvent.READY): ServerStatus.RUNNING,
    (ServerStatus.STARTING, ServerEvent.START_FAILED): ServerStatus.STOPPED,
    # The health-poll loop decides what an exit during start means.
    (ServerStatus.STARTING, ServerEvent.PROCESS_EXITED): ServerStatus.STARTING,
    (ServerStatus.RUNNING, ServerEvent.STOP): ServerStatus.STOPPING,
    (ServerStatus.RUNNING, ServerEvent.PROCESS_EXITED): ServerStatus.STOPPED,
    (ServerStatus.STOPPING, ServerEvent.STOPPED): ServerStatus.STOPPED,
    (ServerStatus.STOPPING, ServerEvent.PROCESS_EXITED): ServerStatus.STOPPED,
}


class InvalidTransitionError(RuntimeError):
    """Raised when an event is not valid for the current server status."""


def next_status(status: ServerStatus, event: ServerEvent) -> ServerStatus:
    """Return the status reached by applying ``event`` in ``status``."""
    try:
        return _TRANSITIONS[(status, event)]
    except KeyError as exc:
        raise InvalidTransitionError(
            f"event {event.value!r} is not valid while {status.value}",
        ) from exc


class ServerSupervisor:
    """Own the embedded server process and its Stopped/Starting/Running/Stopping state."""

    def __init__(
        self,
        *,
        provisioner: BinaryProvisioner,
        paths: EmbeddedPaths,
        settings: ServerDefaults | None = None,
        port: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._provisioner = provisioner
        self._paths = paths
        self._settings = settings or ServerDefaults()
        self._port = port if port is not None else self._settings.port
        self._base_url = f"http://{self._settings.host}:{self._port}"
        self._client = OllamaClient(self._base_url, transport=transport)
        self._status = ServerStatus.STOPPED
        self._process: asyncio.subprocess.Process | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._start_task: asyncio.Task[None] | None = None
        self._stop_task: asyncio.Task[None] | None = None
        self._started_at: datetime | None = None
        self._last_exit_code: int | None = None
        self._last_error: str | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def port(self) -> int:
        return self._port

    @property
    def client(self) -> OllamaClient:
        return self._client

    @property
    def status(self) -> ServerStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._status is ServerStatus.RUNNING

    @property
    def last_exit_code(self) -> int | None:
        return self._last_exit_code

    async def ensure_running(self) -> None:
        """Make sure a server answers on the configured port, starting one if needed."""
        # A start may only begin once an in-flight stop has reached STOPPED.
        while self._stop_task is not None and not self._stop_task.done():
            await asyncio.shield(self._stop_task)

        if self._status is ServerStatus.RUNNING:
            process = self._process
            if process is not None and process.returncode is None:
                return
            if process is None:
                alive, reason = await self._client.is_alive(
                    timeout=self._settings.probe_timeout,
                )
                if alive:
                    return
                logger.info("external server at %s stopped answering: %s", self._base_url, reason)
                self._apply(ServerEvent.PROCESS_EXITED)
            else:
                self._on_process_exit(process, process.returncode)

        task = self._start_task
        if task is None:
            task = asyncio.create_task(self._start())
            self._start_task = task
            task.add_done_callback(self._on_start_done)

        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and (current is None or not current.cancelling()):
                raise ServerStartTimeoutError(
                    action="start embedded server",
                    detail="start was aborted by a stop request",
                ) from None
            raise

    async def stop(self) -> None:
        """Stop the owned server; never raises.

        Concurrent callers share one stop, and ``ensure_running`` waits for it
        to finish before starting again.
        """
        task = self._stop_task
        if task is None:
            task = asyncio.create_task(self._stop_quietly())
            self._stop_task = task
            task.add_done_callback(self._on_stop_done)
        await asyncio.shield(task)

    async def _stop_quietly(self) -> None:
        try:
            await self._stop()
        except Exception:  # noqa: BLE001
            logger.exception("error while stopping embedded server")
            await self._release_process()
            self._status = ServerStatus.STOPPED

    def get_status(self) -> dict[str, Any]:
        """Return current server state without starting anything."""
        process = self._process
        return {
            "status": self._status.value,
            "running": self.is_running,
            "base_url": self._base_url,
            "port": self._port,
            "external": self.is_running and process is None,
            "pid": process.pid if process is not None else None,
            "started_at": _to_utc_iso(self._started_at),
            "executable": _path_or_none(self._provisioner.executable_path),
            "last_exit_code": self._last_exit_code,
            "last_error": self._last_error,
        }

    def _apply(self, event: ServerEvent) -> ServerStatus:
        previous = self._status
        self._status = next_status(previous, event)
        if previous is not self._status:
            logger.debug(
                "server status %s -> %s (%s)",
                previous.value,
                self._status.value,
                event.value,
            )
        return self._status

    async def _start(self) -> None:
        self._apply(ServerEvent.START)
        try:
            alive, _reason = await self._client.is_alive(timeout=self._settings.probe_timeout)
            if alive:
                logger.info("server already running on %s, adopting it", self._base_url)
                self._started_at = datetime.now(UTC)
                self._apply(ServerEvent.READY)
                return

            logger.info("no existing server detected on %s, starting a new instance", self._base_url)
            executable = await self._provisioner.resolve_executable()
            process = await self._spawn(executable)
            await self._wait_until_ready(process)
        except BaseException as exc:
            if self._status is ServerStatus.STARTING:
                self._last_error = str(exc) or exc.__class__.__name__
                await self._release_process(kill=True)
                self._apply(ServerEvent.START_FAILED)
            raise

    async def _spawn(self, executable: Path) -> asyncio.subprocess.Process:
        env = dict(os.environ)
        env["OLLAMA_MODELS"] = str(self._paths.models_dir)
        env["OLLAMA_HOST"] = f"{self._settings.host}:{self._port}"
        self._paths.models_dir.mkdir(parents=True, exist_ok=True)

        kwargs: dict[str, Any] = {}
        if os.name == "nt":
            kwargs["creationflags"] = (
                subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW
            )
        else:
            kwargs["start_new_session"] = True

        logger.info(
            "starting %s with models path %s on port %d",
            executable,
            self._paths.models_dir,
            self._port,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                str(executable),
                "serve",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                **kwargs,
            )
        except OSError as exc:
            raise ExecutableNotFoundError(
                action="start embedded server",
                detail=f"cannot execute {executable}: {exc}",
            ) from exc

        self._process = process
        self._started_at = datetime.now(UTC)
        self._last_exit_code = None
        self._spawn_background(self._pump_output(process.stdout, logging.INFO))
        self._spawn_background(self._pump_output(process.stderr, logging.WARNING))
        self._spawn_background(self._watch(process))
        return process

    async def _wait_until_ready(self, process: asyncio.subprocess.Process) -> None:
        attempts = self._settings.start_attempts
        last_error = "no response"
        exit_reported = False
        attempt = 0
        while attempt < attempts:
            attempt += 1
            await self._sleep(self._settings.poll_interval)
            alive, reason = await self._client.is_alive(timeout=self._settings.health_timeout)
            if alive:
                if process.returncode is not None:
                    logger.info(
                        "spawned server exited with code %s but %s answers; adopting it",
                        process.returncode,
                        self._base_url,
                    )
                    await self._release_process()
                self._apply(ServerEvent.READY)
                logger.info("embedded server started on %s", self._base_url)
                return

            last_error = reason or last_error
            if process.returncode is not None:
                # Keep polling; another instance may still come up on the port.
                last_error = f"server process exited with code {process.returncode}"
                if not exit_reported:
                    logger.warning("embedded server exited during startup: %s", last_error)
                    exit_reported = True
            logger.debug("health check attempt %d/%d failed: %s", attempt, attempts, last_error)

        logger.error("failed to confirm server startup; last error: %s", last_error)
        raise ServerStartTimeoutError(
            action="start embedded server",
            detail=f"no healthy response after {attempt} attempt(s); last error: {last_error}",
        )

    async def _stop(self) -> None:
        start_task = self._start_task
        if start_task is not None and not start_task.done():
            start_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await start_task

        if self._status is not ServerStatus.RUNNING:
            return

        process = self._process
        self._apply(ServerEvent.STOP)
        if process is None:
            logger.info("forgetting external server at %s", self._base_url)
            self._apply(ServerEvent.STOPPED)
            return

        logger.info("stopping embedded server (pid %s)", process.pid)
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            kill_wait = min(KILL_WAIT_SECONDS, self._settings.stop_timeout / 2)
            graceful_wait = self._settings.stop_timeout - kill_wait
            try:
                await asyncio.wait_for(process.wait(), timeout=graceful_wait)
            except TimeoutError:
                logger.warning(
                    "server shutdown timed out after %.1fs, forcing termination",
                    graceful_wait,
                )
                await _kill(process, timeout=kill_wait)
        await self._release_process()
        self._apply(ServerEvent.STOPPED)
        logger.info("embedded server stopped")

    def _on_process_exit(self, process: asyncio.subprocess.Process, returncode: int | None) -> None:
        if process is not self._process:
            return
        self._last_exit_code = returncode
        if self._status not in (ServerStatus.RUNNING, ServerStatus.STARTING):
            return

        logger.warning("embedded server exited with code %s", returncode)
        self._apply(ServerEvent.PROCESS_EXITED)
        if self._status is ServerStatus.STOPPED:
            self._process = None
            self._started_at = None

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        self._on_process_exit(process, returncode)

    async def _pump_output(self, stream: asyncio.StreamReader | None, level: int) -> None:
        if stream is None:
            return
        async for raw_line in stream:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                output_logger.log(level, "%s", line)

    async def _release_process(self, *, kill: bool = False) -> None:
        process = self._process
        self._process = None
        self._started_at = None
        if process is None:
            return
        if kill and process.returncode is None:
            await _kill(process)
        if process.returncode is not None:
            self._last_exit_code = process.returncode

    def _spawn_background(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_start_done(self, task: asyncio.Task[None]) -> None:
        if self._start_task is task:
            self._start_task = None
        if not task.cancelled():
            task.exception()

    def _on_stop_done(self, task: asyncio.Task[None]) -> None:
        if self._stop_task is task:
            self._stop_task = None

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


async def _kill(
    process: asyncio.subprocess.Process,
    *,
    timeout: float = KILL_WAIT_SECONDS,
) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except TimeoutError:
        logger.warning("server process %s did not exit after kill", process.pid)


def _to_utc_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _path_or_none(value: Path | None) -> str | None:
    return str(value) if value is not None else None
