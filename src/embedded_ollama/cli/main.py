"""Typer-based CLI for the embedded Ollama server."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
from collections.abc import Iterator
from difflib import get_close_matches
from typing import Any, NoReturn

import typer
from tqdm import tqdm

from embedded_ollama.core.config import (
    CONFIG_KEY_DESCRIPTIONS,
    ConfigFileError,
    EmbeddedConfig,
    load_config,
    update_config,
)
from embedded_ollama.core.progress import CancellationToken, ProgressUpdate
from embedded_ollama.core.storage import EmbeddedPaths
from embedded_ollama.errors import EmbeddedOllamaError
from embedded_ollama.server.generation import THINKING_PLACEHOLDER, GenerateOptions
from embedded_ollama.service import EmbeddedOllama

app = typer.Typer(help="Provision, run and drive an embedded Ollama server.")
config_app = typer.Typer(help="Manage local defaults in ~/.embedded-ollama/config.json.")
app.add_typer(config_app, name="config")

_CONFIG_KEY_PATHS: dict[str, tuple[str, ...]] = {
    key: tuple(key.split(".")) for key in CONFIG_KEY_DESCRIPTIONS
}
_INT_CONFIG_KEYS = {"server.port", "server.start_attempts", "generate.max_tokens"}
_FLOAT_CONFIG_KEYS = {
    "server.poll_interval",
    "server.probe_timeout",
    "server.health_timeout",
    "server.stop_timeout",
    "generate.temperature",
    "generate.timeout",
}
_ERROR_CHUNK_PREFIX = "\n\n_Error:"
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_TABLE_GAP = 2
_CANCELLED_EXIT_CODE = 130

_COLOR_SUCCESS = typer.colors.GREEN
_COLOR_WARNING = typer.colors.YELLOW
_COLOR_ERROR = typer.colors.RED
_COLOR_DIM = typer.colors.BRIGHT_BLACK


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        "warning",
        "--log-level",
        envvar="EMBEDDED_OLLAMA_LOG_LEVEL",
        help="Logging level: debug, info, warning or error.",
    ),
) -> None:
    """Configure logging for every command."""
    level = logging.getLevelName(log_level.strip().upper())
    if not isinstance(level, int):
        _exit_with_message(f"invalid log level {log_level!r}")
    logging.basicConfig(level=level, format=_LOG_FORMAT, stream=sys.stderr)


def _exit_with_message(message: str, *, code: int = 2) -> NoReturn:
    typer.echo(message)
    raise typer.Exit(code=code)


def _style_text(text: str, *, fg: str | None = None, bold: bool = False) -> str:
    return typer.style(text, fg=fg, bold=bold)


def _error_hint(exc: BaseException) -> str | None:
    value = getattr(exc, "hint", None)
    if isinstance(value, str):
        normalized = value.strip()
        if normalized:
            return normalized
    return None


def _exit_with_runtime_error(exc: RuntimeError, *, code: int | None = None) -> NoReturn:
    typer.echo(_style_text(f"Error: {exc}", fg=_COLOR_ERROR), err=True)
    hint = _error_hint(exc)
    if hint is not None:
        typer.echo(_style_text(f"Hint: {hint}", fg=_COLOR_WARNING), err=True)
    if code is None:
        code = exc.exit_code if isinstance(exc, EmbeddedOllamaError) else 1
    raise typer.Exit(code=code) from exc


def _make_service() -> EmbeddedOllama:
    try:
        return EmbeddedOllama()
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)
    except ValueError as exc:
        _exit_with_message(f"Error: {exc}", code=1)


@app.command("status")
def status(
    json_output: bool = typer.Option(False, "--json", help="Print compact JSON."),
) -> None:
    """Show whether a server answers on the configured port, without starting one."""
    service = _make_service()

    async def _probe() -> dict[str, Any]:
        payload = service.status()
        alive, reason = await service.supervisor.client.is_alive(
            timeout=service.config.server.probe_timeout,
        )
        payload["reachable"] = alive
        payload["reason"] = reason
        payload["models"] = []
        if alive:
            try:
                payload["models"] = await service.list_server_models()
            except EmbeddedOllamaError as exc:
                payload["reason"] = str(exc)
        return payload

    payload = asyncio.run(_probe())
    if json_output:
        typer.echo(json.dumps(payload, separators=(",", ":"), sort_keys=True))
        return

    state = "reachable" if payload["reachable"] else "not reachable"
    color = _COLOR_SUCCESS if payload["reachable"] else _COLOR_WARNING
    typer.echo(f"{payload['base_url']}: {_style_text(state, fg=color)}")
    if payload["reason"]:
        typer.echo(_style_text(f" {payload['reason']}", fg=_COLOR_DIM))
    if payload["models"]:
        typer.echo(f" models: {', '.join(payload['models'])}")


@app.command("serve")
def serve() -> None:
    """Start the embedded server and keep it running until interrupted."""
    service = _make_service()

    async def _serve() -> None:
        try:
            await service.ensure_running()
            typer.echo(f"Embedded Ollama serving on {service.get_base_url()} (Ctrl-C to stop)")
            await asyncio.Event().wait()
        finally:
            await service.dispose()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        typer.echo("Stopped.")
    except EmbeddedOllamaError as exc:
        _exit_with_runtime_error(exc)


@app.command("catalog")
def catalog(
    json_output: bool = typer.Option(False, "--json", help="Print JSON output."),
    refresh: bool = typer.Option(
        True,
        "--refresh/--no-refresh",
        help="Re-check installed flags against the models directory.",
    ),
) -> None:
    """List catalog models, installed first."""
    service = _make_service()
    models = service.list_catalog(refresh=refresh)
    if json_output:
        payload = [model.model_dump(mode="json") for model in models]
        for entry in payload:
            entry["capabilities"] = sorted(entry["capabilities"])
            record = service.install_record(entry["name"]) if entry["is_installed"] else None
            entry["install_source"] = record.get("source") if record else None
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    rows = [
        (
            model.name,
            model.display_name,
            model.size or "-",
            str(model.parameter_count),
            "yes" if model.is_installed else "no",
        )
        for model in models
    ]
    typer.echo(_render_table(("NAME", "DISPLAY NAME", "SIZE", "PARAMS", "INSTALLED"), rows))


@app.command("install")
def install(
    model: str = typer.Argument(..., help="Catalog model name to install."),
) -> None:
    """Install a model from bundled files or by pulling it through the server."""
    service = _make_service()
    token = CancellationToken()
    progress_bar: tqdm[Any] | None = None

    def _on_progress(update: ProgressUpdate) -> None:
        nonlocal progress_bar
        progress_bar = _update_install_progress_bar(progress_bar, update)

    async def _install() -> Any:
        async with service:
            with _cancel_on_interrupt(token):
                return await service.install(model, progress_cb=_on_progress, cancel_token=token)

    try:
        outcome = asyncio.run(_install())
    except EmbeddedOllamaError as exc:
        _close_progress_bar(progress_bar)
        _exit_with_runtime_error(exc)
    _close_progress_bar(progress_bar)

    if outcome.cancelled:
        typer.echo(_style_text(f"Installation of {model} cancelled.", fg=_COLOR_WARNING), err=True)
        raise typer.Exit(code=_CANCELLED_EXIT_CODE)
    typer.echo(_style_text(f"Installed {outcome.model.display_name}.", fg=_COLOR_SUCCESS))


@app.command("remove")
def remove(
    model: str = typer.Argument(..., help="Catalog model name to remove."),
) -> None:
    """Delete a locally installed model directory."""
    service = _make_service()
    try:
        removed = service.remove(model)
    except EmbeddedOllamaError as exc:
        _exit_with_runtime_error(exc)
    if removed:
        typer.echo(f"Removed {model}.")
    else:
        typer.echo(f"{model} was not installed.")


@app.command("generate")
def generate(
    prompt: str = typer.Argument(..., help="Prompt text."),
    model: str | None = typer.Option(None, "--model", "-m", help="Model name."),
    no_stream: bool = typer.Option(False, "--no-stream", help="Wait for the full response."),
    max_tokens: int | None = typer.Option(None, "--max-tokens", min=1, help="num_predict."),
    temperature: float | None = typer.Option(None, "--temperature", min=0.0, help="Temperature."),
    timeout: float | None = typer.Option(None, "--timeout", min=0.1, help="Timeout in seconds."),
) -> None:
    """Generate text with a model, streaming fragments as they arrive."""
    service = _make_service()
    model_name = model or service.config.default_model
    options = GenerateOptions.from_defaults(
        service.config.generate,
        max_tokens=max_tokens,
        temperature=temperature,
        timeout=timeout,
        stream=not no_stream,
    )
    streamed = False

    def _on_chunk(chunk: str) -> None:
        nonlocal streamed
        if chunk == THINKING_PLACEHOLDER:
            typer.echo(_style_text("thinking...", fg=_COLOR_DIM), err=True)
            return
        if not chunk or chunk.startswith(_ERROR_CHUNK_PREFIX):
            return
        streamed = True
        typer.echo(chunk, nl=False)

    async def _generate() -> str:
        async with service:
            return await service.generate(model_name, prompt, options, _on_chunk)

    try:
        text = asyncio.run(_generate())
    except EmbeddedOllamaError as exc:
        if streamed:
            typer.echo("")
        _exit_with_runtime_error(exc)

    if streamed:
        typer.echo("")
    else:
        typer.echo(text)


@config_app.command("list")
def config_list(
    json_output: bool = typer.Option(False, "--json", help="Print compact JSON."),
) -> None:
    """Print current local config values."""
    try:
        config = load_config(EmbeddedPaths.default())
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)

    payload = config.model_dump(mode="json")
    if json_output:
        typer.echo(json.dumps(payload, separators=(",", ":"), sort_keys=True))
        return
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


@config_app.command("get")
def config_get(
    key: str = typer.Argument(..., help="Config key path (example: server.port)."),
) -> None:
    """Get one config value."""
    key_path = _resolve_config_key_path(key)
    try:
        config = load_config(EmbeddedPaths.default())
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)

    value: Any = config.model_dump(mode="json")
    for part in key_path:
        value = value[part]
    typer.echo(_format_config_scalar(value))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Config key path (example: server.port)."),
    value: str = typer.Argument(..., help="New value."),
) -> None:
    """Set one config value."""
    key_path = _resolve_config_key_path(key)
    parsed_value = _parse_config_value(key, value)
    try:
        update_config(EmbeddedPaths.default(), _nested_update(key_path, parsed_value))
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)


@config_app.command("unset")
def config_unset(
    key: str = typer.Argument(..., help="Config key path (example: server.port)."),
) -> None:
    """Reset one config value to its default."""
    key_path = _resolve_config_key_path(key)
    default: Any = EmbeddedConfig().model_dump(mode="json")
    for part in key_path:
        default = default[part]
    try:
        update_config(EmbeddedPaths.default(), _nested_update(key_path, default))
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc)


@config_app.command("keys")
def config_keys() -> None:
    """List writable config keys with descriptions."""
    rows = [(key, CONFIG_KEY_DESCRIPTIONS[key]) for key in sorted(CONFIG_KEY_DESCRIPTIONS)]
    typer.echo(_render_table(("KEY", "DESCRIPTION"), rows))


@contextlib.contextmanager
def _cancel_on_interrupt(token: CancellationToken) -> Iterator[None]:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except (NotImplementedError, RuntimeError, ValueError):
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _update_install_progress_bar(
    progress_bar: tqdm[Any] | None,
    update: ProgressUpdate,
) -> tqdm[Any] | None:
    if update.percent is None:
        typer.echo(_style_text(f" {update.message}", fg=_COLOR_DIM), err=True)
        return progress_bar

    if progress_bar is None:
        progress_bar = tqdm(
            total=100,
            unit="%",
            desc="install",
            file=sys.stderr,
            leave=False,
            dynamic_ncols=True,
        )

    percent = max(0, min(100, update.percent))
    if percent >= progress_bar.n:
        progress_bar.update(percent - progress_bar.n)
    else:
        progress_bar.n = percent
        progress_bar.refresh()
    progress_bar.set_description_str(update.message)
    return progress_bar


def _close_progress_bar(progress_bar: tqdm[Any] | None) -> None:
    if progress_bar is not None:
        progress_bar.close()


def _resolve_config_key_path(key: str) -> tuple[str, ...]:
    key_path = _CONFIG_KEY_PATHS.get(key)
    if key_path is None:
        suggestion = get_close_matches(key, sorted(_CONFIG_KEY_PATHS), n=1, cutoff=0.6)
        if suggestion:
            _exit_with_message(f"unknown key {key!r}. Did you mean {suggestion[0]!r}?")
        supported = ", ".join(sorted(_CONFIG_KEY_PATHS))
        _exit_with_message(f"unknown key {key!r}. Supported keys: {supported}")
    return key_path


def _nested_update(key_path: tuple[str, ...], value: Any) -> dict[str, Any]:
    update: Any = value
    for part in reversed(key_path):
        update = {part: update}
    return update


def _parse_config_value(key: str, value: str) -> int | float | str:
    if key in _INT_CONFIG_KEYS:
        try:
            return int(value)
        except ValueError as exc:
            raise typer.BadParameter(f"invalid integer value for {key!r}: {value!r}") from exc

    if key in _FLOAT_CONFIG_KEYS:
        try:
            return float(value)
        except ValueError as exc:
            raise typer.BadParameter(f"invalid number value for {key!r}: {value!r}") from exc

    return value


def _format_config_scalar(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _render_table(headers: tuple[str, ...], rows: list[tuple[str, ...]]) -> str:
    widths = [len(header) for header in headers]
    for row in rows:
        for index, value in enumerate(row):
            widths[index] = max(widths[index], len(value))

    gap = " " * _TABLE_GAP
    header_line = gap.join(header.ljust(widths[idx]) for idx, header in enumerate(headers))
    separator_line = gap.join("-" * width for width in widths)
    row_lines = [
        gap.join(value.ljust(widths[idx]) for idx, value in enumerate(row)).rstrip()
        for row in rows
    ]
    return "\n".join([header_line.rstrip(), separator_line, *row_lines])


def main() -> None:
    """Console script entrypoint for the Typer app."""
    app()


if __name__ == "__main__":
    main()
