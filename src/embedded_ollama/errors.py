"""Typed exception hierarchy for embedded Ollama provisioning and calls."""

from __future__ import annotations

from dataclasses import dataclass

MANUAL_DOWNLOAD_URL = "https://ollama.com/download"


@dataclass(slots=True)
class ErrorMetadata:
    """Structured metadata for mapping errors across interfaces."""

    category: str
    exit_code: int


class EmbeddedOllamaError(RuntimeError):
    """Base error for embedded Ollama operations."""

    metadata = ErrorMetadata(category="INTERNAL_ERROR", exit_code=10)

    def __init__(
        self,
        *,
        action: str,
        detail: str,
        status_code: int | None = None,
        hint: str | None = None,
    ) -> None:
        message = f"{action} failed"
        if status_code is not None:
            message = f"{message} with HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.action = action
        self.detail = detail
        self.status_code = status_code
        self.hint = hint

    @property
    def exit_code(self) -> int:
        return self.metadata.exit_code

    @property
    def category(self) -> str:
        return self.metadata.category


class PlatformUnsupportedError(EmbeddedOllamaError):
    """No known server binary exists for this platform/architecture."""

    metadata = ErrorMetadata(category="PLATFORM_UNSUPPORTED", exit_code=2)


class PermissionDeniedError(EmbeddedOllamaError):
    """No writable location was found for the server binary."""

    metadata = ErrorMetadata(category="PERMISSION_DENIED", exit_code=5)


class ExecutableNotFoundError(EmbeddedOllamaError):
    """Every provisioning path and the system search failed."""

    metadata = ErrorMetadata(category="EXECUTABLE_NOT_FOUND", exit_code=3)

    def __init__(self, *, action: str, detail: str, hint: str | None = None) -> None:
        super().__init__(
            action=action,
            detail=detail,
            hint=hint or f"download Ollama manually from {MANUAL_DOWNLOAD_URL}",
        )


class DownloadFailedError(EmbeddedOllamaError):
    """A network transfer or helper process failed."""

    metadata = ErrorMetadata(category="DOWNLOAD_FAILED", exit_code=7)


class DownloadCancelledError(EmbeddedOllamaError):
    """A cancellable transfer was aborted by the caller."""

    metadata = ErrorMetadata(category="CANCELLED", exit_code=130)


class DownloadIncompleteError(DownloadFailedError):
    """A pull stream ended cleanly without reaching the completion threshold."""

    metadata = ErrorMetadata(category="DOWNLOAD_INCOMPLETE", exit_code=7)


class ExtractionFailedError(EmbeddedOllamaError):
    """Copying bundled files into place failed part way."""

    metadata = ErrorMetadata(category="EXTRACTION_FAILED", exit_code=8)


class ServerStartTimeoutError(EmbeddedOllamaError):
    """The server did not answer the liveness endpoint within the poll ceiling."""

    metadata = ErrorMetadata(category="SERVER_START_TIMEOUT", exit_code=6)


class InvalidApiResponseError(EmbeddedOllamaError):
    """The server answered with a payload missing required fields."""

    metadata = ErrorMetadata(category="INVALID_API_RESPONSE", exit_code=9)


class UnknownModelError(EmbeddedOllamaError):
    """The requested model is not part of the catalog."""

    metadata = ErrorMetadata(category="UNKNOWN_MODEL", exit_code=4)


class ServerHTTPError(EmbeddedOllamaError):
    """Generic server HTTP status error."""


class ModelNotFoundError(ServerHTTPError):
    """The server does not have the requested model."""

    metadata = ErrorMetadata(category="MODEL_MISSING", exit_code=4)


class ServerUnreachableError(EmbeddedOllamaError):
    """The server endpoint could not be reached."""

    metadata = ErrorMetadata(category="SERVER_UNREACHABLE", exit_code=3)


class RequestTimeoutError(EmbeddedOllamaError):
    """A server request timed out."""

    metadata = ErrorMetadata(category="TIMEOUT", exit_code=6)
