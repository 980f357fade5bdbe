"""Built-in model catalog loading and the in-memory model registry."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr

DEFAULT_CATALOG_PATH = Path(__file__).resolve().with_name("catalog.yaml")


class ModelDescriptor(BaseModel):
    """Canonical description of one model known to the embedded server."""

    model_config = ConfigDict(extra="forbid", strict=True, frozen=True)

    name: StrictStr = Field(min_length=1)
    display_name: StrictStr = Field(min_length=1)
    description: StrictStr = ""
    size: StrictStr = ""
    parameter_count: StrictInt = Field(default=0, ge=0)
    capabilities: frozenset[StrictStr] = Field(default_factory=frozenset, strict=False)
    is_installed: StrictBool = False


class CatalogFile(BaseModel):
    """Top-level catalog file schema."""

    model_config = ConfigDict(extra="forbid", strict=True)

    models: list[ModelDescriptor] = Field(min_length=1)


def load_catalog(path: str | Path | None = None) -> dict[str, ModelDescriptor]:
    """Load and validate catalog descriptors keyed by model name."""
    catalog_path = Path(path) if path is not None else DEFAULT_CATALOG_PATH
    raw = catalog_path.read_text(encoding="utf-8")
    payload = yaml.safe_load(raw)
    if not isinstance(payload, dict):
        raise ValueError("catalog file must contain a top-level object")

    catalog = CatalogFile.model_validate(payload)
    by_name: dict[str, ModelDescriptor] = {}
    for descriptor in catalog.models:
        if descriptor.name in by_name:
            raise ValueError(f"duplicate model name in catalog: {descriptor.name!r}")
        by_name[descriptor.name] = descriptor

    return by_name


class ModelRegistry:
    """Own every ModelDescriptor, keyed by its unique name.

    Descriptors are immutable; flipping the installed flag replaces the whole
    entry in one assignment, so readers never observe a half-updated model.
    """

    def __init__(self, descriptors: Iterable[ModelDescriptor] | None = None) -> None:
        self._models: dict[str, ModelDescriptor] = {}
        source = load_catalog().values() if descriptors is None else descriptors
        for descriptor in source:
            if descriptor.name in self._models:
                raise ValueError(f"duplicate model name in registry: {descriptor.name!r}")
            self._models[descriptor.name] = descriptor

    @classmethod
    def from_file(cls, path: str | Path) -> ModelRegistry:
        return cls(load_catalog(path).values())

    def __contains__(self, name: object) -> bool:
        return name in self._models

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(list(self._models.values()))

    def __len__(self) -> int:
        return len(self._models)

    def get(self, name: str) -> ModelDescriptor | None:
        """Return one descriptor, or ``None`` for an unknown name."""
        return self._models.get(name)

    def set_installed(self, name: str, installed: bool) -> ModelDescriptor:
        """Replace the descriptor for ``name`` with the given installed flag."""
        try:
            current = self._models[name]
        except KeyError as exc:
            raise KeyError(f"model {name!r} is not defined in the catalog") from exc

        if current.is_installed is installed:
            return current
        updated = current.model_copy(update={"is_installed": installed})
        self._models[name] = updated
        return updated

    def list_catalog(self) -> list[ModelDescriptor]:
        """List descriptors, installed first, then by case-insensitive display name."""
        return sorted(
            self._models.values(),
            key=lambda item: (not item.is_installed, item.display_name.casefold()),
        )
