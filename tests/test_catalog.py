"""Tests for the built-in catalog and the in-memory model registry."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from embedded_ollama.core.catalog import ModelDescriptor, ModelRegistry, load_catalog


def _descriptor(name: str, display_name: str, *, installed: bool = False) -> ModelDescriptor:
    return ModelDescriptor(name=name, display_name=display_name, is_installed=installed)


def test_builtin_catalog_contains_known_models() -> None:
    catalog = load_catalog()

    assert set(catalog) == {"deepseek-coder-v2:latest", "phi3:mini", "tinyllama:1.1b"}
    assert catalog["deepseek-coder-v2:latest"].is_installed is True
    assert catalog["phi3:mini"].is_installed is False
    assert catalog["tinyllama:1.1b"].display_name == "TinyLLama"


def test_list_catalog_orders_installed_first_then_display_name() -> None:
    registry = ModelRegistry(
        [
            _descriptor("a", "A", installed=True),
            _descriptor("b", "B"),
            _descriptor("c", "C", installed=True),
        ],
    )

    assert [item.name for item in registry.list_catalog()] == ["a", "c", "b"]


def test_list_catalog_breaks_ties_case_insensitively() -> None:
    registry = ModelRegistry(
        [
            _descriptor("zeta", "zeta"),
            _descriptor("alpha", "Alpha"),
            _descriptor("beta", "beta"),
        ],
    )

    assert [item.display_name for item in registry.list_catalog()] == ["Alpha", "beta", "zeta"]


def test_set_installed_replaces_descriptor_without_mutating_previous() -> None:
    registry = ModelRegistry([_descriptor("phi3:mini", "Phi-3 Mini")])
    before = registry.get("phi3:mini")

    updated = registry.set_installed("phi3:mini", True)

    assert before is not None
    assert before.is_installed is False
    assert updated.is_installed is True
    assert registry.get("phi3:mini") is updated
    assert registry.list_catalog()[0] is updated


def test_set_installed_rejects_unknown_model() -> None:
    registry = ModelRegistry([_descriptor("phi3:mini", "Phi-3 Mini")])

    with pytest.raises(KeyError):
        registry.set_installed("missing", True)


def test_descriptors_are_frozen() -> None:
    descriptor = _descriptor("phi3:mini", "Phi-3 Mini")

    with pytest.raises(ValidationError):
        descriptor.is_installed = True  # type: ignore[misc]


def test_registry_rejects_duplicate_names() -> None:
    with pytest.raises(ValueError, match="duplicate"):
        ModelRegistry([_descriptor("a", "A"), _descriptor("a", "Again")])


def test_load_catalog_rejects_duplicate_names(tmp_path: Path) -> None:
    catalog_path = tmp_path / "catalog.yaml"
    catalog_path.write_text(
        "models:\n"
        "  - name: dup\n"
        "    display_name: One\n"
        "  - name: dup\n"
        "    display_name: Two\n",
        encoding="utf-8",
    )

    with pytest.raises(ValueError, match="duplicate"):
        load_catalog(catalog_path)


def test_registry_from_file_reads_capabilities(tmp_path: Path) -> None:
    catalog_path = tmp_path / "catalog.yaml"
    catalog_path.write_text(
        "models:\n"
        "  - name: tiny\n"
        "    display_name: Tiny\n"
        "    parameter_count: 1100000000\n"
        "    capabilities: [chat, code]\n",
        encoding="utf-8",
    )

    registry = ModelRegistry.from_file(catalog_path)

    assert len(registry) == 1
    assert "tiny" in registry
    descriptor = registry.get("tiny")
    assert descriptor is not None
    assert descriptor.capabilities == frozenset({"chat", "code"})
    assert descriptor.parameter_count == 1_100_000_000
