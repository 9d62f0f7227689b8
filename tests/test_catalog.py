"""Tests for the model catalog and download status."""

from __future__ import annotations

from pathlib import Path

import pytest

from chatstack.core.errors import ModelNotDownloadedError, ModelNotFoundError
from chatstack.core.model_catalog import CatalogModel, ModelCatalog


@pytest.fixture
def catalog(tmp_path: Path) -> ModelCatalog:
    weights = tmp_path / "llama"
    weights.mkdir()
    (weights / "model.safetensors").write_bytes(b"x" * 100)
    (weights / "config.json").write_text("{}")
    single = tmp_path / "single.gguf"
    single.write_bytes(b"y" * 42)
    return ModelCatalog(
        [
            CatalogModel(id="llama", name="Llama", path="llama", size="5 GB", tags=["chat"]),
            CatalogModel(id="single", name="Single", path=str(single)),
            CatalogModel(id="absent", name="Absent", path="absent"),
        ],
        tmp_path,
    )


def test_status_of_downloaded_directory(catalog: ModelCatalog, tmp_path: Path) -> None:
    status = catalog.get_status("llama")
    assert status.is_downloaded
    assert status.file_path == str(tmp_path / "llama")
    assert status.file_size == 102
    assert status.last_modified is not None


def test_absolute_paths_are_used_as_is(catalog: ModelCatalog, tmp_path: Path) -> None:
    status = catalog.get_status("single")
    assert status.file_path == str(tmp_path / "single.gguf")
    assert status.file_size == 42


def test_missing_model_is_not_downloaded(catalog: ModelCatalog) -> None:
    status = catalog.get_status("absent")
    assert not status.is_downloaded
    assert status.to_dict() == {
        "is_downloaded": False,
        "file_path": None,
        "file_size": None,
        "last_modified": None,
    }
    assert catalog.downloaded_ids() == ["llama", "single"]


def test_resolve_path(catalog: ModelCatalog, tmp_path: Path) -> None:
    assert catalog.resolve_path("llama") == str(tmp_path / "llama")
    with pytest.raises(ModelNotDownloadedError, match="Model 'absent' is not downloaded"):
        catalog.resolve_path("absent")
    with pytest.raises(ModelNotFoundError, match="Model 'ghost' not found in catalog"):
        catalog.resolve_path("ghost")


def test_list_models_includes_status(catalog: ModelCatalog) -> None:
    entries = {entry["id"]: entry for entry in catalog.list_models()}
    assert set(entries) == {"llama", "single", "absent"}
    assert entries["llama"]["tags"] == ["chat"]
    assert entries["llama"]["status"]["is_downloaded"] is True
    assert entries["absent"]["status"]["is_downloaded"] is False
    assert "llama" in catalog
    assert len(catalog) == 3


def test_duplicate_ids_are_rejected(tmp_path: Path) -> None:
    model = CatalogModel(id="a", name="A", path="a")
    with pytest.raises(ValueError, match="Duplicate"):
        ModelCatalog([model, model], tmp_path)
