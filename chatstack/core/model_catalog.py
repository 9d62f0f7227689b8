"""Catalog of known models and their local download status.

The catalog only resolves ids to validated local paths; fetching model
files is handled outside this package.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from .errors import ModelNotDownloadedError, ModelNotFoundError


@dataclass(slots=True)
class CatalogModel:
    """Static description of a model the user can pick."""

    id: str
    name: str
    path: str
    description: str = ""
    size: str | None = None
    quantization: str | None = None
    tags: list[str] = field(default_factory=list)
    context_length: int | None = None
    source: str | None = None


@dataclass(frozen=True, slots=True)
class ModelFileStatus:
    is_downloaded: bool
    file_path: str | None = None
    file_size: int | None = None
    last_modified: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_downloaded": self.is_downloaded,
            "file_path": self.file_path,
            "file_size": self.file_size,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
        }


def _path_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    return sum(child.stat().st_size for child in path.rglob("*") if child.is_file())


class ModelCatalog:
    """Lookup of catalog models against a local models directory."""

    def __init__(self, models: list[CatalogModel], models_dir: Path | str) -> None:
        self.models_dir = Path(models_dir).expanduser()
        self._models: dict[str, CatalogModel] = {}
        for model in models:
            if model.id in self._models:
                raise ValueError(f"Duplicate catalog model id '{model.id}'")
            self._models[model.id] = model

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __len__(self) -> int:
        return len(self._models)

    def get(self, model_id: str) -> CatalogModel:
        """
        Return the catalog entry for ``model_id``.

        Raises:
            ModelNotFoundError: If the id is not in the catalog.
        """
        try:
            return self._models[model_id]
        except KeyError:
            raise ModelNotFoundError(f"Model '{model_id}' not found in catalog") from None

    def model_path(self, model_id: str) -> Path:
        configured = Path(self.get(model_id).path).expanduser()
        return configured if configured.is_absolute() else self.models_dir / configured

    def get_status(self, model_id: str) -> ModelFileStatus:
        path = self.model_path(model_id)
        if not path.exists():
            return ModelFileStatus(is_downloaded=False)
        try:
            stats = path.stat()
            size = _path_size(path)
        except OSError as e:
            logger.warning(f"Unable to stat model '{model_id}' at {path}. {type(e).__name__}: {e}")
            return ModelFileStatus(is_downloaded=False)
        return ModelFileStatus(
            is_downloaded=True,
            file_path=str(path),
            file_size=size,
            last_modified=datetime.fromtimestamp(stats.st_mtime),
        )

    def downloaded_ids(self) -> list[str]:
        return [model_id for model_id in self._models if self.get_status(model_id).is_downloaded]

    def resolve_path(self, model_id: str) -> str:
        """
        Return the local path of a downloaded model.

        Raises:
            ModelNotFoundError: If the id is not in the catalog.
            ModelNotDownloadedError: If the model has no local files.
        """
        status = self.get_status(model_id)
        if not status.is_downloaded or status.file_path is None:
            raise ModelNotDownloadedError(
                f"Model '{model_id}' is not downloaded. Please download it first.",
            )
        return status.file_path

    def list_models(self) -> list[dict[str, Any]]:
        """List catalog entries together with their download status."""
        output: list[dict[str, Any]] = []
        for model_id, model in self._models.items():
            entry = asdict(model)
            entry["status"] = self.get_status(model_id).to_dict()
            output.append(entry)
        return output
