"""Model catalog (tab-separated file) and the in-memory model directory."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from .llm.types import ConfigurationError, ModelDescriptor, ModelStateError

logger = logging.getLogger(__name__)

CATALOG_COLUMNS = ("id", "name", "source_repo", "source_file", "local_path")


class ModelRegistry:
    def __init__(self, models: List[ModelDescriptor], active_index: int = 0) -> None:
        self._models = list(models)
        self._active_index = active_index

    def models(self) -> List[ModelDescriptor]:
        return list(self._models)

    def active_model(self) -> Optional[ModelDescriptor]:
        if 0 <= self._active_index < len(self._models):
            return self._models[self._active_index]
        return None

    def find(self, model_id: str) -> Optional[ModelDescriptor]:
        for model in self._models:
            if model.id == model_id:
                return model
        return None

    def set_active(self, model_id: str) -> ModelDescriptor:
        for index, model in enumerate(self._models):
            if model.id == model_id:
                self._active_index = index
                return model
        raise ModelStateError(f"unknown model id: {model_id}")

    def add(self, model: ModelDescriptor) -> None:
        if not model.id:
            raise ModelStateError("model id is required")
        if self.find(model.id) is not None:
            raise ModelStateError(f"model id already exists: {model.id}")
        self._models.append(model)


def _parse_row(line: str) -> ModelDescriptor | None:
    cols = [col.strip() for col in line.split("\t")]
    if len(cols) < len(CATALOG_COLUMNS) or not cols[0]:
        return None
    return ModelDescriptor(*cols[: len(CATALOG_COLUMNS)])


def load_model_catalog(models_path: str, preferred_model_id: str = "") -> ModelRegistry:
    """Parses the catalog and activates the preferred id, else the first row."""
    path = Path(models_path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"failed to open models registry: {models_path}") from exc

    models: List[ModelDescriptor] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        model = _parse_row(line)
        if model is None:
            logger.debug("Skipping malformed catalog row: %r", line)
            continue
        models.append(model)

    if not models:
        raise ConfigurationError(f"models registry is empty: {models_path}")

    active_index = 0
    if preferred_model_id:
        for index, model in enumerate(models):
            if model.id == preferred_model_id:
                active_index = index
                break
        else:
            logger.info("Preferred model %s not in catalog; using %s", preferred_model_id, models[0].id)
    return ModelRegistry(models, active_index)


def format_catalog_row(model: ModelDescriptor) -> str:
    return "\t".join(
        (model.id, model.name, model.source_repo, model.source_file, model.local_path)
    )


def append_catalog_entry(models_path: str, model: ModelDescriptor) -> None:
    """Appends one row to the catalog file; raises OSError if it cannot."""
    path = Path(models_path)
    prefix = ""
    if path.exists() and path.stat().st_size > 0:
        with path.open("rb") as f:
            f.seek(-1, 2)
            if f.read(1) != b"\n":
                prefix = "\n"
    with path.open("a", encoding="utf-8") as f:
        f.write(prefix + format_catalog_row(model) + "\n")
