"""Turns a conversation into one budgeted generation call."""

from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .app_state import ActiveModelState
from .config import PROFILES, normalize_profile
from .context_window import prompt_token_budget, prune_context_window
from .llm.router import RuntimeSelection, default_runtimes, select_runtime
from .llm.runtimes.base import ModelRuntime, StreamCallback
from .llm.types import (
    ConfigurationError,
    GenerationRequest,
    GenerationResult,
    Message,
    ModelDescriptor,
    ModelFileMissing,
    ModelFileUnreadable,
    ModelStateError,
    NoActiveModel,
    NoRuntimeAvailable,
)
from .model_registry import CATALOG_COLUMNS, ModelRegistry, append_catalog_entry, load_model_catalog

logger = logging.getLogger(__name__)

MIN_MAX_TOKENS = 1
MIN_CONTEXT_WINDOW_TOKENS = 64


@dataclass(frozen=True)
class GenerationSettings:
    profile: str
    max_tokens: int
    context_window_tokens: int

    @property
    def prompt_token_budget(self) -> int:
        return prompt_token_budget(self.context_window_tokens, self.max_tokens)


def settings_from_config(config: Dict[str, Any]) -> GenerationSettings:
    gen_cfg = config.get("generation", {})
    return GenerationSettings(
        profile=normalize_profile(str(gen_cfg.get("profile", "balanced"))) or "balanced",
        max_tokens=max(MIN_MAX_TOKENS, int(gen_cfg.get("max_tokens", 256))),
        context_window_tokens=max(MIN_CONTEXT_WINDOW_TOKENS, int(gen_cfg.get("context_window_tokens", 2048))),
    )


def _missing_model_fields(model: ModelDescriptor) -> List[str]:
    return [
        field_name
        for field_name in ("id", "source_repo", "source_file", "local_path")
        if not str(getattr(model, field_name) or "").strip()
    ]


def _normalized_model(model: ModelDescriptor) -> ModelDescriptor:
    """Strips every column the same way the catalog reader does."""
    return ModelDescriptor(*(str(getattr(model, name) or "").strip() for name in CATALOG_COLUMNS))


def check_model_file(model: ModelDescriptor) -> None:
    path = Path(model.local_path)
    if not path.exists():
        raise ModelFileMissing(
            f"active model path is missing: {model.local_path} "
            f"(run /model validate or /model download {model.id})"
        )
    if not path.is_file() or not os.access(path, os.R_OK):
        raise ModelFileUnreadable(f"active model path is not readable: {model.local_path}")
    try:
        with path.open("rb") as f:
            f.read(1)
    except OSError as exc:
        raise ModelFileUnreadable(f"active model path is not readable: {model.local_path}") from exc


class Orchestrator:
    def __init__(
        self,
        config: Dict[str, Any],
        registry: ModelRegistry,
        app_state: ActiveModelState | None,
        runtimes: Sequence[ModelRuntime],
    ) -> None:
        self.config = config
        self.registry = registry
        self.app_state = app_state
        self.runtimes = list(runtimes)
        self.models_file_path = str(config.get("paths", {}).get("models_file", "models.tsv"))
        self._settings = settings_from_config(config)

        preferred = str(config.get("runtime", {}).get("preference", ""))
        self.selection: RuntimeSelection = select_runtime(self.runtimes, preferred)
        logger.info("Runtime selected: %s", self.selection.name)

    @property
    def active_runtime_name(self) -> str:
        return self.selection.name

    @property
    def runtime_selection_note(self) -> str:
        return self.selection.note

    @property
    def settings(self) -> GenerationSettings:
        return self._settings

    @property
    def profile(self) -> str:
        return self._settings.profile

    @property
    def max_tokens(self) -> int:
        return self._settings.max_tokens

    @property
    def context_window_tokens(self) -> int:
        return self._settings.context_window_tokens

    def models(self) -> List[ModelDescriptor]:
        return self.registry.models()

    def active_model(self) -> Optional[ModelDescriptor]:
        return self.registry.active_model()

    def find_model(self, model_id: str) -> Optional[ModelDescriptor]:
        return self.registry.find(model_id)

    def set_profile(self, name: str) -> GenerationSettings:
        profile = normalize_profile(name)
        if profile is None:
            raise ConfigurationError(f"unknown profile: {name} (use fast|balanced|quality)")
        max_tokens, context_window_tokens = PROFILES[profile]
        self._settings = GenerationSettings(profile, max_tokens, context_window_tokens)
        return self._settings

    def set_max_tokens(self, value: int) -> None:
        self._settings = replace(self._settings, max_tokens=max(MIN_MAX_TOKENS, int(value)))

    def set_context_window_tokens(self, value: int) -> None:
        self._settings = replace(
            self._settings,
            context_window_tokens=max(MIN_CONTEXT_WINDOW_TOKENS, int(value)),
        )

    def set_active_model(self, model_id: str) -> ModelDescriptor:
        model = self.registry.set_active(model_id)
        if self.app_state is not None:
            self.app_state.save(model.id)
        return model

    def add_model(self, model: ModelDescriptor) -> ModelDescriptor:
        model = _normalized_model(model)
        missing = _missing_model_fields(model)
        if missing:
            raise ModelStateError(
                "model requires non-empty id, source_repo, source_file, and local_path "
                f"(missing: {', '.join(missing)})"
            )
        bad = [name for name in CATALOG_COLUMNS if any(ch in getattr(model, name) for ch in "\t\r\n")]
        if bad:
            raise ModelStateError(f"model fields must not contain tabs or newlines: {', '.join(bad)}")
        if self.registry.find(model.id) is not None:
            raise ModelStateError(f"model id already exists: {model.id}")

        entry = replace(model, name=model.name or model.id)
        try:
            append_catalog_entry(self.models_file_path, entry)
        except OSError as exc:
            raise ModelStateError(f"failed to append models file: {self.models_file_path}") from exc
        self.registry.add(entry)
        logger.info("Added model %s to %s", entry.id, self.models_file_path)
        return entry

    def validate_active_model(self) -> tuple[bool, str]:
        model = self.registry.active_model()
        if model is None:
            return False, "no active model configured"
        if _missing_model_fields(model):
            return False, f"active model metadata is incomplete for id: {model.id}"
        if not Path(model.local_path).exists():
            return False, f"model file not found at {model.local_path} (run /model download {model.id})"
        try:
            check_model_file(model)
        except ModelFileUnreadable:
            return False, f"model file exists but is not readable: {model.local_path}"
        return True, f"model valid: {model.id} @ {model.local_path}"

    def respond(self, history: Sequence[Message], on_token: StreamCallback) -> GenerationResult:
        runtime = self.selection.runtime
        if runtime is None:
            raise NoRuntimeAvailable(f"no available runtime: {self.selection.note}")

        model = self.registry.active_model()
        if model is None:
            raise NoActiveModel("no active model configured")
        check_model_file(model)

        settings = self._settings
        pruned = prune_context_window(history, settings.prompt_token_budget)
        request = GenerationRequest(
            messages=list(pruned.messages),
            model_id=model.id,
            model_path=model.local_path,
            max_tokens=settings.max_tokens,
        )

        result = runtime.generate(request, on_token)
        if pruned.truncated:
            result.context_truncated = True
            result.warning = (
                f"context truncated to fit token budget (kept approx {pruned.tokens_kept} tokens)"
            )
        return result


def build_orchestrator(config: Dict[str, Any], conn: sqlite3.Connection) -> Orchestrator:
    app_state = ActiveModelState(conn)
    preferred_model_id = app_state.load() or str(config.get("default_model_id", ""))
    registry = load_model_catalog(
        str(config.get("paths", {}).get("models_file", "models.tsv")),
        preferred_model_id,
    )
    return Orchestrator(config, registry, app_state, default_runtimes(config))
