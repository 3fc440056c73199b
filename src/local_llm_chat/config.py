"""Configuration loading and defaults."""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict

import yaml

from .prompts import DEFAULT_SYSTEM_PROMPT

# profile -> (max_tokens, context_window_tokens)
PROFILES: Dict[str, tuple[int, int]] = {
    "fast": (128, 1024),
    "balanced": (256, 2048),
    "quality": (512, 4096),
}

DEFAULT_SETTINGS: Dict[str, Any] = {
    "default_model_id": "llama31_8b_q4km",
    "system_prompt": DEFAULT_SYSTEM_PROMPT,
    "runtime": {
        "preference": "llama-inproc",
        "command_template": "",
    },
    "generation": {
        "profile": "balanced",
        "max_tokens": 256,
        "context_window_tokens": 2048,
    },
    "llama": {
        "n_threads": 0,
        "n_threads_batch": 0,
        "n_batch": 512,
        "offload_kqv": False,
        "seed": 1234,
    },
    "paths": {
        "models_file": "models.tsv",
    },
    "database": {
        "path": ".local_llm_chat/chat.db",
    },
    "downloads": {
        "base_url": "https://huggingface.co",
        "timeout_seconds": 60,
    },
    "logging": {
        "level": "WARNING",
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(settings_path: str = "config/settings.yaml") -> Dict[str, Any]:
    """Loads settings.yaml and merges it onto defaults."""
    merged = deepcopy(DEFAULT_SETTINGS)
    config_path = Path(settings_path)
    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as f:
            user_cfg = yaml.safe_load(f) or {}
        merged = _deep_merge(merged, user_cfg)
    return merged


def normalize_profile(name: str) -> str | None:
    clean = (name or "").strip().lower()
    if clean in PROFILES:
        return clean
    return None


def parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)
