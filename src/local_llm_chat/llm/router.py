"""Runtime construction and preference-based selection with fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ..config import parse_bool
from .runtimes.base import ModelRuntime
from .runtimes.llama_inproc_runtime import LlamaInprocRuntime, LlamaRuntimeOptions
from .runtimes.local_binary_runtime import LocalBinaryRuntime
from .runtimes.mock_runtime import MockRuntime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuntimeSelection:
    runtime: Optional[ModelRuntime]
    note: str = ""

    @property
    def name(self) -> str:
        return self.runtime.name if self.runtime is not None else "none"


def _is_available(runtime: ModelRuntime) -> bool:
    try:
        return bool(runtime.is_available())
    except Exception as exc:
        logger.warning("Runtime %s failed its availability check: %s", getattr(runtime, "name", "?"), exc)
        return False


def select_runtime(runtimes: Sequence[ModelRuntime], preferred: str) -> RuntimeSelection:
    """Picks the preferred runtime if usable, else the first usable one."""
    if not runtimes:
        return RuntimeSelection(None, "no runtimes configured")

    available = [runtime for runtime in runtimes if _is_available(runtime)]
    for runtime in available:
        if runtime.name == preferred:
            return RuntimeSelection(runtime, "")

    if available:
        fallback = available[0]
        note = f"runtime '{preferred}' unavailable; using '{fallback.name}'"
        logger.info(note)
        return RuntimeSelection(fallback, note)

    return RuntimeSelection(None, "no runtime is available")


def llama_options_from_config(config: Dict[str, Any]) -> LlamaRuntimeOptions:
    llama_cfg = config.get("llama", {})
    return LlamaRuntimeOptions(
        n_threads=int(llama_cfg.get("n_threads", 0)),
        n_threads_batch=int(llama_cfg.get("n_threads_batch", 0)),
        n_batch=int(llama_cfg.get("n_batch", 512)),
        offload_kqv=parse_bool(llama_cfg.get("offload_kqv", False)),
        profile=str(config.get("generation", {}).get("profile", "balanced")),
        seed=int(llama_cfg.get("seed", 1234)),
    )


def default_runtimes(config: Dict[str, Any]) -> List[ModelRuntime]:
    """Builds runtimes in fallback order: native, external command, mock."""
    runtime_cfg = config.get("runtime", {})
    runtimes: List[ModelRuntime] = []
    for build in (
        lambda: LlamaInprocRuntime(llama_options_from_config(config)),
        lambda: LocalBinaryRuntime(str(runtime_cfg.get("command_template", "") or "")),
        MockRuntime,
    ):
        try:
            runtimes.append(build())
        except Exception as exc:
            logger.warning("Skipping runtime that failed to construct: %s", exc)
    return runtimes
