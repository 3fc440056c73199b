"""In-process llama.cpp runtime with an incremental prompt cache.

The runtime keeps one loaded model and its inference context for as long as
the requested model path does not change. Between calls it remembers every
token the context has consumed: the rendered prompt followed by each token it
generated. A new prompt that starts with that exact sequence only has its
remaining tail evaluated. A prompt that diverges anywhere inside the
remembered sequence resets the context completely, because the KV cache is
addressed by position and cannot be cut in the middle.

Reuse only saves prompt evaluation time. Sampling is reseeded per step from
the configured seed, so a warm call and a cold call over the same prompt
produce the same text.
"""

from __future__ import annotations

import codecs
import functools
import importlib.util
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence

from ...config import normalize_profile
from ...prompts import render_prompt
from ...utils import elapsed_ms
from ..types import (
    GenerationFailure,
    GenerationRequest,
    GenerationResult,
    LocalChatError,
    RuntimeUnavailableError,
)
from .base import StreamCallback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SamplingParams:
    top_k: int
    top_p: float
    temperature: float


SAMPLING_BY_PROFILE = {
    "fast": SamplingParams(top_k=20, top_p=0.95, temperature=0.6),
    "balanced": SamplingParams(top_k=40, top_p=0.95, temperature=0.7),
    "quality": SamplingParams(top_k=60, top_p=0.98, temperature=0.8),
}


@dataclass(frozen=True)
class LlamaRuntimeOptions:
    n_threads: int = 0
    n_threads_batch: int = 0
    n_batch: int = 512
    offload_kqv: bool = False
    profile: str = "balanced"
    seed: int = 1234


class InferenceEngine(Protocol):
    """Token-level operations on one loaded model and its context."""

    def tokenize(self, text: str) -> List[int]:
        ...

    def reset(self) -> None:
        ...

    def evaluate(self, tokens: Sequence[int]) -> None:
        ...

    def sample(self, params: SamplingParams, seed: int) -> int:
        ...

    def is_end_of_generation(self, token: int) -> bool:
        ...

    def token_bytes(self, token: int) -> bytes:
        ...


EngineFactory = Callable[[str, LlamaRuntimeOptions], InferenceEngine]


def llama_backend_installed() -> bool:
    return importlib.util.find_spec("llama_cpp") is not None


@functools.lru_cache(maxsize=None)
def load_llama_backend():
    """Imports llama_cpp and initialises the native backend once per process."""
    import llama_cpp

    llama_cpp.llama_backend_init()
    return llama_cpp


class LlamaCppEngine:
    """InferenceEngine backed by llama-cpp-python's low-level Llama API."""

    def __init__(self, model_path: str, options: LlamaRuntimeOptions) -> None:
        llama_cpp = load_llama_backend()
        n_batch = options.n_batch if options.n_batch > 0 else 512
        kwargs = {
            "model_path": model_path,
            "n_ctx": 0,
            "n_batch": n_batch,
            "n_ubatch": n_batch,
            "n_gpu_layers": 0,
            "use_mmap": True,
            "use_mlock": False,
            "offload_kqv": options.offload_kqv,
            "seed": options.seed,
            "verbose": False,
        }
        if options.n_threads > 0:
            kwargs["n_threads"] = options.n_threads
        if options.n_threads_batch > 0:
            kwargs["n_threads_batch"] = options.n_threads_batch
        try:
            self._llm = llama_cpp.Llama(**kwargs)
        except (ValueError, RuntimeError, OSError) as exc:
            raise GenerationFailure(f"llama-inproc failed to load model file: {model_path}", diagnostic=str(exc)) from exc

    def tokenize(self, text: str) -> List[int]:
        return list(self._llm.tokenize(text.encode("utf-8"), add_bos=True, special=True))

    def reset(self) -> None:
        self._llm.reset()

    def evaluate(self, tokens: Sequence[int]) -> None:
        self._llm.eval(list(tokens))

    def sample(self, params: SamplingParams, seed: int) -> int:
        self._llm.set_seed(seed)
        return int(
            self._llm.sample(
                top_k=params.top_k,
                top_p=params.top_p,
                temp=params.temperature,
            )
        )

    def is_end_of_generation(self, token: int) -> bool:
        return token < 0 or token == self._llm.token_eos()

    def token_bytes(self, token: int) -> bytes:
        return self._llm.detokenize([token])


def common_prefix_length(a: Sequence[int], b: Sequence[int]) -> int:
    limit = min(len(a), len(b))
    index = 0
    while index < limit and a[index] == b[index]:
        index += 1
    return index


class LlamaInprocRuntime:
    name = "llama-inproc"

    def __init__(
        self,
        options: LlamaRuntimeOptions | None = None,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        self.options = options or LlamaRuntimeOptions()
        profile = normalize_profile(self.options.profile) or "balanced"
        self.sampling = SAMPLING_BY_PROFILE[profile]
        self._unavailable_reason = ""
        if engine_factory is None:
            self._engine_factory: EngineFactory = LlamaCppEngine
            self._available = self._check_backend()
        else:
            self._engine_factory = engine_factory
            self._available = True

        self._lock = threading.Lock()
        self._engine: Optional[InferenceEngine] = None
        self._loaded_model_path = ""
        self._cached_tokens: List[int] = []

    def _check_backend(self) -> bool:
        if not llama_backend_installed():
            self._unavailable_reason = "llama-cpp-python is not installed"
            return False
        try:
            load_llama_backend()
        except (ImportError, OSError, RuntimeError) as exc:
            logger.warning("Skipping runtime llama-inproc: native backend failed to load: %s", exc)
            self._unavailable_reason = f"native backend failed to load: {exc}"
            return False
        return True

    def is_available(self) -> bool:
        return self._available

    @property
    def cached_tokens(self) -> List[int]:
        return list(self._cached_tokens)

    def generate(self, request: GenerationRequest, on_token: StreamCallback) -> GenerationResult:
        if not self._available:
            raise RuntimeUnavailableError(f"llama-inproc runtime unavailable: {self._unavailable_reason}")
        if not request.model_path:
            raise GenerationFailure("llama-inproc requires a non-empty model_path")

        with self._lock:
            try:
                return self._generate_locked(request, on_token)
            except LocalChatError:
                self._drop_cache()
                raise
            except Exception as exc:
                self._drop_cache()
                raise GenerationFailure(f"llama-inproc generation failed: {exc}", diagnostic=repr(exc)) from exc

    def _ensure_engine(self, model_path: str) -> InferenceEngine:
        if self._engine is not None and self._loaded_model_path == model_path:
            return self._engine

        self._engine = None
        self._loaded_model_path = ""
        self._cached_tokens = []
        logger.info("Loading model into llama-inproc: %s", model_path)
        self._engine = self._engine_factory(model_path, self.options)
        self._loaded_model_path = model_path
        return self._engine

    def _drop_cache(self) -> None:
        self._cached_tokens = []
        if self._engine is None:
            return
        try:
            self._engine.reset()
        except Exception as exc:
            logger.warning("Discarding llama-inproc engine after failed reset: %s", exc)
            self._engine = None
            self._loaded_model_path = ""

    def _generate_locked(self, request: GenerationRequest, on_token: StreamCallback) -> GenerationResult:
        engine = self._ensure_engine(request.model_path)
        prompt_tokens = list(engine.tokenize(render_prompt(request.messages)))
        if not prompt_tokens:
            raise GenerationFailure("llama-inproc tokenization produced zero tokens")

        start = time.perf_counter()
        prefix = common_prefix_length(self._cached_tokens, prompt_tokens)
        if prefix < len(self._cached_tokens):
            logger.debug(
                "Prompt diverges at token %d of %d cached; resetting context",
                prefix,
                len(self._cached_tokens),
            )
            engine.reset()
            self._cached_tokens = []

        reused = len(self._cached_tokens)
        if len(prompt_tokens) > reused:
            engine.evaluate(prompt_tokens[reused:])
            self._cached_tokens = list(prompt_tokens)

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pieces: List[str] = []
        generated = 0
        first_token_ms = 0.0

        def emit(piece: str) -> None:
            nonlocal first_token_ms
            if not piece:
                return
            if not pieces:
                first_token_ms = elapsed_ms(start)
            pieces.append(piece)
            on_token(piece)

        for step in range(request.max_tokens):
            token = engine.sample(self.sampling, self.options.seed + step)
            if engine.is_end_of_generation(token):
                break
            generated += 1
            emit(decoder.decode(engine.token_bytes(token)))
            engine.evaluate([token])
            self._cached_tokens.append(token)
        emit(decoder.decode(b"", final=True))

        total_ms = elapsed_ms(start)
        return GenerationResult(
            text="".join(pieces),
            first_token_ms=first_token_ms,
            total_ms=total_ms,
            generated_tokens=generated,
            tokens_per_second=(generated * 1000.0 / total_ms) if total_ms > 0 else 0.0,
            meta={
                "runtime": self.name,
                "prompt_tokens": len(prompt_tokens),
                "reused_tokens": reused,
            },
        )
