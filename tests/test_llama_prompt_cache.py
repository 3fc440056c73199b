import sys
import threading
import time

import pytest

from local_llm_chat.llm.router import select_runtime
from local_llm_chat.llm.runtimes import llama_inproc_runtime
from local_llm_chat.llm.runtimes.llama_inproc_runtime import (
    LlamaInprocRuntime,
    LlamaRuntimeOptions,
    common_prefix_length,
)
from local_llm_chat.llm.runtimes.mock_runtime import MockRuntime
from local_llm_chat.llm.types import (
    GenerationFailure,
    GenerationRequest,
    Message,
    Role,
    RuntimeUnavailableError,
)

END = 0


class FakeEngine:
    """Character-level engine whose next token depends on the whole context."""

    instances = []

    def __init__(self, model_path, options):
        self.model_path = model_path
        self.context = []
        self.evaluated = []
        self.resets = 0
        self.fail_on_evaluate = False
        FakeEngine.instances.append(self)

    def tokenize(self, text):
        return [ord(ch) for ch in text]

    def reset(self):
        self.resets += 1
        self.context = []

    def evaluate(self, tokens):
        if self.fail_on_evaluate:
            raise RuntimeError("llama_decode returned 1")
        self.evaluated.append(list(tokens))
        self.context.extend(tokens)

    def sample(self, params, seed):
        assert self.context, "sampling without evaluated context"
        value = (sum((i + 1) * t for i, t in enumerate(self.context)) + seed * 7) % 27
        if value == 0:
            return END
        return ord("a") + value - 1

    def is_end_of_generation(self, token):
        return token == END

    def token_bytes(self, token):
        return chr(token).encode("utf-8")


@pytest.fixture(autouse=True)
def _reset_instances():
    FakeEngine.instances = []


def _request(messages, path="/models/a.gguf", max_tokens=12):
    return GenerationRequest(messages=messages, model_id="a", model_path=path, max_tokens=max_tokens)


def _first_turn():
    return [Message(Role.SYSTEM, "be terse"), Message(Role.USER, "hello")]


def test_common_prefix_length():
    assert common_prefix_length([1, 2, 3], [1, 2, 4]) == 2
    assert common_prefix_length([], [1]) == 0
    assert common_prefix_length([1, 2], [1, 2, 3]) == 2


def test_warm_call_matches_cold_call_output():
    warm = LlamaInprocRuntime(LlamaRuntimeOptions(), engine_factory=FakeEngine)
    first = warm.generate(_request(_first_turn()), lambda piece: None)
    second_turn = _first_turn() + [
        Message(Role.ASSISTANT, first.text),
        Message(Role.USER, "and again"),
    ]
    warm_result = warm.generate(_request(second_turn), lambda piece: None)

    cold = LlamaInprocRuntime(LlamaRuntimeOptions(), engine_factory=FakeEngine)
    cold_result = cold.generate(_request(second_turn), lambda piece: None)

    assert warm_result.text == cold_result.text
    assert warm_result.meta["reused_tokens"] > 0
    assert cold_result.meta["reused_tokens"] == 0


def test_shared_prefix_only_feeds_new_tokens():
    runtime = LlamaInprocRuntime(LlamaRuntimeOptions(), engine_factory=FakeEngine)
    first = runtime.generate(_request(_first_turn()), lambda piece: None)
    cached = runtime.cached_tokens
    engine = FakeEngine.instances[0]
    calls_before = len(engine.evaluated)

    second_turn = _first_turn() + [Message(Role.ASSISTANT, first.text), Message(Role.USER, "more")]
    result = runtime.generate(_request(second_turn), lambda piece: None)

    assert engine.resets == 0
    assert result.meta["reused_tokens"] == len(cached)
    assert engine.evaluated[calls_before] == engine.tokenize(
        "\nuser: more\nassistant: "
    )
    assert len(engine.evaluated[calls_before]) == result.meta["prompt_tokens"] - len(cached)


def test_diverging_prompt_resets_context():
    runtime = LlamaInprocRuntime(LlamaRuntimeOptions(), engine_factory=FakeEngine)
    runtime.generate(_request(_first_turn()), lambda piece: None)
    engine = FakeEngine.instances[0]

    other = [Message(Role.SYSTEM, "be verbose"), Message(Role.USER, "hello")]
    result = runtime.generate(_request(other), lambda piece: None)

    assert engine.resets == 1
    assert result.meta["reused_tokens"] == 0
    cold = LlamaInprocRuntime(LlamaRuntimeOptions(), engine_factory=FakeEngine)
    assert cold.generate(_request(other), lambda piece: None).text == result.text


def test_model_path_change_reloads_and_clears_cache():
    runtime = LlamaInprocRuntime(LlamaRuntimeOptions(), engine_factory=FakeEngine)
    runtime.generate(_request(_first_turn(), path="/models/a.gguf"), lambda piece: None)
    runtime.generate(_request(_first_turn(), path="/models/a.gguf"), lambda piece: None)
    assert len(FakeEngine.instances) == 1

    result = runtime.generate(_request(_first_turn(), path="/models/b.gguf"), lambda piece: None)
    assert len(FakeEngine.instances) == 2
    assert FakeEngine.instances[1].model_path == "/models/b.gguf"
    assert result.meta["reused_tokens"] == 0


def test_streams_every_fragment_in_order():
    runtime = LlamaInprocRuntime(LlamaRuntimeOptions(), engine_factory=FakeEngine)
    pieces = []

    result = runtime.generate(_request(_first_turn(), max_tokens=8), pieces.append)

    assert "".join(pieces) == result.text
    assert all(pieces)
    assert result.generated_tokens <= 8
    assert len(result.text) == result.generated_tokens


def test_failed_decode_drops_cache_and_next_call_recovers():
    runtime = LlamaInprocRuntime(LlamaRuntimeOptions(), engine_factory=FakeEngine)
    runtime.generate(_request(_first_turn()), lambda piece: None)
    engine = FakeEngine.instances[0]

    engine.fail_on_evaluate = True
    with pytest.raises(GenerationFailure, match="llama_decode returned 1"):
        runtime.generate(_request(_first_turn() + [Message(Role.USER, "next")]), lambda piece: None)
    assert runtime.cached_tokens == []

    engine.fail_on_evaluate = False
    result = runtime.generate(_request(_first_turn()), lambda piece: None)
    assert result.meta["reused_tokens"] == 0


def test_unavailable_without_llama_cpp(monkeypatch):
    monkeypatch.setattr(llama_inproc_runtime, "llama_backend_installed", lambda: False)
    runtime = LlamaInprocRuntime(LlamaRuntimeOptions())

    assert runtime.is_available() is False
    with pytest.raises(RuntimeUnavailableError):
        runtime.generate(_request(_first_turn()), lambda piece: None)


def test_empty_model_path_is_rejected():
    runtime = LlamaInprocRuntime(LlamaRuntimeOptions(), engine_factory=FakeEngine)
    with pytest.raises(GenerationFailure, match="non-empty model_path"):
        runtime.generate(_request(_first_turn(), path=""), lambda piece: None)


class GatedEngine(FakeEngine):
    """Records which thread touches the engine and parks the first evaluate call."""

    calls = []
    entered = None
    release = None

    def _record(self):
        GatedEngine.calls.append(threading.current_thread().name)

    def tokenize(self, text):
        self._record()
        return super().tokenize(text)

    def evaluate(self, tokens):
        self._record()
        if not GatedEngine.entered.is_set():
            GatedEngine.entered.set()
            assert GatedEngine.release.wait(timeout=5)
        super().evaluate(tokens)

    def sample(self, params, seed):
        self._record()
        return super().sample(params, seed)


def test_concurrent_generate_calls_are_serialised():
    GatedEngine.calls = []
    GatedEngine.entered = threading.Event()
    GatedEngine.release = threading.Event()
    runtime = LlamaInprocRuntime(LlamaRuntimeOptions(), engine_factory=GatedEngine)
    second_started = threading.Event()
    errors = []

    def first():
        try:
            runtime.generate(_request(_first_turn(), max_tokens=4), lambda piece: None)
        except Exception as exc:
            errors.append(exc)

    def second():
        second_started.set()
        try:
            runtime.generate(
                _request(_first_turn() + [Message(Role.USER, "next")], max_tokens=4),
                lambda piece: None,
            )
        except Exception as exc:
            errors.append(exc)

    a = threading.Thread(target=first, name="first")
    b = threading.Thread(target=second, name="second")
    a.start()
    assert GatedEngine.entered.wait(timeout=5)
    b.start()
    assert second_started.wait(timeout=5)
    time.sleep(0.1)

    assert "second" not in GatedEngine.calls

    GatedEngine.release.set()
    a.join(timeout=5)
    b.join(timeout=5)

    assert errors == []
    assert "second" in GatedEngine.calls
    first_done = max(i for i, name in enumerate(GatedEngine.calls) if name == "first")
    second_begins = GatedEngine.calls.index("second")
    assert first_done < second_begins


def test_unloadable_native_library_makes_runtime_unavailable(tmp_path, monkeypatch):
    package = tmp_path / "llama_cpp"
    package.mkdir()
    (package / "__init__.py").write_text(
        "raise OSError('libllama.so: cannot open shared object file')\n",
        encoding="utf-8",
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    monkeypatch.delitem(sys.modules, "llama_cpp", raising=False)
    llama_inproc_runtime.load_llama_backend.cache_clear()

    try:
        runtime = LlamaInprocRuntime(LlamaRuntimeOptions())
        selection = select_runtime([runtime, MockRuntime()], "llama-inproc")
    finally:
        llama_inproc_runtime.load_llama_backend.cache_clear()

    assert runtime.is_available() is False
    assert selection.name == "mock"
    assert "llama-inproc" in selection.note
    with pytest.raises(RuntimeUnavailableError, match="libllama.so"):
        runtime.generate(_request(_first_turn()), lambda piece: None)
