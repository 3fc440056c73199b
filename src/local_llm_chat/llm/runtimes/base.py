"""Model runtime interface."""

from __future__ import annotations

from typing import Callable, Protocol

from ..types import GenerationRequest, GenerationResult

StreamCallback = Callable[[str], None]


class ModelRuntime(Protocol):
    name: str

    def is_available(self) -> bool:
        ...

    def generate(self, request: GenerationRequest, on_token: StreamCallback) -> GenerationResult:
        ...
