"""Deterministic echo runtime for tests and offline development."""

from __future__ import annotations

import time

from ...utils import elapsed_ms
from ..types import GenerationRequest, GenerationResult, Role
from .base import StreamCallback


class MockRuntime:
    name = "mock"

    def is_available(self) -> bool:
        return True

    def generate(self, request: GenerationRequest, on_token: StreamCallback) -> GenerationResult:
        start = time.perf_counter()
        last_user = ""
        for message in reversed(request.messages):
            if message.role == Role.USER:
                last_user = message.content
                break

        text = (
            f"[MOCK] received: {last_user} | "
            "This is a local-first scaffold. Connect a real runtime via settings."
        )
        first_token_ms = 0.0
        for index, char in enumerate(text):
            if index == 0:
                first_token_ms = elapsed_ms(start)
            on_token(char)

        total_ms = elapsed_ms(start)
        return GenerationResult(
            text=text,
            first_token_ms=first_token_ms,
            total_ms=total_ms,
            generated_tokens=len(text),
            tokens_per_second=(len(text) * 1000.0 / total_ms) if total_ms > 0 else 0.0,
            meta={"runtime": self.name},
        )
