"""Prompt builders."""

from __future__ import annotations

from typing import Iterable

from .llm.types import Message, Role

DEFAULT_SYSTEM_PROMPT = "You are a local-first terminal AI assistant."


def render_prompt(messages: Iterable[Message]) -> str:
    """Renders role-prefixed turns followed by an open assistant turn."""
    lines = [f"{message.role.value}: {message.content}\n" for message in messages]
    return "".join(lines) + f"{Role.ASSISTANT.value}: "


def build_system_message(system_prompt: str | None) -> Message:
    return Message(Role.SYSTEM, (system_prompt or "").strip() or DEFAULT_SYSTEM_PROMPT)
