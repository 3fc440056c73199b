"""Shared chat and generation data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value: str) -> "Role":
        clean = (value or "").strip().lower()
        for role in cls:
            if role.value == clean:
                return role
        return cls.USER


@dataclass(frozen=True)
class Message:
    role: Role
    content: str


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    name: str
    source_repo: str
    source_file: str
    local_path: str


@dataclass
class GenerationRequest:
    messages: List[Message]
    model_id: str
    model_path: str
    max_tokens: int = 256


@dataclass
class GenerationResult:
    text: str
    context_truncated: bool = False
    warning: str = ""
    first_token_ms: float = 0.0
    total_ms: float = 0.0
    generated_tokens: int = 0
    tokens_per_second: float = 0.0
    meta: dict = field(default_factory=dict)


class LocalChatError(RuntimeError):
    """Base class for failures surfaced to the chat shell."""


class ConfigurationError(LocalChatError):
    """Settings, catalog or runtime list cannot be used as configured."""


class NoRuntimeAvailable(ConfigurationError):
    """Runtime selection produced nothing."""


class ModelStateError(LocalChatError):
    """Model directory lookup or mutation failed."""


class NoActiveModel(ModelStateError):
    """The model directory has no active model."""


class ModelFileError(LocalChatError):
    """The model's local file cannot be used."""


class ModelFileMissing(ModelFileError):
    pass


class ModelFileUnreadable(ModelFileError):
    pass


class RuntimeUnavailableError(LocalChatError):
    """A runtime was asked to generate while it cannot run."""


class GenerationFailure(LocalChatError):
    """Backend failed while tokenizing, decoding or running a process."""

    def __init__(self, message: str, diagnostic: str = "") -> None:
        super().__init__(message)
        self.diagnostic = diagnostic
