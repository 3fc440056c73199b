"""Token-budgeted selection of conversation history."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Sequence

from .llm.types import Message, Role


@dataclass(frozen=True)
class PruneResult:
    messages: List[Message] = field(default_factory=list)
    truncated: bool = False
    tokens_kept: int = 0


def estimate_tokens(text: str) -> int:
    """Approximates token cost as a whitespace word count.

    Any non-empty text costs at least one token, even when it is all
    whitespace.
    """
    words = len(text.split())
    if words == 0 and text:
        return 1
    return words


def prune_context_window(history: Sequence[Message], token_budget: int) -> PruneResult:
    """Keeps every system message plus the newest turns that fit the budget.

    System messages are pinned and counted first, even if they alone exceed
    the budget. Remaining turns are considered newest first; a turn that does
    not fit is skipped and the scan continues with older turns. The kept
    messages are returned in their original order.
    """
    if not history:
        return PruneResult()

    budget = max(0, token_budget)
    keep: set[int] = set()
    tokens_kept = 0

    for index, message in enumerate(history):
        if message.role == Role.SYSTEM:
            keep.add(index)
            tokens_kept += estimate_tokens(message.content)

    truncated = False
    for index in range(len(history) - 1, -1, -1):
        message = history[index]
        if message.role == Role.SYSTEM:
            continue
        cost = estimate_tokens(message.content)
        if tokens_kept + cost > budget:
            truncated = True
            continue
        tokens_kept += cost
        keep.add(index)

    kept = [message for index, message in enumerate(history) if index in keep]
    if len(kept) != len(history):
        truncated = True

    return PruneResult(messages=kept, truncated=truncated, tokens_kept=tokens_kept)


def prompt_token_budget(context_window_tokens: int, max_tokens: int) -> int:
    return max(0, context_window_tokens - max_tokens)
