"""Runtime that shells out to a user-provided inference command."""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import time
from string import Formatter
from typing import List

from ...prompts import render_prompt
from ...utils import elapsed_ms
from ..types import GenerationFailure, GenerationRequest, GenerationResult, RuntimeUnavailableError
from .base import StreamCallback

logger = logging.getLogger(__name__)

KNOWN_PLACEHOLDERS = {"prompt", "model_path", "max_tokens"}
REQUIRED_PLACEHOLDERS = {"prompt", "model_path"}


def template_problem(command_template: str) -> str | None:
    """Returns why the template cannot run, or None when it can."""
    template = (command_template or "").strip()
    if not template:
        return "command template is empty"
    try:
        fields = {name for _, name, _, _ in Formatter().parse(template) if name is not None}
    except ValueError as exc:
        return f"unbalanced placeholder delimiters: {exc}"

    unknown = fields - KNOWN_PLACEHOLDERS
    if unknown:
        return "unknown placeholders: " + ", ".join(sorted(repr(name) for name in unknown))
    missing = REQUIRED_PLACEHOLDERS - fields
    if missing:
        return "missing placeholders: " + ", ".join("{" + name + "}" for name in sorted(missing))

    try:
        argv = shlex.split(template)
    except ValueError as exc:
        return f"cannot split command: {exc}"
    if "{" in argv[0]:
        return "executable must not be a placeholder"
    if shutil.which(argv[0]) is None:
        return f"executable not found: {argv[0]}"
    return None


class LocalBinaryRuntime:
    name = "local-binary"

    def __init__(self, command_template: str) -> None:
        self.command_template = command_template or ""

    def is_available(self) -> bool:
        return template_problem(self.command_template) is None

    def build_command(self, request: GenerationRequest) -> List[str]:
        values = {
            "prompt": render_prompt(request.messages),
            "model_path": request.model_path,
            "max_tokens": str(request.max_tokens),
        }
        return [arg.format_map(values) for arg in shlex.split(self.command_template)]

    def generate(self, request: GenerationRequest, on_token: StreamCallback) -> GenerationResult:
        problem = template_problem(self.command_template)
        if problem:
            raise RuntimeUnavailableError(f"local-binary runtime unavailable: {problem}")
        if not request.model_path:
            raise GenerationFailure("local-binary runtime requires a non-empty model_path")

        argv = self.build_command(request)
        start = time.perf_counter()
        try:
            completed = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                check=False,
            )
        except OSError as exc:
            raise GenerationFailure(f"failed to execute local runtime command: {exc}") from exc

        output = completed.stdout or ""
        if completed.returncode != 0:
            logger.warning("Local runtime command exited with %s", completed.returncode)
            tail = output.strip()[-500:]
            raise GenerationFailure(
                f"local runtime command exited with code {completed.returncode}: {tail}",
                diagnostic=output,
            )

        total_ms = elapsed_ms(start)
        if output:
            on_token(output)
        return GenerationResult(
            text=output,
            first_token_ms=0.0,
            total_ms=total_ms,
            generated_tokens=1 if output else 0,
            tokens_per_second=(1000.0 / total_ms) if output and total_ms > 0 else 0.0,
            meta={"runtime": self.name, "returncode": completed.returncode},
        )
