"""Interactive terminal shell around the orchestrator."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .downloads import download_model
from .llm.types import LocalChatError, Message, ModelDescriptor, Role
from .orchestrator import Orchestrator
from .prompts import build_system_message
from .storage import (
    append_message,
    ensure_session,
    get_generation_summary,
    get_session_metadata,
    list_sessions,
    load_messages,
    log_generation,
    update_session_metadata,
)

HELP_TEXT = """\
/help                     Show commands
/exit                     Exit
/session                  Print session id
/session info             Print current session metadata
/session list             List known sessions
/model list               List configured models
/model current            Print active model
/model use <id|num>       Switch active model by id or list number
/model add <id> <repo> <file> [local-path]
/model download <id|num>  Download a catalog model file
/model validate           Validate active model path and metadata
/model remove <id|num>    Remove local model file with confirmation
/profile [fast|balanced|quality]
/stats                    Generation stats for this session
"""


def format_epoch(epoch: int | None) -> str:
    if not epoch:
        return "unknown"
    return datetime.fromtimestamp(int(epoch)).strftime("%Y-%m-%d %H:%M:%S")


def format_model_line(model: ModelDescriptor, active: bool, index: int | None = None) -> str:
    ready = "yes" if Path(model.local_path).exists() else "no"
    marker = "* " if active else "  "
    number = f"[{index}] " if index is not None else ""
    return f"{marker}{number}{model.id} | {model.name} | ready={ready} | path={model.local_path}"


class ChatRepl:
    def __init__(
        self,
        config: Dict[str, Any],
        conn: sqlite3.Connection,
        orchestrator: Orchestrator,
        session_id: str,
        read_line: Callable[[str], str] = input,
    ) -> None:
        self.config = config
        self.conn = conn
        self.orchestrator = orchestrator
        self.session_id = session_id
        self.read_line = read_line
        self.history = []
        self.logger = logging.getLogger(__name__)

    def _active_model_id(self) -> str:
        model = self.orchestrator.active_model()
        return model.id if model else ""

    def _touch_metadata(self) -> None:
        update_session_metadata(
            self.conn,
            self.session_id,
            self._active_model_id(),
            self.orchestrator.active_runtime_name,
        )

    def _resolve_model(self, selector: str) -> Optional[ModelDescriptor]:
        value = selector.strip()
        if not value:
            return None
        if value.isdigit():
            models = self.orchestrator.models()
            index = int(value)
            if 1 <= index <= len(models):
                return models[index - 1]
            return None
        return self.orchestrator.find_model(value)

    def start(self) -> None:
        self.history = load_messages(self.conn, self.session_id)
        ensure_session(self.conn, self.session_id, self._active_model_id(), self.orchestrator.active_runtime_name)
        if not self.history:
            system_message = build_system_message(self.config.get("system_prompt"))
            self.history.append(system_message)
            append_message(self.conn, self.session_id, system_message)

        print(f"session: {self.session_id}")
        print(f"runtime: {self.orchestrator.active_runtime_name}")
        if self.orchestrator.runtime_selection_note:
            print(f"note: {self.orchestrator.runtime_selection_note}")
        if self._active_model_id():
            print(f"model: {self._active_model_id()}")
        print(f"profile: {self.orchestrator.profile}")
        print("type /help for commands\n")

    def run(self) -> int:
        self.start()
        while True:
            try:
                line = self.read_line("you> ")
            except (EOFError, KeyboardInterrupt):
                print()
                break
            if not self.handle_line(line):
                break
        return 0

    def handle_line(self, line: str) -> bool:
        """Handles one input line; returns False when the shell should exit."""
        text = line.strip()
        if text in ("/exit", "/quit"):
            return False
        if not text:
            return True
        if text == "/help":
            print(HELP_TEXT)
        elif text == "/session" or text.startswith("/session "):
            self._session_command(text[len("/session"):].strip())
        elif text == "/model" or text.startswith("/model "):
            self._model_command(text[len("/model"):].strip())
        elif text == "/profile" or text.startswith("/profile "):
            self._profile_command(text[len("/profile"):].strip())
        elif text == "/stats":
            self._stats_command()
        elif text.startswith("/"):
            print(f"unknown command: {text} (use /help)\n")
        else:
            self._chat_turn(text)
        return True

    def _chat_turn(self, text: str) -> None:
        user_message = Message(Role.USER, text)
        self.history.append(user_message)
        append_message(self.conn, self.session_id, user_message)

        print("assistant> ", end="", flush=True)
        try:
            result = self.orchestrator.respond(self.history, lambda piece: print(piece, end="", flush=True))
        except LocalChatError as exc:
            print(f"\nerror: {exc}\n")
            return
        except Exception as exc:
            self.logger.exception("Unhandled generation error")
            print(f"\nerror: {exc}\n")
            return

        print()
        if result.context_truncated and result.warning:
            print(f"[warn] {result.warning}")
        print()

        assistant_message = Message(Role.ASSISTANT, result.text)
        self.history.append(assistant_message)
        append_message(self.conn, self.session_id, assistant_message)
        log_generation(
            self.conn,
            self.session_id,
            self._active_model_id(),
            self.orchestrator.active_runtime_name,
            result,
        )
        self._touch_metadata()

    def _session_command(self, args: str) -> None:
        if not args:
            print(f"{self.session_id}\n")
        elif args == "info":
            meta = get_session_metadata(self.conn, self.session_id)
            if not meta:
                print("no metadata for this session\n")
                return
            print(f"session: {meta['id']}")
            print(f"created: {format_epoch(meta['created_at'])}")
            print(f"model: {meta['active_model_id']}")
            print(f"runtime: {meta['runtime_name']}\n")
        elif args == "list":
            sessions = list_sessions(self.conn)
            if not sessions:
                print("no sessions found\n")
                return
            for meta in sessions:
                print(
                    f"{meta['id']} | created={format_epoch(meta['created_at'])} "
                    f"| model={meta['active_model_id']} | runtime={meta['runtime_name']}"
                )
            print()
        else:
            print("usage: /session [info|list]\n")

    def _model_command(self, args: str) -> None:
        parts = args.split()
        sub = parts[0] if parts else ""
        rest = args[len(sub):].strip()

        if sub == "list":
            active_id = self._active_model_id()
            for index, model in enumerate(self.orchestrator.models(), start=1):
                print(format_model_line(model, model.id == active_id, index))
            print()
        elif sub == "current":
            model = self.orchestrator.active_model()
            print(format_model_line(model, True) if model else "no active model")
            print()
        elif sub == "use":
            self._model_use(rest)
        elif sub == "add":
            self._model_add(parts[1:])
        elif sub == "download":
            self._model_download(rest)
        elif sub == "validate":
            ok, report = self.orchestrator.validate_active_model()
            print(report if ok else f"validation failed: {report}")
            print()
        elif sub == "remove":
            self._model_remove(rest)
        else:
            print("usage: /model list|current|use|add|download|validate|remove (see /help)\n")

    def _model_use(self, selector: str) -> None:
        model = self._resolve_model(selector)
        if model is None:
            print(f"error: unknown model selector: {selector} (use /model list)\n")
            return
        try:
            active = self.orchestrator.set_active_model(model.id)
        except LocalChatError as exc:
            print(f"error: {exc}\n")
            return
        self._touch_metadata()
        print(f"active model: {active.id}\n")

    def _model_add(self, parts: list[str]) -> None:
        if len(parts) < 3:
            print("usage: /model add <id> <repo> <file> [local-path]\n")
            return
        model_id, repo, filename = parts[0], parts[1], parts[2]
        local_path = parts[3] if len(parts) >= 4 else f"./models/{filename}"
        try:
            added = self.orchestrator.add_model(ModelDescriptor(model_id, model_id, repo, filename, local_path))
        except LocalChatError as exc:
            print(f"error: {exc}\n")
            return
        print(f"added model: {added.id} -> {added.local_path}")
        print(f"next: /model download {added.id}\n")

    def _model_download(self, selector: str) -> None:
        if not selector:
            print("error: model selector required\n")
            return
        model = self._resolve_model(selector)
        if model is None:
            print(f"error: unknown model selector: {selector} (use /model list)\n")
            return
        downloads_cfg = self.config.get("downloads", {})
        try:
            path = download_model(
                model,
                base_url=str(downloads_cfg.get("base_url", "https://huggingface.co")),
                timeout_seconds=int(downloads_cfg.get("timeout_seconds", 60)),
            )
        except LocalChatError as exc:
            print(f"download failed: {exc}\n")
            return
        print(f"download complete for model: {model.id} -> {path}\n")

    def _model_remove(self, selector: str) -> None:
        model = self._resolve_model(selector)
        if model is None:
            print(f"error: unknown model selector: {selector} (use /model list)\n")
            return
        answer = self.read_line(f"confirm remove local file for model '{model.id}' at {model.local_path}? [y/N] ")
        if answer.strip() not in ("y", "Y"):
            print("remove cancelled\n")
            return

        path = Path(model.local_path)
        try:
            if path.exists():
                path.unlink()
                print(f"removed: {model.local_path}")
            else:
                print(f"no file removed (already absent): {model.local_path}")
        except OSError as exc:
            print(f"error removing file: {exc}\n")
            return

        if self._active_model_id() == model.id:
            for candidate in self.orchestrator.models():
                if candidate.id != model.id:
                    self.orchestrator.set_active_model(candidate.id)
                    self._touch_metadata()
                    print(f"active model switched to: {candidate.id}")
                    break
        print()

    def _profile_command(self, name: str) -> None:
        if not name:
            s = self.orchestrator.settings
            print(f"profile: {s.profile} (max_tokens={s.max_tokens}, context_window_tokens={s.context_window_tokens})\n")
            return
        try:
            s = self.orchestrator.set_profile(name)
        except LocalChatError as exc:
            print(f"error: {exc}\n")
            return
        print(f"profile: {s.profile} (max_tokens={s.max_tokens}, context_window_tokens={s.context_window_tokens})\n")

    def _stats_command(self) -> None:
        summary = get_generation_summary(self.conn, self.session_id)
        print(
            f"turns={summary['calls']} generated_tokens={summary['generated_tokens']} "
            f"avg_first_token_ms={summary['avg_first_token_ms']:.1f} "
            f"avg_tokens_per_second={summary['avg_tokens_per_second']:.1f} "
            f"truncated_turns={summary['truncated_turns']}\n"
        )
