"""Entrypoint: run the chat shell or inspect models and sessions."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from local_llm_chat.config import load_settings
from local_llm_chat.llm.types import LocalChatError
from local_llm_chat.orchestrator import build_orchestrator
from local_llm_chat.repl import ChatRepl, format_epoch, format_model_line
from local_llm_chat.storage import apply_migrations, create_session_id, get_connection, list_sessions


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Local-first terminal chat with a local language model")
    parser.add_argument("--settings", default="config/settings.yaml", help="Path to settings.yaml")
    parser.add_argument("--session", default="", help="Resume a session id")
    parser.add_argument("--profile", default="", help="fast|balanced|quality")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("chat", help="Run the interactive chat shell (default)")
    subparsers.add_parser("models", help="List catalog models")
    subparsers.add_parser("sessions", help="List stored sessions")
    subparsers.add_parser("init-db", help="Apply SQLite migrations only")
    return parser


def _configure_logging(config) -> None:
    level_name = str(config.get("logging", {}).get("level", "WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> int:
    load_dotenv()
    parser = _build_parser()
    args = parser.parse_args()
    command = args.command or "chat"

    config = load_settings(args.settings)
    _configure_logging(config)
    db_path = config["database"]["path"]
    apply_migrations(db_path)

    if command == "init-db":
        print(f"Database initialized at {db_path}")
        return 0

    conn = get_connection(db_path)
    try:
        if command == "sessions":
            for meta in list_sessions(conn):
                print(
                    f"{meta['id']} | created={format_epoch(meta['created_at'])} "
                    f"| model={meta['active_model_id']} | runtime={meta['runtime_name']}"
                )
            return 0

        orchestrator = build_orchestrator(config, conn)
        if args.profile:
            orchestrator.set_profile(args.profile)

        if command == "models":
            active = orchestrator.active_model()
            for index, model in enumerate(orchestrator.models(), start=1):
                print(format_model_line(model, active is not None and model.id == active.id, index))
            return 0

        repl = ChatRepl(config, conn, orchestrator, args.session or create_session_id())
        return repl.run()
    except LocalChatError as exc:
        print(f"fatal: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()


if __name__ == "__main__":
    sys.exit(main())
