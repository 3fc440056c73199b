"""SQLite schema, migrations, and data access helpers."""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List

from .llm.types import GenerationResult, Message, Role
from .utils import json_dumps, json_loads, utc_now_iso

MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            created_at INTEGER NOT NULL,
            active_model_id TEXT NOT NULL DEFAULT '',
            runtime_name TEXT NOT NULL DEFAULT '',
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            role TEXT NOT NULL,
            content TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS settings (
            scope TEXT PRIMARY KEY,
            preferences_json TEXT NOT NULL DEFAULT '{}'
        );

        CREATE INDEX IF NOT EXISTS idx_messages_session_id ON messages(session_id, id);
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS generations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            model_id TEXT NOT NULL,
            runtime_name TEXT NOT NULL,
            generated_tokens INTEGER NOT NULL DEFAULT 0,
            first_token_ms REAL NOT NULL DEFAULT 0,
            total_ms REAL NOT NULL DEFAULT 0,
            tokens_per_second REAL NOT NULL DEFAULT 0,
            context_truncated INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            meta_json TEXT NOT NULL DEFAULT '{}'
        );

        CREATE INDEX IF NOT EXISTS idx_generations_session ON generations(session_id, created_at);
        """,
    ),
]

GLOBAL_SCOPE = "__global__"


def get_connection(db_path: str) -> sqlite3.Connection:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def apply_migrations(db_path: str) -> None:
    with get_connection(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        applied = {
            row["version"]
            for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
        }
        for version, sql in MIGRATIONS:
            if version in applied:
                continue
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
        conn.commit()
    conn.close()


def _row_to_dict(row: sqlite3.Row | None) -> Dict[str, Any] | None:
    if row is None:
        return None
    return dict(row)


def create_session_id() -> str:
    return f"session-{int(time.time())}"


def ensure_session(conn: sqlite3.Connection, session_id: str, active_model_id: str, runtime_name: str) -> Dict[str, Any]:
    existing = get_session_metadata(conn, session_id)
    if existing:
        return existing
    return update_session_metadata(conn, session_id, active_model_id, runtime_name)


def update_session_metadata(
    conn: sqlite3.Connection,
    session_id: str,
    active_model_id: str,
    runtime_name: str,
) -> Dict[str, Any]:
    """Upserts the metadata record; created_at is kept once set."""
    conn.execute(
        """
        INSERT INTO sessions(id, created_at, active_model_id, runtime_name, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            active_model_id = excluded.active_model_id,
            runtime_name = excluded.runtime_name,
            updated_at = excluded.updated_at
        """,
        (session_id, int(time.time()), active_model_id, runtime_name, utc_now_iso()),
    )
    conn.commit()
    return get_session_metadata(conn, session_id) or {}


def get_session_metadata(conn: sqlite3.Connection, session_id: str) -> Dict[str, Any] | None:
    row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
    return _row_to_dict(row)


def list_sessions(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM sessions ORDER BY created_at DESC, id ASC").fetchall()
    return [dict(row) for row in rows]


def append_message(conn: sqlite3.Connection, session_id: str, message: Message) -> None:
    conn.execute(
        "INSERT INTO messages(session_id, role, content, created_at) VALUES (?, ?, ?, ?)",
        (session_id, message.role.value, message.content, utc_now_iso()),
    )
    conn.commit()


def load_messages(conn: sqlite3.Connection, session_id: str) -> List[Message]:
    rows = conn.execute(
        "SELECT role, content FROM messages WHERE session_id = ? ORDER BY id ASC",
        (session_id,),
    ).fetchall()
    return [Message(Role.parse(row["role"]), row["content"]) for row in rows]


def set_global_setting(conn: sqlite3.Connection, key: str, value: Any) -> None:
    row = conn.execute("SELECT preferences_json FROM settings WHERE scope = ?", (GLOBAL_SCOPE,)).fetchone()
    prefs = json_loads(row["preferences_json"]) if row else {}
    prefs[key] = value
    conn.execute(
        """
        INSERT INTO settings(scope, preferences_json)
        VALUES (?, ?)
        ON CONFLICT(scope) DO UPDATE SET preferences_json = excluded.preferences_json
        """,
        (GLOBAL_SCOPE, json_dumps(prefs)),
    )
    conn.commit()


def get_global_setting(conn: sqlite3.Connection, key: str, default: Any = None) -> Any:
    row = conn.execute("SELECT preferences_json FROM settings WHERE scope = ?", (GLOBAL_SCOPE,)).fetchone()
    if not row:
        return default
    prefs = json_loads(row["preferences_json"])
    return prefs.get(key, default)


def log_generation(
    conn: sqlite3.Connection,
    session_id: str,
    model_id: str,
    runtime_name: str,
    result: GenerationResult,
) -> Dict[str, Any]:
    cur = conn.execute(
        """
        INSERT INTO generations(
            session_id, model_id, runtime_name, generated_tokens, first_token_ms,
            total_ms, tokens_per_second, context_truncated, created_at, meta_json
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            session_id,
            model_id,
            runtime_name,
            result.generated_tokens,
            result.first_token_ms,
            result.total_ms,
            result.tokens_per_second,
            1 if result.context_truncated else 0,
            utc_now_iso(),
            json_dumps(result.meta),
        ),
    )
    conn.commit()
    row = conn.execute("SELECT * FROM generations WHERE id = ?", (cur.lastrowid,)).fetchone()
    return dict(row)


def get_generation_summary(conn: sqlite3.Connection, session_id: str | None = None) -> Dict[str, Any]:
    query = """
        SELECT
          COUNT(*) AS calls,
          COALESCE(SUM(generated_tokens), 0) AS generated_tokens,
          COALESCE(AVG(first_token_ms), 0) AS avg_first_token_ms,
          COALESCE(AVG(tokens_per_second), 0) AS avg_tokens_per_second,
          COALESCE(SUM(context_truncated), 0) AS truncated_turns
        FROM generations
    """
    params: tuple[Any, ...] = ()
    if session_id:
        query += " WHERE session_id = ?"
        params = (session_id,)
    row = conn.execute(query, params).fetchone()
    return dict(row)
