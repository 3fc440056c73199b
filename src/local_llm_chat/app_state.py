"""Durable active-model id, remembered across launches."""

from __future__ import annotations

import logging
import sqlite3

from .storage import get_global_setting, set_global_setting

logger = logging.getLogger(__name__)

ACTIVE_MODEL_KEY = "active_model_id"


class ActiveModelState:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def load(self) -> str:
        try:
            value = get_global_setting(self.conn, ACTIVE_MODEL_KEY, "")
        except sqlite3.Error as exc:
            logger.warning("Could not read active model state: %s", exc)
            return ""
        return str(value or "").strip()

    def save(self, model_id: str) -> None:
        # Best effort: a failed write only costs the next launch its resume.
        try:
            set_global_setting(self.conn, ACTIVE_MODEL_KEY, model_id)
        except sqlite3.Error as exc:
            logger.warning("Could not persist active model %s: %s", model_id, exc)
