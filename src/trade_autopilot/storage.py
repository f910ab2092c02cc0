from __future__ import annotations

import copy
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

from loguru import logger

from .errors import PersistenceFailure
from .models import utcnow
from .settings import settings


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class MemoryPersistence:
    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = threading.Lock()

    def load(self, key: str) -> Any | None:
        with self._lock:
            return copy.deepcopy(self._data.get(key))

    def save(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)


class SqlitePersistence:
    """JSON key-value store in SQLite.

    A failing read or write is logged and served from the in-memory copy, so
    the engine keeps running with degraded durability.
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        self.db_path = Path(db_path or settings.db_path)
        self._fallback = MemoryPersistence()
        self._lock = threading.Lock()
        try:
            self.initialize()
        except sqlite3.Error as exc:
            logger.warning("{}", PersistenceFailure(f"Could not initialize {self.db_path}: {exc}"))

    def get_connection(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        with self.get_connection() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.commit()

    def load(self, key: str) -> Any | None:
        try:
            with self._lock, self.get_connection() as conn:
                row = conn.execute("SELECT value_json FROM kv_store WHERE key = ?", (key,)).fetchone()
        except (sqlite3.Error, OSError) as exc:
            logger.warning("{}", PersistenceFailure(f"load({key!r}) failed: {exc}"))
            return self._fallback.load(key)

        if row is None:
            return self._fallback.load(key)
        try:
            return json.loads(row["value_json"])
        except json.JSONDecodeError as exc:
            logger.warning("{}", PersistenceFailure(f"Stored value for {key!r} is corrupt: {exc}"))
            return self._fallback.load(key)

    def save(self, key: str, value: Any) -> None:
        self._fallback.save(key, value)
        try:
            payload = json.dumps(value, default=str)
            with self._lock, self.get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO kv_store (key, value_json, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json,
                                                   updated_at = excluded.updated_at
                    """,
                    (key, payload, utcnow().isoformat()),
                )
                conn.commit()
        except (sqlite3.Error, OSError, TypeError, ValueError) as exc:
            logger.warning("{}", PersistenceFailure(f"save({key!r}) failed, kept in memory: {exc}"))
