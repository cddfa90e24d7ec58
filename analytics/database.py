from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Iterable


class Database:
    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        schema = """
        PRAGMA journal_mode = WAL;
        PRAGMA synchronous = NORMAL;

        CREATE TABLE IF NOT EXISTS kv_state (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS delivery_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            attempted_at_utc TEXT NOT NULL,
            origin TEXT NOT NULL,
            session_id TEXT,
            report_timestamp TEXT,
            delivered INTEGER NOT NULL,
            channels TEXT NOT NULL DEFAULT ''
        );

        CREATE INDEX IF NOT EXISTS idx_delivery_log_attempted
            ON delivery_log (attempted_at_utc);
        CREATE INDEX IF NOT EXISTS idx_delivery_log_session
            ON delivery_log (session_id, id);
        """
        with self._lock:
            self._conn.executescript(schema)
            self._conn.commit()

    def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        with self._lock:
            cur = self._conn.execute(sql, tuple(params))
            self._conn.commit()
            return int(cur.lastrowid)

    def query_all(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.execute(sql, tuple(params))
            return list(cur.fetchall())

    def query_one(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.execute(sql, tuple(params))
            return cur.fetchone()

    def get_state(self, key: str, default: str | None = None) -> str | None:
        row = self.query_one("SELECT value FROM kv_state WHERE key = ?", (key,))
        if row is None:
            return default
        return str(row["value"])

    def set_state(self, key: str, value: str) -> None:
        self.execute(
            """
            INSERT INTO kv_state (key, value)
            VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )

    def update_state(self, key: str, mutate: Callable[[str | None], str | None]) -> str | None:
        """Read, transform and write one slot as a single transaction.

        ``mutate`` receives the stored value (or None) and returns the new value, or
        None to delete the slot. Returns the previous value.
        """
        with self._lock:
            try:
                row = self._conn.execute("SELECT value FROM kv_state WHERE key = ?", (key,)).fetchone()
                previous = str(row["value"]) if row is not None else None
                updated = mutate(previous)
                if updated is None:
                    self._conn.execute("DELETE FROM kv_state WHERE key = ?", (key,))
                else:
                    self._conn.execute(
                        """
                        INSERT INTO kv_state (key, value)
                        VALUES (?, ?)
                        ON CONFLICT(key) DO UPDATE SET value = excluded.value
                        """,
                        (key, updated),
                    )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            return previous

    def close(self) -> None:
        with self._lock:
            self._conn.close()
