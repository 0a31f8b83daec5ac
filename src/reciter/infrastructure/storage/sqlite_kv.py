"""
SQLite-backed key-value store.

One table, one row per key. Each ``set`` replaces the whole value inside a
single transaction, so a reader never observes a partial write.
"""

import logging
import sqlite3
from pathlib import Path

from reciter.domain.interfaces import KeyValueStore


class SqliteKeyValueStore(KeyValueStore):
    """
    Usage:
        with SqliteKeyValueStore(path) as kv:
            kv.set("state", b"{}")
    """

    def __init__(self, path: Path):
        self.path = path
        self.conn: sqlite3.Connection | None = None
        self.logger = logging.getLogger(__name__)

    def __enter__(self) -> "SqliteKeyValueStore":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.path)
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value BLOB NOT NULL)"
        )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.conn is None:
            return
        try:
            if exc_type is None:
                self.conn.commit()
            else:
                self.conn.rollback()
        finally:
            self.conn.close()
            self.conn = None

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise RuntimeError("SqliteKeyValueStore used outside of its 'with' block")
        return self.conn

    def get(self, key: str) -> bytes | None:
        row = self._require_conn().execute(
            "SELECT value FROM kv WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        value = row[0]
        return value.encode("utf-8") if isinstance(value, str) else bytes(value)

    def set(self, key: str, value: bytes) -> None:
        conn = self._require_conn()
        with conn:
            conn.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, sqlite3.Binary(value)),
            )
        self.logger.debug(f"[kv] wrote {len(value)} bytes to {key}")
