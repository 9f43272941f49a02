"""
SQLite key/value store.
Single portable file, one row per (namespace, key). Query with SQL.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from .base import KeyValueStore

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS kv (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (namespace, key)
);

CREATE INDEX IF NOT EXISTS idx_kv_updated
    ON kv(updated_at);
"""


class SQLiteStore(KeyValueStore):
    """SQLite-backed store. Blocking calls run in a worker thread."""

    def __init__(self, path: str, namespace: str = "default"):
        super().__init__(namespace)
        self.db_path = Path(path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _get(self, key: str) -> dict | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM kv WHERE namespace = ? AND key = ?",
                (self.namespace, key),
            ).fetchone()
        return json.loads(row["value"]) if row else None

    def _set(self, key: str, value: dict) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO kv (namespace, key, value, updated_at)
                   VALUES (?, ?, ?, ?)""",
                (self.namespace, key, json.dumps(value, ensure_ascii=False),
                 datetime.now(timezone.utc).isoformat()),
            )
        logger.debug("Stored %s/%s", self.namespace, key)

    def _delete(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM kv WHERE namespace = ? AND key = ?", (self.namespace, key))

    def _keys(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key FROM kv WHERE namespace = ? ORDER BY updated_at",
                (self.namespace,),
            ).fetchall()
        return [r["key"] for r in rows]

    async def get(self, key: str) -> dict | None:
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: str, value: dict) -> None:
        await asyncio.to_thread(self._set, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    async def keys(self) -> list[str]:
        return await asyncio.to_thread(self._keys)
