"""
Persistent key-value store used as the second cache tier.

Keys written by the entity cache:
    record:<id>            -> JSON record blob
    name:<lowercased-name> -> id
    allKnownIds            -> JSON list of ids
"""
import sqlite3
import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional, Union

from .errors import StoreError

logger = logging.getLogger("cache.store")


RECORD_PREFIX = "record:"
NAME_PREFIX = "name:"
ALL_IDS_KEY = "allKnownIds"


def record_key(record_id: int) -> str:
    return f"{RECORD_PREFIX}{record_id}"


def name_key(name: str) -> str:
    return f"{NAME_PREFIX}{name.lower()}"


class PersistentStore(ABC):
    """Durable key -> text value storage. Must be safe for concurrent use."""

    @abstractmethod
    def init(self) -> None:
        pass

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        pass


SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_kv_key ON kv(key);
"""


class SQLiteStore(PersistentStore):
    """
    SQLite-backed key-value table.

    Opens a short-lived connection per operation, so it can be shared
    between request threads, hydration workers and the sweeper.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self._ready = False

    def init(self) -> None:
        """Create the kv table. Safe to call multiple times."""
        if self._ready:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()
        self._ready = True
        logger.info(f"Persistent store ready at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Get a database connection, translating sqlite failures to StoreError."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open store at {self.db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreError(f"Store operation failed: {e}") from e
        finally:
            conn.close()

    def get(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, int(time.time() * 1000)),
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()

    def keys(self, prefix: str = "") -> List[str]:
        with self._get_connection() as conn:
            if not prefix:
                rows = conn.execute("SELECT key FROM kv").fetchall()
            else:
                escaped = (
                    prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
                )
                rows = conn.execute(
                    "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\'",
                    (f"{escaped}%",),
                ).fetchall()
        return [row[0] for row in rows]
