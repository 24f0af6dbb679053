"""Cache storage backends — string key/value stores behind one interface.

``IncrementalCache`` talks only to the ``CacheStore`` protocol, so the
analytics core never touches a global.  Two implementations ship:

* ``MemoryCacheStore`` — a dict, optionally with a byte quota.
* ``SqliteCacheStore`` — durable, one row per key.
"""

import pathlib
import sqlite3
from typing import Optional, Protocol

from signalcheck.errors import CacheQuotaExceeded, CacheWriteFailure


class CacheStore(Protocol):
    """Minimal string key/value store."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryCacheStore:
    """In-process store.

    Args:
        quota_bytes: When set, a write that would push the total size of
            keys plus values past this many bytes raises
            ``CacheQuotaExceeded``.
    """

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        self._data: dict[str, str] = {}
        self._quota = quota_bytes

    def _size(self) -> int:
        return sum(len(k.encode()) + len(v.encode()) for k, v in self._data.items())

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self._quota is not None:
            current = self._size()
            if key in self._data:
                current -= len(key.encode()) + len(self._data[key].encode())
            needed = len(key.encode()) + len(value.encode())
            if current + needed > self._quota:
                raise CacheQuotaExceeded(
                    f"Cache quota of {self._quota} bytes exceeded writing '{key}'"
                )
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class SqliteCacheStore:
    """Durable store backed by a single SQLite table.

    Args:
        db_path: Path to the SQLite database file.  Parent directories are
            created on first use.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        pathlib.Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_entries (
                    key   TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def get(self, key: str) -> Optional[str]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT value FROM cache_entries WHERE key = ?", (key,)
            ).fetchone()
            return row["value"] if row else None
        finally:
            conn.close()

    def set(self, key: str, value: str) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO cache_entries (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
            conn.commit()
        except sqlite3.OperationalError as exc:
            if "full" in str(exc).lower():
                raise CacheQuotaExceeded(f"Cache database full writing '{key}'") from exc
            raise CacheWriteFailure(f"Cache write failed for '{key}': {exc}") from exc
        except sqlite3.Error as exc:
            raise CacheWriteFailure(f"Cache write failed for '{key}': {exc}") from exc
        finally:
            conn.close()

    def remove(self, key: str) -> None:
        conn = self._connect()
        try:
            conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def keys(self) -> list[str]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT key FROM cache_entries ORDER BY key").fetchall()
            return [row["key"] for row in rows]
        finally:
            conn.close()
