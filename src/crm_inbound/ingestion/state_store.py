"""Durable key-value storage for dedup records and poll cursors.

Values are JSON documents addressed by ``(namespace, key)``. Every write is
committed immediately so state survives a crash right after a successful
ingestion, and ``items`` gives an atomic snapshot for load-at-startup.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple


class KeyValueStore(Protocol):
    """Interface the dedup store persists through."""

    def get(self, namespace: str, key: str) -> Optional[Any]:
        ...

    def put(self, namespace: str, key: str, value: Any) -> None:
        ...

    def delete(self, namespace: str, key: str) -> None:
        ...

    def delete_many(self, namespace: str, keys: List[str]) -> int:
        ...

    def items(self, namespace: str) -> List[Tuple[str, Any]]:
        ...

    def close(self) -> None:
        ...


SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_state (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    PRIMARY KEY (namespace, key)
);

CREATE INDEX IF NOT EXISTS idx_kv_namespace ON kv_state(namespace);
"""


class SqliteKeyValueStore:
    """SQLite-backed :class:`KeyValueStore`."""

    def __init__(self, path: Path) -> None:
        """Open (or create) the state database.

        Args:
            path: Path to SQLite database file
        """
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        # supervisors write from worker threads as well as the event loop
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        with self._lock:
            self._conn.commit()
            self._conn.close()

    def get(self, namespace: str, key: str) -> Optional[Any]:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM kv_state WHERE namespace = ? AND key = ?",
                (namespace, key),
            ).fetchone()
        return json.loads(row[0]) if row else None

    def put(self, namespace: str, key: str, value: Any) -> None:
        payload = json.dumps(value, default=str)
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO kv_state(namespace, key, value)
                VALUES (?, ?, ?)
                ON CONFLICT(namespace, key) DO UPDATE SET
                    value=excluded.value,
                    updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (namespace, key, payload),
            )

    def delete(self, namespace: str, key: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "DELETE FROM kv_state WHERE namespace = ? AND key = ?",
                (namespace, key),
            )

    def delete_many(self, namespace: str, keys: List[str]) -> int:
        if not keys:
            return 0
        with self._lock, self._conn:
            cursor = self._conn.executemany(
                "DELETE FROM kv_state WHERE namespace = ? AND key = ?",
                [(namespace, key) for key in keys],
            )
        return cursor.rowcount

    def items(self, namespace: str) -> List[Tuple[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key, value FROM kv_state WHERE namespace = ? ORDER BY key",
                (namespace,),
            ).fetchall()
        return [(key, json.loads(value)) for key, value in rows]

    def iter_namespaces(self) -> Iterator[str]:
        with self._lock:
            rows = self._conn.execute("SELECT DISTINCT namespace FROM kv_state").fetchall()
        for (namespace,) in rows:
            yield namespace


class MemoryKeyValueStore:
    """Process-local :class:`KeyValueStore`, used by tests and embedding callers."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def get(self, namespace: str, key: str) -> Optional[Any]:
        with self._lock:
            raw = self._data.get(namespace, {}).get(key)
        return json.loads(raw) if raw is not None else None

    def put(self, namespace: str, key: str, value: Any) -> None:
        with self._lock:
            self._data.setdefault(namespace, {})[key] = json.dumps(value, default=str)

    def delete(self, namespace: str, key: str) -> None:
        with self._lock:
            self._data.get(namespace, {}).pop(key, None)

    def delete_many(self, namespace: str, keys: List[str]) -> int:
        removed = 0
        with self._lock:
            bucket = self._data.get(namespace, {})
            for key in keys:
                if bucket.pop(key, None) is not None:
                    removed += 1
        return removed

    def items(self, namespace: str) -> List[Tuple[str, Any]]:
        with self._lock:
            bucket = dict(self._data.get(namespace, {}))
        return [(key, json.loads(value)) for key, value in sorted(bucket.items())]

    def close(self) -> None:
        return None


__all__ = ["KeyValueStore", "MemoryKeyValueStore", "SqliteKeyValueStore"]
