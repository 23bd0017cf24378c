"""SQLite plumbing shared by the persisted stores."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path


class SqliteStore:
    """Base class handling connections and schema bootstrap.

    ``:memory:`` stores keep one shared connection since every new in-memory
    connection would see an empty database. It may be used from any thread, one
    operation at a time, and is rebuilt empty after :meth:`close`. File-backed
    stores open a connection per operation.
    """

    SCHEMA = ""

    def __init__(self, path: str | Path = ":memory:") -> None:
        self._is_memory = str(path) == ":memory:"
        self.path = Path(path)
        if not self._is_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._shared_conn: sqlite3.Connection | None = None
        self._ensure_schema()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._is_memory:
            if self._shared_conn is None:
                conn = sqlite3.connect(":memory:", check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.executescript(self.SCHEMA)
                self._shared_conn = conn
            yield self._shared_conn
        else:
            conn = sqlite3.connect(self.path)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.executescript(self.SCHEMA)
            conn.commit()

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None


__all__ = ["SqliteStore"]
