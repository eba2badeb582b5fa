from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

LEGACY_VIDEO_CACHE_SCHEMA_VERSION = 1
VIDEO_CACHE_SCHEMA_VERSION = 2

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS video_cache_entries (
    cache_key TEXT PRIMARY KEY,
    source_url TEXT NOT NULL,
    content_type TEXT NOT NULL,
    payload BLOB NOT NULL,
    size_bytes INTEGER NOT NULL,
    schema_version INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NULL
);

CREATE INDEX IF NOT EXISTS idx_video_cache_entries_created_at
ON video_cache_entries(created_at);

CREATE INDEX IF NOT EXISTS idx_video_cache_entries_expires_at
ON video_cache_entries(expires_at);

CREATE INDEX IF NOT EXISTS idx_video_cache_entries_schema_version
ON video_cache_entries(schema_version);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._statement_count = 0
        self._count_lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def statement_count(self) -> int:
        with self._count_lock:
            return self._statement_count

    def reset_statement_count(self) -> None:
        with self._count_lock:
            self._statement_count = 0

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.set_trace_callback(self._record_statement)
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA_SQL)

    def _record_statement(self, _statement: str) -> None:
        with self._count_lock:
            self._statement_count += 1
