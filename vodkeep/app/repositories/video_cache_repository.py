from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from vodkeep.app.repositories.common import parse_timestamp
from vodkeep.app.repositories.database import Database


@dataclass(frozen=True)
class CacheEntry:
    key: str
    source_url: str
    content_type: str
    payload: bytes
    size_bytes: int
    schema_version: int
    created_at: datetime
    expires_at: datetime | None


@dataclass(frozen=True)
class CacheEntryHeader:
    """Entry metadata without the payload; timestamps are None when unparseable."""

    key: str
    source_url: str
    size_bytes: int
    schema_version: int
    created_at: datetime | None
    expires_at: datetime | None
    raw_expires_at: str | None


class VideoCacheRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert_entry(self, entry: CacheEntry) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO video_cache_entries
                (
                    cache_key,
                    source_url,
                    content_type,
                    payload,
                    size_bytes,
                    schema_version,
                    created_at,
                    expires_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    source_url = excluded.source_url,
                    content_type = excluded.content_type,
                    payload = excluded.payload,
                    size_bytes = excluded.size_bytes,
                    schema_version = excluded.schema_version,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at
                """,
                _entry_params(entry),
            )

    def get_entry(self, key: str) -> CacheEntry | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT
                    cache_key,
                    source_url,
                    content_type,
                    payload,
                    size_bytes,
                    schema_version,
                    created_at,
                    expires_at
                FROM video_cache_entries
                WHERE cache_key = ?
                """,
                (key,),
            ).fetchone()

        if row is None:
            return None
        created_at = parse_timestamp(row["created_at"])
        if created_at is None:
            return None
        payload = row["payload"]
        if not isinstance(payload, bytes):
            return None
        return CacheEntry(
            key=str(row["cache_key"]),
            source_url=str(row["source_url"]),
            content_type=str(row["content_type"]),
            payload=payload,
            size_bytes=int(row["size_bytes"]),
            schema_version=int(row["schema_version"]),
            created_at=created_at,
            expires_at=parse_timestamp(row["expires_at"]),
        )

    def list_headers(self, *, max_schema_version: int | None = None) -> list[CacheEntryHeader]:
        query = """
            SELECT cache_key, source_url, size_bytes, schema_version, created_at, expires_at
            FROM video_cache_entries
        """
        params: tuple[object, ...] = ()
        if max_schema_version is not None:
            query += " WHERE schema_version <= ?"
            params = (max_schema_version,)
        query += " ORDER BY created_at ASC, cache_key ASC"

        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()

        headers: list[CacheEntryHeader] = []
        for row in rows:
            raw_expires_at = row["expires_at"]
            headers.append(
                CacheEntryHeader(
                    key=str(row["cache_key"]),
                    source_url=str(row["source_url"]),
                    size_bytes=int(row["size_bytes"]),
                    schema_version=int(row["schema_version"]),
                    created_at=parse_timestamp(row["created_at"]),
                    expires_at=parse_timestamp(raw_expires_at),
                    raw_expires_at=raw_expires_at if isinstance(raw_expires_at, str) else None,
                )
            )
        return headers

    def aggregate(self) -> tuple[int, int]:
        """Return `(total_size_bytes, entry_count)`."""
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(size_bytes), 0) AS total_size, COUNT(*) AS entry_count
                FROM video_cache_entries
                """
            ).fetchone()
        return int(row["total_size"]), int(row["entry_count"])

    def delete_entry(self, key: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM video_cache_entries WHERE cache_key = ?",
                (key,),
            )
            return cursor.rowcount > 0

    def replace_entry(self, *, old_key: str, entry: CacheEntry) -> None:
        """Write `entry` and drop `old_key` in one transaction."""
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO video_cache_entries
                (
                    cache_key,
                    source_url,
                    content_type,
                    payload,
                    size_bytes,
                    schema_version,
                    created_at,
                    expires_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                _entry_params(entry),
            )
            if old_key != entry.key:
                conn.execute(
                    "DELETE FROM video_cache_entries WHERE cache_key = ?",
                    (old_key,),
                )


def _entry_params(entry: CacheEntry) -> tuple[object, ...]:
    return (
        entry.key,
        entry.source_url,
        entry.content_type,
        entry.payload,
        entry.size_bytes,
        entry.schema_version,
        entry.created_at.isoformat(),
        entry.expires_at.isoformat() if entry.expires_at is not None else None,
    )
