from __future__ import annotations

import hashlib
import logging
import re
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from vodkeep.app.repositories.common import utc_now
from vodkeep.app.repositories.database import VIDEO_CACHE_SCHEMA_VERSION
from vodkeep.app.repositories.video_cache_repository import (
    CacheEntry,
    CacheEntryHeader,
    VideoCacheRepository,
)

LOGGER = logging.getLogger("vodkeep.video_cache")
DEFAULT_CONTENT_TYPE = "video/mp4"
_DOUBAN_TRAILER_PATTERN = re.compile(r"/M/(\d+)\.mp4")


class StorageUnsupported(Exception):
    """The configured storage backend cannot answer size/range queries."""


class StorageEntryCorrupt(Exception):
    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"cache entry {key} is unreadable: {reason}")
        self.key = key
        self.reason = reason


@dataclass(frozen=True)
class CacheStats:
    total_size: int
    file_count: int
    max_size: int

    @property
    def usage_percent(self) -> float:
        if self.max_size <= 0:
            return 0.0
        return round(self.total_size / self.max_size * 100, 2)


def legacy_cache_key(source_url: str) -> str:
    return hashlib.sha256(source_url.encode("utf-8")).hexdigest()


def cache_key_for_url(source_url: str) -> str:
    """Douban trailers are keyed by id so refreshed signed URLs still hit."""
    match = _DOUBAN_TRAILER_PATTERN.search(source_url)
    if match is not None:
        return f"douban_{match.group(1)}"
    return legacy_cache_key(source_url)


class BoundedCacheStore:
    def __init__(
        self,
        repository: VideoCacheRepository | None,
        *,
        max_size_bytes: int,
        ttl_seconds: int,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._max_size_bytes = max(1, max_size_bytes)
        self._ttl = timedelta(seconds=max(1, ttl_seconds))
        self._clock = clock

    @property
    def supported(self) -> bool:
        return self._repository is not None

    @property
    def max_size_bytes(self) -> int:
        return self._max_size_bytes

    def put(
        self,
        source_url: str,
        payload: bytes,
        *,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> CacheEntry:
        repository = self._require_repository()
        now = self._clock()
        entry = CacheEntry(
            key=cache_key_for_url(source_url),
            source_url=source_url,
            content_type=content_type,
            payload=payload,
            size_bytes=len(payload),
            schema_version=VIDEO_CACHE_SCHEMA_VERSION,
            created_at=now,
            expires_at=now + self._ttl,
        )
        repository.upsert_entry(entry)
        LOGGER.debug(
            "video cache stored key=%s size_bytes=%s",
            entry.key,
            entry.size_bytes,
        )
        return entry

    def get(self, source_url: str) -> CacheEntry | None:
        repository = self._require_repository()
        entry = repository.get_entry(cache_key_for_url(source_url))
        if entry is None or entry.schema_version < VIDEO_CACHE_SCHEMA_VERSION:
            return None
        if entry.expires_at is None or entry.expires_at <= self._clock():
            return None
        return entry

    def delete(self, source_url: str) -> bool:
        repository = self._require_repository()
        return repository.delete_entry(cache_key_for_url(source_url))

    def stats(self) -> CacheStats:
        repository = self._require_repository()
        total_size, entry_count = repository.aggregate()
        return CacheStats(
            total_size=total_size,
            file_count=entry_count,
            max_size=self._max_size_bytes,
        )

    def cleanup_expired(self) -> int:
        repository = self._require_repository()
        now = self._clock()
        removed = 0
        freed_bytes = 0
        for header in repository.list_headers():
            try:
                if not _is_expired(header, now):
                    continue
                if repository.delete_entry(header.key):
                    removed += 1
                    freed_bytes += header.size_bytes
            except (StorageEntryCorrupt, sqlite3.Error):
                LOGGER.warning(
                    "video cache expiry skipped entry key=%s",
                    header.key,
                    exc_info=True,
                )

        if removed:
            LOGGER.info(
                "video cache expiry removed=%s freed_bytes=%s",
                removed,
                freed_bytes,
            )
        return removed

    def validate_size(self) -> int:
        repository = self._require_repository()
        total_size, _ = repository.aggregate()
        if total_size <= self._max_size_bytes:
            return 0

        evictable: list[tuple[datetime, CacheEntryHeader]] = []
        for header in repository.list_headers():
            if header.created_at is None:
                LOGGER.warning(
                    "video cache eviction skipped entry key=%s reason=unreadable created_at",
                    header.key,
                )
                continue
            evictable.append((header.created_at, header))
        evictable.sort(key=lambda item: (item[0], item[1].key))

        # Triggered above the ceiling; evicts until strictly below it.
        evicted = 0
        for _, header in evictable:
            if total_size < self._max_size_bytes:
                break
            try:
                deleted = repository.delete_entry(header.key)
            except sqlite3.Error:
                LOGGER.warning(
                    "video cache eviction failed key=%s",
                    header.key,
                    exc_info=True,
                )
                continue
            if deleted:
                total_size -= header.size_bytes
                evicted += 1

        log_method = LOGGER.info if total_size <= self._max_size_bytes else LOGGER.warning
        log_method(
            "video cache size validated evicted=%s total_size=%s max_size=%s",
            evicted,
            total_size,
            self._max_size_bytes,
        )
        return evicted

    def migrate_legacy(self) -> int:
        repository = self._require_repository()
        migrated = 0
        for header in repository.list_headers(max_schema_version=VIDEO_CACHE_SCHEMA_VERSION - 1):
            try:
                self._migrate_entry(repository, header)
            except (StorageEntryCorrupt, sqlite3.Error):
                LOGGER.warning(
                    "video cache migration skipped entry key=%s",
                    header.key,
                    exc_info=True,
                )
                continue
            migrated += 1

        if migrated:
            LOGGER.info("video cache migration finished migrated=%s", migrated)
        return migrated

    def _migrate_entry(self, repository: VideoCacheRepository, header: CacheEntryHeader) -> None:
        legacy = repository.get_entry(header.key)
        if legacy is None:
            raise StorageEntryCorrupt(header.key, "payload or created_at missing")

        new_key = cache_key_for_url(legacy.source_url)
        if new_key != legacy.key:
            existing = repository.get_entry(new_key)
            if existing is not None and existing.schema_version >= VIDEO_CACHE_SCHEMA_VERSION:
                # A fresher current-layout copy already exists.
                repository.delete_entry(legacy.key)
                return

        expires_at = legacy.expires_at
        if expires_at is None or expires_at <= legacy.created_at:
            expires_at = legacy.created_at + self._ttl

        repository.replace_entry(
            old_key=legacy.key,
            entry=CacheEntry(
                key=new_key,
                source_url=legacy.source_url,
                content_type=legacy.content_type,
                payload=legacy.payload,
                size_bytes=len(legacy.payload),
                schema_version=VIDEO_CACHE_SCHEMA_VERSION,
                created_at=legacy.created_at,
                expires_at=expires_at,
            ),
        )
        LOGGER.debug("video cache migrated entry old_key=%s new_key=%s", legacy.key, new_key)

    def _require_repository(self) -> VideoCacheRepository:
        if self._repository is None:
            raise StorageUnsupported("video cache backend does not support size queries")
        return self._repository


def _is_expired(header: CacheEntryHeader, now: datetime) -> bool:
    if header.schema_version < VIDEO_CACHE_SCHEMA_VERSION:
        # Legacy rows carry no expiry until migrated.
        return False
    if header.expires_at is None:
        raise StorageEntryCorrupt(header.key, f"unreadable expires_at={header.raw_expires_at!r}")
    return header.expires_at <= now
