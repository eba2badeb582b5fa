from __future__ import annotations

import hashlib
import io
import logging
import threading
import time
import zipfile
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from http.client import HTTPException
from typing import Literal, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from vodkeep.app.repositories.common import utc_now
from vodkeep.app.services.object_store import ObjectStore
from vodkeep.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("vodkeep.artifact")

ARTIFACT_OBJECT_NAME = "spider.jar"
ARTIFACT_CONTENT_TYPE = "application/java-archive"
FALLBACK_SOURCE = "fallback"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
_GITHUB_USER_AGENT = "curl/7.68.0"
_NON_RETRYABLE_STATUSES: frozenset[int] = frozenset({403, 404})

SourceTier = Literal["memory", "object_store", "override", "remote", "embedded_fallback"]
_MEMOIZED_TIERS: frozenset[str] = frozenset({"object_store", "override", "remote"})
_PERSISTED_TIERS: frozenset[str] = frozenset({"override", "remote"})


class TierUnavailable(Exception):
    def __init__(self, tier: str, reason: str) -> None:
        super().__init__(f"{tier}: {reason}")
        self.tier = tier
        self.reason = reason


class ArtifactInvalid(TierUnavailable):
    pass


class UpstreamTimeout(TierUnavailable):
    pass


@dataclass(frozen=True)
class ResourceRecord:
    payload: bytes
    size: int
    source_tier: SourceTier
    source: str
    checksum: str
    success: bool
    cached: bool
    resolved_at: datetime
    tried: int = 0

    def metadata(self) -> dict[str, object]:
        return {
            "source_tier": self.source_tier,
            "source": self.source,
            "size": self.size,
            "checksum": self.checksum,
            "success": self.success,
            "cached": self.cached,
            "resolved_at": self.resolved_at.isoformat(),
            "tried": self.tried,
        }


@dataclass
class ResolveContext:
    force_refresh: bool
    override_url: str | None
    now: datetime
    tried: int = 0


class ResolverTier(Protocol):
    name: SourceTier

    def try_resolve(self, ctx: ResolveContext) -> ResourceRecord | None:
        """Return a record, None when the tier does not apply, or raise TierUnavailable."""
        ...


@dataclass(frozen=True)
class ArtifactValidator:
    min_bytes: int
    max_bytes: int
    magic: bytes | None = b"PK"

    def validate(self, payload: bytes, *, tier: str) -> None:
        size = len(payload)
        if size < self.min_bytes:
            raise ArtifactInvalid(tier, f"payload too small: {size} bytes")
        if size > self.max_bytes:
            raise ArtifactInvalid(tier, f"payload too large: {size} bytes")
        if self.magic and not payload.startswith(self.magic):
            raise ArtifactInvalid(tier, "payload does not carry the expected file header")


def build_record(
    payload: bytes,
    *,
    tier: SourceTier,
    source: str,
    now: datetime,
    tried: int = 0,
) -> ResourceRecord:
    return ResourceRecord(
        payload=payload,
        size=len(payload),
        source_tier=tier,
        source=source,
        checksum=hashlib.md5(payload).hexdigest(),
        success=tier != "embedded_fallback",
        cached=False,
        resolved_at=now,
        tried=tried,
    )


class MemoryTier:
    name: SourceTier = "memory"

    def __init__(self, *, ttl_seconds: int) -> None:
        self._ttl = timedelta(seconds=max(0, ttl_seconds))
        self._lock = threading.Lock()
        self._record: ResourceRecord | None = None

    def try_resolve(self, ctx: ResolveContext) -> ResourceRecord | None:
        if ctx.force_refresh:
            return None
        with self._lock:
            record = self._record
        if record is None or ctx.now - record.resolved_at >= self._ttl:
            return None
        return replace(record, cached=True, source_tier="memory")

    def store(self, record: ResourceRecord) -> None:
        with self._lock:
            self._record = replace(record, cached=False)


class ObjectStoreTier:
    name: SourceTier = "object_store"

    def __init__(self, store: ObjectStore, *, object_name: str = ARTIFACT_OBJECT_NAME) -> None:
        self._store = store
        self._object_name = object_name

    def try_resolve(self, ctx: ResolveContext) -> ResourceRecord | None:
        try:
            payload = self._store.get(self._object_name)
        except OSError as exc:
            raise TierUnavailable(self.name, f"object store read failed: {exc}") from exc
        if not payload:
            raise TierUnavailable(self.name, f"{self._object_name} not present")
        return build_record(payload, tier=self.name, source=self._object_name, now=ctx.now)


class OverrideTier:
    name: SourceTier = "override"

    def __init__(self, *, validator: ArtifactValidator, timeout_seconds: float) -> None:
        self._validator = validator
        self._timeout_seconds = timeout_seconds

    def try_resolve(self, ctx: ResolveContext) -> ResourceRecord | None:
        url = ctx.override_url
        if url is None:
            return None
        payload = _fetch_artifact(
            url,
            tier=self.name,
            timeout_seconds=self._timeout_seconds,
            retries=0,
            max_bytes=self._validator.max_bytes,
        )
        self._validator.validate(payload, tier=self.name)
        return build_record(payload, tier=self.name, source=url, now=ctx.now, tried=1)


class RemoteCandidatesTier:
    name: SourceTier = "remote"

    def __init__(
        self,
        candidate_urls: Sequence[str],
        *,
        validator: ArtifactValidator,
        timeout_seconds: float,
        retries: int,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._candidate_urls = tuple(candidate_urls)
        self._validator = validator
        self._timeout_seconds = timeout_seconds
        self._retries = max(0, retries)
        self._sleep = sleep

    @property
    def candidate_urls(self) -> tuple[str, ...]:
        return self._candidate_urls

    def try_resolve(self, ctx: ResolveContext) -> ResourceRecord | None:
        for url in self._candidate_urls:
            ctx.tried += 1
            try:
                payload = _fetch_artifact(
                    url,
                    tier=self.name,
                    timeout_seconds=self._timeout_seconds,
                    retries=self._retries,
                    max_bytes=self._validator.max_bytes,
                    sleep=self._sleep,
                )
                self._validator.validate(payload, tier=self.name)
            except TierUnavailable as exc:
                LOGGER.warning("artifact candidate rejected url=%s reason=%s", url, exc.reason)
                continue
            LOGGER.info("artifact fetched url=%s size_bytes=%s", url, len(payload))
            return build_record(payload, tier=self.name, source=url, now=ctx.now, tried=ctx.tried)
        raise TierUnavailable(self.name, f"all {len(self._candidate_urls)} candidates failed")


class EmbeddedFallbackTier:
    name: SourceTier = "embedded_fallback"

    def __init__(self, payload: bytes | None = None) -> None:
        self._payload = payload if payload is not None else build_fallback_artifact()

    def try_resolve(self, ctx: ResolveContext) -> ResourceRecord | None:
        return self.record(ctx)

    def record(self, ctx: ResolveContext) -> ResourceRecord:
        return build_record(
            self._payload,
            tier=self.name,
            source=FALLBACK_SOURCE,
            now=ctx.now,
            tried=ctx.tried,
        )


class ArtifactResolver:
    """Resolves the spider artifact by walking an ordered list of tiers.

    The first tier to yield a record wins. Object-store, override and remote
    records are memoized; override and remote records are also written back to
    the object store on a background thread. The embedded fallback is never
    memoized, so the next call retries the live tiers.
    """

    def __init__(
        self,
        tiers: Sequence[ResolverTier],
        *,
        memory: MemoryTier,
        object_store: ObjectStore | None = None,
        telemetry: TelemetryClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        fallback = tiers[-1] if tiers else None
        if not isinstance(fallback, EmbeddedFallbackTier):
            raise ValueError("artifact tiers must end with the embedded fallback")
        self._tiers = tuple(tiers)
        self._fallback = fallback
        self._memory = memory
        self._object_store = object_store
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock
        self._last_record: ResourceRecord | None = None
        self._status_lock = threading.Lock()
        self._persist_executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="vodkeep-artifact-persist",
        )
        self._pending_writes: list[Future[None]] = []

    @property
    def tier_names(self) -> tuple[str, ...]:
        return tuple(tier.name for tier in self._tiers)

    def candidates(self) -> list[str]:
        urls: list[str] = []
        for tier in self._tiers:
            if isinstance(tier, RemoteCandidatesTier):
                urls.extend(tier.candidate_urls)
        return urls

    def resolve(self, force_refresh: bool = False, override_url: str | None = None) -> ResourceRecord:
        started_at = time.perf_counter()
        ctx = ResolveContext(
            force_refresh=force_refresh,
            override_url=_normalize_override_url(override_url),
            now=self._clock(),
        )
        record = self._walk_tiers(ctx)
        self._remember(record)

        self._telemetry.emit(
            "artifact.resolve.finish",
            tier=record.source_tier,
            source=record.source,
            success=record.success,
            cached=record.cached,
            size=record.size,
            tried=record.tried,
            force_refresh=force_refresh,
            duration_ms=int((time.perf_counter() - started_at) * 1000),
        )
        if not record.success:
            LOGGER.warning("serving embedded fallback artifact tried=%s", record.tried)
        return record

    def status(self) -> dict[str, object] | None:
        with self._status_lock:
            record = self._last_record
        return record.metadata() if record is not None else None

    def wait_for_pending_writes(self, timeout: float | None = None) -> None:
        with self._status_lock:
            pending = list(self._pending_writes)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        self._persist_executor.shutdown(wait=True)

    def _walk_tiers(self, ctx: ResolveContext) -> ResourceRecord:
        for tier in self._tiers[:-1]:
            try:
                record = tier.try_resolve(ctx)
            except TierUnavailable as exc:
                LOGGER.info("artifact tier unavailable tier=%s reason=%s", exc.tier, exc.reason)
                continue
            except Exception:
                LOGGER.exception("artifact tier failed unexpectedly tier=%s", tier.name)
                continue
            if record is not None:
                return record
        return self._fallback.record(ctx)

    def _remember(self, record: ResourceRecord) -> None:
        with self._status_lock:
            self._last_record = record
        if record.source_tier in _MEMOIZED_TIERS:
            self._memory.store(record)
        if record.source_tier in _PERSISTED_TIERS and self._object_store is not None:
            future = self._persist_executor.submit(self._persist, record)
            with self._status_lock:
                self._pending_writes = [f for f in self._pending_writes if not f.done()]
                self._pending_writes.append(future)

    def _persist(self, record: ResourceRecord) -> None:
        assert self._object_store is not None
        try:
            self._object_store.put(ARTIFACT_OBJECT_NAME, record.payload)
        except Exception:
            LOGGER.warning(
                "artifact object store write failed source=%s",
                record.source,
                exc_info=True,
            )
            return
        LOGGER.info(
            "artifact persisted to object store checksum=%s source=%s",
            record.checksum,
            record.source,
        )


def build_artifact_resolver(
    *,
    candidate_urls: Sequence[str],
    memory_ttl_seconds: int,
    fetch_timeout_seconds: float,
    fetch_retries: int,
    min_bytes: int,
    max_bytes: int,
    required_magic: str | None,
    object_store: ObjectStore | None,
    telemetry: TelemetryClient | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], datetime] = utc_now,
) -> ArtifactResolver:
    validator = ArtifactValidator(
        min_bytes=min_bytes,
        max_bytes=max_bytes,
        magic=required_magic.encode("latin-1") if required_magic else None,
    )
    memory = MemoryTier(ttl_seconds=memory_ttl_seconds)
    tiers: list[ResolverTier] = [memory]
    if object_store is not None:
        tiers.append(ObjectStoreTier(object_store))
    tiers.append(OverrideTier(validator=validator, timeout_seconds=fetch_timeout_seconds))
    tiers.append(
        RemoteCandidatesTier(
            candidate_urls,
            validator=validator,
            timeout_seconds=fetch_timeout_seconds,
            retries=fetch_retries,
            sleep=sleep,
        )
    )
    tiers.append(EmbeddedFallbackTier())
    return ArtifactResolver(
        tiers,
        memory=memory,
        object_store=object_store,
        telemetry=telemetry,
        clock=clock,
    )


def build_fallback_artifact() -> bytes:
    """Minimal loadable jar: a manifest and nothing else."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        manifest = zipfile.ZipInfo("META-INF/MANIFEST.MF", date_time=(1980, 1, 1, 0, 0, 0))
        archive.writestr(manifest, "Manifest-Version: 1.0\nCreated-By: vodkeep\n\n")
    return buffer.getvalue()


def _normalize_override_url(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    if not stripped:
        return None
    return stripped


def _request_headers(url: str) -> dict[str, str]:
    host = (urlparse(url).hostname or "").lower()
    user_agent = _GITHUB_USER_AGENT if "github" in host else DEFAULT_USER_AGENT
    return {
        "Accept": "*/*",
        "Accept-Encoding": "identity",
        "Cache-Control": "no-cache",
        "User-Agent": user_agent,
    }


def _download(url: str, *, timeout_seconds: float, max_bytes: int) -> bytes:
    """Read at most one byte past `max_bytes` so oversize bodies fail validation."""
    request = Request(url, headers=_request_headers(url), method="GET")
    with urlopen(request, timeout=timeout_seconds) as response:
        declared = _to_optional_int(response.headers.get("Content-Length"))
        if declared is not None and declared > max_bytes:
            raise ArtifactInvalid("download", f"declared size {declared} exceeds {max_bytes} bytes")
        return response.read(max_bytes + 1)


def _fetch_artifact(
    url: str,
    *,
    tier: str,
    timeout_seconds: float,
    retries: int,
    max_bytes: int,
    sleep: Callable[[float], None] = time.sleep,
) -> bytes:
    last_error: TierUnavailable | None = None
    for attempt in range(retries + 1):
        if attempt > 0:
            sleep(float(attempt))
        try:
            return _download(url, timeout_seconds=timeout_seconds, max_bytes=max_bytes)
        except ArtifactInvalid as exc:
            raise ArtifactInvalid(tier, exc.reason) from exc
        except HTTPError as exc:
            last_error = TierUnavailable(tier, f"HTTP {exc.code} from {url}")
            if exc.code in _NON_RETRYABLE_STATUSES:
                break
        except TimeoutError as exc:
            last_error = UpstreamTimeout(tier, f"timeout after {timeout_seconds}s from {url}")
            last_error.__cause__ = exc
        except URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                last_error = UpstreamTimeout(tier, f"timeout after {timeout_seconds}s from {url}")
            else:
                last_error = TierUnavailable(tier, f"{exc.reason} from {url}")
        except (OSError, HTTPException) as exc:
            # Truncated bodies and malformed status lines are transient.
            last_error = TierUnavailable(tier, f"{str(exc) or type(exc).__name__} from {url}")
        except ValueError as exc:
            last_error = TierUnavailable(tier, f"{exc}: {url}")
            break

    assert last_error is not None
    raise last_error


def _to_optional_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None
