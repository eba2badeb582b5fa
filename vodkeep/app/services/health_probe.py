from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from datetime import datetime
from http.client import HTTPException
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from vodkeep.app.repositories.common import utc_now
from vodkeep.app.services.artifact_resolver import DEFAULT_USER_AGENT

LOGGER = logging.getLogger("vodkeep.health_probe")
DEFAULT_PROBE_TIMEOUT_SECONDS = 10.0
TIMEOUT_ERROR = "timeout"


@dataclass(frozen=True)
class HeadResponse:
    status_code: int
    headers: Mapping[str, str]


@dataclass(frozen=True)
class ProbeResult:
    url: str
    accessible: bool
    checked_at: str
    status_code: int | None = None
    content_type: str | None = None
    content_length: int | None = None
    last_modified: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def strip_url_metadata(url: str) -> str:
    """Drop the `;md5`-style suffix clients append to artifact URLs."""
    return url.split(";", 1)[0].strip()


class HealthProbe:
    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._clock = clock

    def probe(self, url: str) -> ProbeResult:
        clean_url = strip_url_metadata(url)
        checked_at = self._clock().isoformat()
        try:
            response = _head(clean_url, timeout_seconds=self._timeout_seconds)
        except HTTPError as exc:
            headers = exc.headers if exc.headers is not None else {}
            return _result_from_response(
                clean_url,
                HeadResponse(status_code=exc.code, headers=headers),
                checked_at=checked_at,
            )
        except TimeoutError:
            return self._failure(clean_url, TIMEOUT_ERROR, checked_at=checked_at)
        except URLError as exc:
            reason = exc.reason
            message = TIMEOUT_ERROR if isinstance(reason, TimeoutError) else str(reason)
            return self._failure(clean_url, message, checked_at=checked_at)
        except (OSError, ValueError, HTTPException) as exc:
            return self._failure(clean_url, str(exc) or type(exc).__name__, checked_at=checked_at)
        return _result_from_response(clean_url, response, checked_at=checked_at)

    def _failure(self, url: str, message: str, *, checked_at: str) -> ProbeResult:
        LOGGER.info("health probe failed url=%s error=%s", url, message)
        return ProbeResult(url=url, accessible=False, checked_at=checked_at, error=message)


def _head(url: str, *, timeout_seconds: float) -> HeadResponse:
    request = Request(url, headers={"User-Agent": DEFAULT_USER_AGENT}, method="HEAD")
    with urlopen(request, timeout=timeout_seconds) as response:
        return HeadResponse(
            status_code=int(response.status),
            headers={key.lower(): value for key, value in response.headers.items()},
        )


def _result_from_response(url: str, response: HeadResponse, *, checked_at: str) -> ProbeResult:
    headers = {str(key).lower(): str(value) for key, value in response.headers.items()}
    return ProbeResult(
        url=url,
        accessible=200 <= response.status_code < 300,
        checked_at=checked_at,
        status_code=response.status_code,
        content_type=headers.get("content-type"),
        content_length=_to_optional_int(headers.get("content-length")),
        last_modified=headers.get("last-modified"),
    )


def _to_optional_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None
