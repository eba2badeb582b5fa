from __future__ import annotations

import gzip
import io
import logging
import re
import threading
import xml.etree.ElementTree as ET
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from http.client import HTTPException
from urllib.request import Request, urlopen

LOGGER = logging.getLogger("vodkeep.live")
DEFAULT_GROUP = "Ungrouped"

_TVG_URL_PATTERN = re.compile(r'(?:x-tvg-url|url-tvg)="([^"]*)"')
_ATTRIBUTE_PATTERNS: dict[str, re.Pattern[str]] = {
    "tvg_id": re.compile(r'tvg-id="([^"]*)"'),
    "tvg_name": re.compile(r'tvg-name="([^"]*)"'),
    "logo": re.compile(r'tvg-logo="([^"]*)"'),
    "group": re.compile(r'group-title="([^"]*)"'),
}
_TITLE_PATTERN = re.compile(r",([^,]*)$")
_NAME_PREFIX_PATTERNS = (re.compile(r"^\[.*?\]\s*"), re.compile(r"^\d+\s+"))
_QUALITY_SUFFIX_PATTERN = re.compile(r"\s*(HD|4K|FHD|UHD)\s*$", re.IGNORECASE)
_QUALITY_INFIX_PATTERN = re.compile(r"\s+(HD|4K|FHD|UHD)\s+", re.IGNORECASE)
_WHITESPACE_PATTERN = re.compile(r"\s+")
_GZIP_MAGIC = b"\x1f\x8b"


@dataclass(frozen=True)
class LiveSource:
    url: str
    user_agent: str | None = None
    epg_url: str | None = None


@dataclass(frozen=True)
class LiveChannel:
    id: str
    tvg_id: str
    name: str
    logo: str
    group: str
    url: str

    @property
    def guide_key(self) -> str:
        return self.tvg_id or self.name


@dataclass(frozen=True)
class EpgProgramme:
    start: str
    end: str
    title: str


@dataclass(frozen=True)
class EpgGuide:
    programmes: dict[str, list[EpgProgramme]] = field(default_factory=dict)
    logos: dict[str, str] = field(default_factory=dict)
    channel_ids_by_name: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LivePlaylist:
    source_key: str
    epg_url: str
    channels: tuple[LiveChannel, ...]
    epgs: Mapping[str, tuple[EpgProgramme, ...]] = field(default_factory=dict)
    epg_logos: Mapping[str, str] = field(default_factory=dict)

    @property
    def channel_number(self) -> int:
        return len(self.channels)


def parse_m3u(source_key: str, content: str) -> LivePlaylist:
    lines = [line.strip() for line in content.splitlines() if line.strip()]
    epg_url = ""
    channels: list[LiveChannel] = []

    index = 0
    while index < len(lines):
        line = lines[index]
        index += 1
        if line.startswith("#EXTM3U"):
            match = _TVG_URL_PATTERN.search(line)
            epg_url = match.group(1).split(",")[0].strip() if match else ""
            continue
        if not line.startswith("#EXTINF:"):
            continue

        attributes = {
            name: (match.group(1) if (match := pattern.search(line)) else "")
            for name, pattern in _ATTRIBUTE_PATTERNS.items()
        }
        title_match = _TITLE_PATTERN.search(line)
        title = title_match.group(1).strip() if title_match else ""
        name = title or attributes["tvg_name"]

        if index >= len(lines) or lines[index].startswith("#"):
            continue
        url = lines[index]
        index += 1
        if not name:
            continue
        channels.append(
            LiveChannel(
                id=f"{source_key}-{len(channels)}",
                tvg_id=attributes["tvg_id"],
                name=name,
                logo=attributes["logo"],
                group=attributes["group"] or DEFAULT_GROUP,
                url=url,
            )
        )

    return LivePlaylist(source_key=source_key, epg_url=epg_url, channels=tuple(channels))


def normalize_channel_name(name: str) -> str:
    """Fold a display name for matching: drops `[TW]`/`01 ` prefixes and HD/4K tags."""
    normalized = name
    for pattern in _NAME_PREFIX_PATTERNS:
        normalized = pattern.sub("", normalized)
    normalized = _QUALITY_SUFFIX_PATTERN.sub("", normalized)
    normalized = _QUALITY_INFIX_PATTERN.sub(" ", normalized)
    return _WHITESPACE_PATTERN.sub(" ", normalized).strip().lower()


def parse_xmltv(content: bytes) -> EpgGuide:
    """Collect programmes, icons and display names from an XMLTV document.

    Elements are cleared as they close, so large guides are not held as a tree.
    A malformed document keeps whatever was read before the error.
    """
    if content.startswith(_GZIP_MAGIC):
        content = gzip.decompress(content)

    guide = EpgGuide()
    try:
        for _, element in ET.iterparse(io.BytesIO(content), events=("end",)):
            if element.tag == "channel":
                _collect_channel(guide, element)
                element.clear()
            elif element.tag == "programme":
                _collect_programme(guide, element)
                element.clear()
    except ET.ParseError as exc:
        LOGGER.warning("xmltv guide truncated error=%s", exc)
    return guide


def _collect_channel(guide: EpgGuide, element: ET.Element) -> None:
    channel_id = element.get("id") or ""
    if not channel_id:
        return
    for display_name in element.findall("display-name"):
        if display_name.text:
            guide.channel_ids_by_name[normalize_channel_name(display_name.text)] = channel_id
    icon = element.find("icon")
    if icon is not None and icon.get("src"):
        guide.logos[channel_id] = icon.get("src", "")


def _collect_programme(guide: EpgGuide, element: ET.Element) -> None:
    channel_id = element.get("channel") or ""
    start = element.get("start") or ""
    end = element.get("stop") or ""
    if not (channel_id and start and end):
        return
    guide.programmes.setdefault(channel_id, []).append(
        EpgProgramme(start=start, end=end, title=element.findtext("title") or "")
    )


def match_guide(
    channels: tuple[LiveChannel, ...],
    guide: EpgGuide,
) -> tuple[dict[str, tuple[EpgProgramme, ...]], dict[str, str]]:
    """Map each channel's guide key to programmes by tvg-id, then by normalized name."""
    epgs: dict[str, tuple[EpgProgramme, ...]] = {}
    logos: dict[str, str] = {}
    for channel in channels:
        channel_id = channel.tvg_id if channel.tvg_id in guide.programmes else None
        if channel_id is None:
            channel_id = guide.channel_ids_by_name.get(normalize_channel_name(channel.name))
        if channel_id is None or channel_id not in guide.programmes:
            continue
        key = channel.guide_key
        epgs[key] = tuple(guide.programmes[channel_id])
        logo = guide.logos.get(channel_id)
        if logo and key not in logos:
            logos[key] = logo
    return epgs, logos


class LiveChannelService:
    def __init__(
        self,
        sources: Mapping[str, LiveSource | str],
        *,
        user_agent: str,
        timeout_seconds: float,
    ) -> None:
        self._sources = {
            key: source if isinstance(source, LiveSource) else LiveSource(url=source)
            for key, source in sources.items()
        }
        self._user_agent = user_agent
        self._timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self._playlists: dict[str, LivePlaylist] = {}

    def get_playlist(self, source_key: str) -> LivePlaylist | None:
        with self._lock:
            return self._playlists.get(source_key)

    def refresh_source(self, source_key: str) -> int:
        source = self._sources[source_key]
        user_agent = source.user_agent or self._user_agent
        content = _fetch_text(source.url, user_agent=user_agent, timeout_seconds=self._timeout_seconds)
        playlist = parse_m3u(source_key, content)
        epg_url = source.epg_url or playlist.epg_url
        guide = self._load_guide(source_key, epg_url, user_agent=user_agent)
        epgs, epg_logos = match_guide(playlist.channels, guide)
        playlist = replace(playlist, epg_url=epg_url, epgs=epgs, epg_logos=epg_logos)
        with self._lock:
            self._playlists[source_key] = playlist
        LOGGER.info(
            "live source refreshed key=%s channels=%s epg_channels=%s",
            source_key,
            playlist.channel_number,
            len(epgs),
        )
        return playlist.channel_number

    def refresh_all(self) -> dict[str, int]:
        """Refresh every configured source; a failed source reports 0 channels."""
        counts: dict[str, int] = {}
        for source_key in self._sources:
            try:
                counts[source_key] = self.refresh_source(source_key)
            except (OSError, ValueError, HTTPException):
                LOGGER.warning("live source refresh failed key=%s", source_key, exc_info=True)
                with self._lock:
                    self._playlists.pop(source_key, None)
                counts[source_key] = 0
        return counts

    def _load_guide(self, source_key: str, epg_url: str, *, user_agent: str) -> EpgGuide:
        if not epg_url:
            return EpgGuide()
        try:
            content = _fetch_bytes(epg_url, user_agent=user_agent, timeout_seconds=self._timeout_seconds)
            return parse_xmltv(content)
        except (OSError, ValueError, HTTPException, EOFError):
            # The playlist stays usable without a guide.
            LOGGER.warning(
                "live epg fetch failed key=%s epg_url=%s",
                source_key,
                epg_url,
                exc_info=True,
            )
            return EpgGuide()


def _fetch_bytes(url: str, *, user_agent: str, timeout_seconds: float) -> bytes:
    request = Request(url, headers={"User-Agent": user_agent})
    with urlopen(request, timeout=timeout_seconds) as response:
        return response.read()


def _fetch_text(url: str, *, user_agent: str, timeout_seconds: float) -> str:
    return _fetch_bytes(url, user_agent=user_agent, timeout_seconds=timeout_seconds).decode("utf-8")
