from __future__ import annotations

import gzip
from http.client import IncompleteRead
from urllib.error import URLError

import pytest

from vodkeep.app.services import live_channel_service as live_module
from vodkeep.app.services.live_channel_service import (
    DEFAULT_GROUP,
    EpgProgramme,
    LiveChannelService,
    LiveSource,
    normalize_channel_name,
    parse_m3u,
    parse_xmltv,
)

PLAYLIST = """#EXTM3U x-tvg-url="https://epg.example/e.xml,https://epg.example/backup.xml"
#EXTINF:-1 tvg-id="cctv1" tvg-name="CCTV1" tvg-logo="https://logo.example/1.png" group-title="News",CCTV-1 综合
https://live.example/cctv1.m3u8
#EXTINF:-1 tvg-name="Local Sports",
https://live.example/sports.m3u8
#EXTINF:-1 tvg-id="orphan",
#EXTINF:-1 tvg-id="empty",
https://live.example/empty.m3u8
"""

GUIDE = b"""<?xml version="1.0" encoding="UTF-8"?>
<tv>
  <channel id="cctv1">
    <display-name>CCTV-1</display-name>
    <icon src="https://epg.example/cctv1.png"/>
  </channel>
  <channel id="sports-hd"><display-name>[HK] Local Sports HD</display-name></channel>
  <programme channel="cctv1" start="20260301080000 +0800" stop="20260301090000 +0800">
    <title lang="zh">Morning News</title>
  </programme>
  <programme channel="cctv1" start="20260301090000 +0800" stop="20260301100000 +0800">
    <title>Weather</title>
  </programme>
  <programme channel="sports-hd" start="20260301080000 +0800" stop="20260301100000 +0800"><title>Match Day</title></programme>
  <programme channel="cctv1" start="" stop="20260301110000 +0800"><title>No start</title></programme>
</tv>
"""


class _FakeFetch:
    def __init__(self, pages: dict[str, bytes | Exception]) -> None:
        self._pages = pages
        self.calls: list[tuple[str, str]] = []

    def __call__(self, url: str, *, user_agent: str, timeout_seconds: float) -> bytes:
        _ = timeout_seconds
        self.calls.append((url, user_agent))
        page = self._pages.get(url)
        if page is None:
            raise URLError("not found")
        if isinstance(page, Exception):
            raise page
        return page


def _install(monkeypatch: pytest.MonkeyPatch, pages: dict[str, bytes | Exception]) -> _FakeFetch:
    fetch = _FakeFetch(pages)
    monkeypatch.setattr(live_module, "_fetch_bytes", fetch)
    return fetch


def test_parse_m3u_extracts_channels_and_epg() -> None:
    playlist = parse_m3u("iptv", PLAYLIST)

    assert playlist.epg_url == "https://epg.example/e.xml"
    assert playlist.channel_number == 2
    first, second = playlist.channels
    assert first.id == "iptv-0"
    assert first.tvg_id == "cctv1"
    assert first.name == "CCTV-1 综合"
    assert first.logo == "https://logo.example/1.png"
    assert first.group == "News"
    assert first.url == "https://live.example/cctv1.m3u8"
    assert second.name == "Local Sports"
    assert second.group == DEFAULT_GROUP


def test_normalize_channel_name_drops_prefixes_and_quality_tags() -> None:
    assert normalize_channel_name("[TW-I] Channel One HD") == "channel one"
    assert normalize_channel_name("01  News  4K  Live") == "news live"
    assert normalize_channel_name("Movies (a)") == "movies (a)"


def test_parse_xmltv_collects_programmes_logos_and_names() -> None:
    guide = parse_xmltv(GUIDE)

    assert guide.programmes["cctv1"] == [
        EpgProgramme(start="20260301080000 +0800", end="20260301090000 +0800", title="Morning News"),
        EpgProgramme(start="20260301090000 +0800", end="20260301100000 +0800", title="Weather"),
    ]
    assert guide.logos == {"cctv1": "https://epg.example/cctv1.png"}
    assert guide.channel_ids_by_name["local sports"] == "sports-hd"


def test_parse_xmltv_accepts_gzip_and_keeps_partial_documents() -> None:
    assert "cctv1" in parse_xmltv(gzip.compress(GUIDE)).programmes

    truncated = GUIDE[: GUIDE.index(b'<programme channel="sports-hd"')]
    guide = parse_xmltv(truncated)
    assert len(guide.programmes["cctv1"]) == 2
    assert "sports-hd" not in guide.programmes


def test_refresh_source_matches_guide_by_tvg_id_then_name(monkeypatch: pytest.MonkeyPatch) -> None:
    fetch = _install(
        monkeypatch,
        {
            "https://live.example/iptv.m3u": PLAYLIST.encode("utf-8"),
            "https://epg.example/e.xml": GUIDE,
        },
    )
    service = LiveChannelService(
        {"iptv": "https://live.example/iptv.m3u"},
        user_agent="AptvPlayer/1.4.10",
        timeout_seconds=5.0,
    )

    assert service.refresh_source("iptv") == 2

    playlist = service.get_playlist("iptv")
    assert playlist is not None
    assert playlist.epg_url == "https://epg.example/e.xml"
    assert [p.title for p in playlist.epgs["cctv1"]] == ["Morning News", "Weather"]
    assert [p.title for p in playlist.epgs["Local Sports"]] == ["Match Day"]
    assert playlist.epg_logos == {"cctv1": "https://epg.example/cctv1.png"}
    assert [url for url, _ in fetch.calls] == [
        "https://live.example/iptv.m3u",
        "https://epg.example/e.xml",
    ]


def test_source_overrides_user_agent_and_guide_url(monkeypatch: pytest.MonkeyPatch) -> None:
    fetch = _install(
        monkeypatch,
        {
            "https://live.example/iptv.m3u": PLAYLIST.encode("utf-8"),
            "https://guide.example/custom.xml": GUIDE,
        },
    )
    service = LiveChannelService(
        {
            "iptv": LiveSource(
                url="https://live.example/iptv.m3u",
                user_agent="okhttp/4.1",
                epg_url="https://guide.example/custom.xml",
            )
        },
        user_agent="AptvPlayer/1.4.10",
        timeout_seconds=5.0,
    )

    service.refresh_source("iptv")

    assert fetch.calls == [
        ("https://live.example/iptv.m3u", "okhttp/4.1"),
        ("https://guide.example/custom.xml", "okhttp/4.1"),
    ]
    playlist = service.get_playlist("iptv")
    assert playlist is not None
    assert playlist.epg_url == "https://guide.example/custom.xml"
    assert "cctv1" in playlist.epgs


def test_guide_failure_keeps_channels(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(
        monkeypatch,
        {
            "https://live.example/iptv.m3u": PLAYLIST.encode("utf-8"),
            "https://epg.example/e.xml": IncompleteRead(b"<tv>", 10_000),
        },
    )
    service = LiveChannelService(
        {"iptv": "https://live.example/iptv.m3u"},
        user_agent="ua",
        timeout_seconds=5.0,
    )

    assert service.refresh_source("iptv") == 2
    playlist = service.get_playlist("iptv")
    assert playlist is not None
    assert playlist.epgs == {}


def test_refresh_all_counts_channels_and_tolerates_failures(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    plain = b"#EXTM3U\n#EXTINF:-1,One\nhttps://live.example/one.m3u8\n"
    _install(
        monkeypatch,
        {
            "https://live.example/iptv.m3u": plain,
            "https://broken.example/x.m3u": URLError("connection reset"),
        },
    )
    service = LiveChannelService(
        {"iptv": "https://live.example/iptv.m3u", "bad": "https://broken.example/x.m3u"},
        user_agent="AptvPlayer/1.4.10",
        timeout_seconds=5.0,
    )

    counts = service.refresh_all()

    assert counts == {"iptv": 1, "bad": 0}
    playlist = service.get_playlist("iptv")
    assert playlist is not None
    assert playlist.channel_number == 1
    assert service.get_playlist("bad") is None


@pytest.mark.parametrize(
    "failure",
    [
        ValueError("unknown url type: 'not-a-url'"),
        IncompleteRead(b"#EXTM3U\n#EXTINF", 4_096),
        UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"),
    ],
)
def test_failing_source_does_not_stop_later_sources(
    monkeypatch: pytest.MonkeyPatch,
    failure: Exception,
) -> None:
    plain = b"#EXTM3U\n#EXTINF:-1,One\nhttps://live.example/one.m3u8\n"
    _install(monkeypatch, {"not-a-url": failure, "https://live.example/good.m3u": plain})
    service = LiveChannelService(
        {"bad": "not-a-url", "good": "https://live.example/good.m3u"},
        user_agent="ua",
        timeout_seconds=5.0,
    )

    assert service.refresh_all() == {"bad": 0, "good": 1}


def test_unknown_url_scheme_is_reported_per_source() -> None:
    service = LiveChannelService({"bad": "not-a-url"}, user_agent="ua", timeout_seconds=1.0)

    assert service.refresh_all() == {"bad": 0}


def test_refresh_all_without_sources_is_empty() -> None:
    service = LiveChannelService({}, user_agent="ua", timeout_seconds=1.0)
    assert service.refresh_all() == {}
