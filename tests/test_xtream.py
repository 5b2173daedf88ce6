from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from m3ucurator.adapters import get_adapter
from m3ucurator.adapters.xtream import XtreamClient, build_descriptor
from m3ucurator.errors import IngestionError
from m3ucurator.exporter import ExportOptions, plan_entries
from m3ucurator.models import ContentType, SeriesInfo

BASE = "http://provider.example"

CATALOG: Dict[str, Any] = {
    "get_live_streams": [
        {
            "stream_id": 1,
            "name": "News One HD",
            "category_id": "1",
            "epg_channel_id": "news.one",
            "stream_icon": "http://img/n.png",
        },
        {"stream_id": 2, "name": "Mystery", "category_id": "99", "epg_channel_id": None},
    ],
    "get_live_categories": [{"category_id": "1", "category_name": "News"}],
    "get_vod_streams": [
        {"stream_id": 10, "name": "Heat (1995)", "category_id": 5, "container_extension": "mp4", "tmdb_id": 949},
    ],
    "get_vod_categories": [{"category_id": "5", "category_name": "Action"}],
    "get_series": [
        {"series_id": 100, "name": "Breaking Bad", "category_id": "7", "cover": "http://img/bb.jpg"},
        {"series_id": 101, "name": "Pilot Only", "category_id": "7"},
        {"series_id": 102, "name": "Broken", "category_id": "7"},
    ],
    "get_series_categories": [{"category_id": "7", "category_name": "Drama"}],
}

SERIES_INFO: Dict[str, Any] = {
    "100": {
        "episodes": {
            "1": [
                {"id": "1001", "episode_num": 1, "title": "", "container_extension": "mkv"},
                {"id": "1002", "episode_num": 2, "title": "Cat's in the Bag", "info": {"movie_image": "http://img/e2.jpg"}},
            ],
            "2": [{"id": "1003", "episode_num": 1}],
        }
    },
    "101": {"episodes": {"1": [{"id": "2001", "episode_num": 1}]}},
}


class _Response:
    def __init__(self, payload: Any = None, status_code: int = 200, body: Optional[str] = None):
        self.payload = payload
        self.status_code = status_code
        self.body = body

    def json(self) -> Any:
        if self.body is not None:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self.payload

    def close(self) -> None:
        pass


class _FakeSession:
    """Answers ``player_api.php`` requests from in-memory fixtures."""

    def __init__(self, overrides: Optional[Dict[str, _Response]] = None):
        self.overrides = overrides or {}
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def get(self, url: str, params: Optional[Dict[str, Any]] = None, timeout: Any = None) -> _Response:
        params = dict(params or {})
        with self._lock:
            self.calls.append({"url": url, "params": params})
        action = params["action"]
        if action == "get_series_info":
            series_id = str(params["series_id"])
            key = f"{action}:{series_id}"
            if key in self.overrides:
                return self.overrides[key]
            if series_id not in SERIES_INFO:
                return _Response(status_code=500)
            return _Response(SERIES_INFO[series_id])
        if action in self.overrides:
            return self.overrides[action]
        return _Response(CATALOG[action])

    def actions(self, action: str) -> List[Dict[str, Any]]:
        return [call["params"] for call in self.calls if call["params"]["action"] == action]


def _client(session: _FakeSession, batch_size: int = 10) -> XtreamClient:
    return XtreamClient(BASE + "/", "user", "pass", batch_size=batch_size, session=session)


def test_fetch_catalog_maps_all_classes() -> None:
    session = _FakeSession()
    result = _client(session).fetch_catalog()

    news, mystery = result.live
    assert news.id == "live-1"
    assert news.display_name == "News One HD"
    assert news.category == "News"
    assert news.stream_uri == f"{BASE}/live/user/pass/1.ts"
    assert news.guide_id == "news.one"
    assert news.logo == "http://img/n.png"
    assert news.quality_tag == "HD"
    assert news.content_type == ContentType.LIVE
    assert mystery.category == "Ungrouped"

    (movie,) = result.movie
    assert movie.id == "movie-10"
    assert movie.category == "Movie: Action"
    assert movie.stream_uri == f"{BASE}/movie/user/pass/10.mp4"
    assert movie.content_type == ContentType.MOVIE
    assert movie.extra["tmdb_id"] == "949"

    assert [entry.display_name for entry in result.series] == [
        "Breaking Bad S01E01",
        "Breaking Bad S01E02",
        "Breaking Bad S02E01",
    ]
    first, second, third = result.series
    assert first.stream_uri == f"{BASE}/series/user/pass/1001.mkv"
    assert first.category == "Series: Drama"
    assert first.series_info == SeriesInfo("Breaking Bad", 1, 1)
    assert first.logo == "http://img/bb.jpg"
    assert second.series_info == SeriesInfo("Breaking Bad", 1, 2)
    assert second.logo == "http://img/e2.jpg"
    assert second.raw_descriptor.endswith("group-title=\"Series: Drama\",Cat's in the Bag")
    assert 'tvg-name="Breaking Bad S01E02"' in second.raw_descriptor
    assert third.series_info == SeriesInfo("Breaking Bad", 2, 1)
    assert all(entry.content_type == ContentType.SERIES_EPISODE for entry in result.series)
    assert len(result.all_entries()) == 6


def test_credentials_travel_as_query_parameters() -> None:
    session = _FakeSession()
    _client(session).fetch_catalog()

    assert all(call["url"] == f"{BASE}/player_api.php" for call in session.calls)
    assert all(call["params"]["username"] == "user" for call in session.calls)
    assert all(call["params"]["password"] == "pass" for call in session.calls)


def test_series_fanout_runs_once_per_series_without_retry() -> None:
    session = _FakeSession()
    episodes = _client(session, batch_size=2).fetch_series()

    requested = sorted(str(params["series_id"]) for params in session.actions("get_series_info"))
    assert requested == ["100", "101", "102"]
    assert {entry.series_info.series_name for entry in episodes if entry.series_info} == {"Breaking Bad"}


def test_failing_class_resolves_to_empty_list() -> None:
    session = _FakeSession({"get_vod_streams": _Response(status_code=503)})
    result = _client(session).fetch_catalog()

    assert result.movie == []
    assert len(result.live) == 2
    assert len(result.series) == 3


def test_missing_categories_fall_back_to_ungrouped() -> None:
    session = _FakeSession({"get_live_categories": _Response(status_code=404)})
    live = _client(session).fetch_live()

    assert {entry.category for entry in live} == {"Ungrouped"}


@pytest.mark.parametrize(
    "response, message",
    [
        (_Response(body="<html>"), "non-JSON"),
        (_Response({"error": "nope"}), "expected a list"),
        (_Response([{"name": "no id"}]), "invalid"),
        (_Response(status_code=401), "HTTP 401"),
    ],
)
def test_bad_listing_raises_ingestion_error(response: _Response, message: str) -> None:
    session = _FakeSession({"get_live_streams": response})
    with pytest.raises(IngestionError, match=message):
        _client(session).fetch_live()


def test_invalid_episode_drops_only_that_series() -> None:
    broken = _Response({"episodes": {"1": [{"episode_num": 1}, {"episode_num": 2}]}})
    session = _FakeSession({"get_series_info:100": broken})

    assert _client(session).fetch_series() == []


def test_list_shaped_episode_payload() -> None:
    payload = _Response({"episodes": [[{"id": "1", "season": 1, "episode_num": 1}, {"id": "2", "season": 1, "episode_num": 2}]]})
    session = _FakeSession({"get_series_info:100": payload})

    episodes = _client(session).fetch_series()

    assert [entry.id for entry in episodes] == ["episode-1", "episode-2"]


def test_build_descriptor_escapes_quotes() -> None:
    line = build_descriptor("id", 'Say "Hi"', "", "News", 'Say "Hi"')
    assert line == '#EXTINF:-1 tvg-id="id" tvg-name="Say \'Hi\'" tvg-logo="" group-title="News",Say "Hi"'


def test_client_rejects_bad_batch_size() -> None:
    with pytest.raises(ValueError):
        XtreamClient(BASE, "user", "pass", batch_size=0)


def test_adapter_requires_url() -> None:
    with pytest.raises(IngestionError, match="url"):
        get_adapter("xtream").ingest({"id": "provider"})


class _WaveSession(_FakeSession):
    """Records how many ``get_series_info`` calls are in flight at once."""

    def __init__(self, overrides: Optional[Dict[str, _Response]] = None):
        super().__init__(overrides)
        self.in_flight = 0
        self.peak = 0
        self.started: List[str] = []

    def get(self, url: str, params: Optional[Dict[str, Any]] = None, timeout: Any = None) -> _Response:
        if (params or {}).get("action") != "get_series_info":
            return super().get(url, params, timeout)
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            self.started.append(str(params["series_id"]))
        try:
            time.sleep(0.05)
            return super().get(url, params, timeout)
        finally:
            with self._lock:
                self.in_flight -= 1


def test_series_waves_respect_batch_size() -> None:
    listing = [{"series_id": 200 + index, "name": f"Show {index}", "category_id": "7"} for index in range(5)]
    session = _WaveSession({"get_series": _Response(listing)})

    _client(session, batch_size=2).fetch_series()

    assert session.peak <= 2
    assert len(session.started) == 5
    assert set(session.started[0:2]) == {"200", "201"}
    assert set(session.started[2:4]) == {"202", "203"}
    assert session.started[4] == "204"


def test_titled_episodes_export_with_episode_marker(tmp_path: Path) -> None:
    episodes = _client(_FakeSession()).fetch_series()
    options = ExportOptions(export_root=tmp_path, playlist_name="Den")

    paths = [plan.pointer_path.as_posix() for plan in plan_entries(episodes, {}, options)]

    assert "Breaking Bad/Season 01/Breaking Bad S01E02.strm" in paths
    assert len(set(paths)) == 3


def test_same_title_in_two_series_stays_apart() -> None:
    info = {
        "episodes": {
            "1": [
                {"id": "1", "episode_num": 1, "title": "Pilot"},
                {"id": "2", "episode_num": 2, "title": "Pilot"},
            ]
        }
    }
    other = {
        "episodes": {
            "1": [
                {"id": "3", "episode_num": 1, "title": "Pilot"},
                {"id": "4", "episode_num": 2, "title": "Pilot"},
            ]
        }
    }
    session = _FakeSession({"get_series_info:100": _Response(info), "get_series_info:101": _Response(other)})

    episodes = _client(session).fetch_series()

    assert len({entry.normalized_identity for entry in episodes}) == 4
