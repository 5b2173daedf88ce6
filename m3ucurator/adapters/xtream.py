"""
Adapter for Xtream-Codes style catalog APIs.

Live channels, movies and series are fetched concurrently. Series need one
detail request each; those run in fixed-size waves so a large catalog does
not flood the upstream.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import quote

import requests

from .. import naming
from ..errors import IngestionError
from ..models import CanonicalChannelEntry, CatalogResult, ContentType, SeriesInfo
from ..net import HTTP_TIMEOUT, http_get
from ..schemas import load_validator
from . import BaseAdapter, register

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_EXTENSION = "mkv"
UNGROUPED = naming.DEFAULT_GROUP

_STREAM_VALIDATOR = load_validator("xtream.stream.schema.json")
_EPISODE_VALIDATOR = load_validator("xtream.episode.schema.json")


class XtreamAdapter(BaseAdapter):
    name = "xtream"

    def ingest(self, config: Mapping[str, Any]) -> List[CanonicalChannelEntry]:
        url = str(config.get("url") or "")
        if not url:
            raise IngestionError(f"xtream source {config.get('id')} needs a 'url'")
        client = XtreamClient(
            url,
            str(config.get("username") or ""),
            str(config.get("password") or ""),
            batch_size=int(config.get("batch_size") or DEFAULT_BATCH_SIZE),
        )
        return client.fetch_catalog().all_entries()


class XtreamClient:
    """
    Read-only client for ``player_api.php``.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        timeout: float = HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.batch_size = batch_size
        self.timeout = timeout
        self.session = session

    def fetch_catalog(self) -> CatalogResult:
        """
        Fetch all three content classes; a failing class resolves to ``[]``.
        """

        with ThreadPoolExecutor(max_workers=3, thread_name_prefix="xtream") as pool:
            live = pool.submit(self.fetch_live)
            movie = pool.submit(self.fetch_movies)
            series = pool.submit(self.fetch_series)
            result = CatalogResult(
                live=_resolve("live", live),
                movie=_resolve("movie", movie),
                series=_resolve("series", series),
            )
        log.info(
            "xtream catalog: %d live, %d movies, %d episodes",
            len(result.live),
            len(result.movie),
            len(result.series),
        )
        return result

    def fetch_live(self) -> List[CanonicalChannelEntry]:
        streams, categories = self._listing("get_live_streams", "get_live_categories")
        entries: List[CanonicalChannelEntry] = []
        for item in streams:
            name = _text(item.get("name")) or "Unknown"
            group = categories.get(_key(item.get("category_id")), UNGROUPED)
            guide_id = _text(item.get("epg_channel_id"))
            logo = _text(item.get("stream_icon"))
            stream_id = _key(item.get("stream_id"))
            entries.append(
                _make_entry(
                    entry_id=f"live-{stream_id}",
                    name=name,
                    title=name,
                    group=group,
                    uri=f"{self._stream_base('live')}/{stream_id}.ts",
                    guide_id=guide_id,
                    logo=logo,
                    content_type=ContentType.LIVE,
                )
            )
        return entries

    def fetch_movies(self) -> List[CanonicalChannelEntry]:
        streams, categories = self._listing("get_vod_streams", "get_vod_categories")
        entries: List[CanonicalChannelEntry] = []
        for item in streams:
            name = _text(item.get("name")) or _text(item.get("title")) or "Unknown"
            group = _prefixed("Movie", categories.get(_key(item.get("category_id")), UNGROUPED))
            stream_id = _key(item.get("stream_id"))
            extension = _text(item.get("container_extension")) or DEFAULT_EXTENSION
            entries.append(
                _make_entry(
                    entry_id=f"movie-{stream_id}",
                    name=name,
                    title=name,
                    group=group,
                    uri=f"{self._stream_base('movie')}/{stream_id}.{extension}",
                    guide_id=_text(item.get("tmdb_id")),
                    logo=_text(item.get("stream_icon")) or _text(item.get("cover")),
                    content_type=ContentType.MOVIE,
                    extra=_catalog_meta(item),
                )
            )
        return entries

    def fetch_series(self) -> List[CanonicalChannelEntry]:
        series, categories = self._listing("get_series", "get_series_categories")
        log.info("fetching episodes for %d series", len(series))
        entries: List[CanonicalChannelEntry] = []
        for start in range(0, len(series), self.batch_size):
            wave = series[start : start + self.batch_size]
            with ThreadPoolExecutor(max_workers=len(wave), thread_name_prefix="xtream-series") as pool:
                results = list(pool.map(lambda item: self._series_episodes_safe(item, categories), wave))
            for episodes in results:
                entries.extend(episodes)
            processed = min(start + self.batch_size, len(series))
            log.info("processed %d/%d series (%d episodes so far)", processed, len(series), len(entries))
        return entries

    def _series_episodes_safe(self, item: Mapping[str, Any], categories: Mapping[str, str]) -> List[CanonicalChannelEntry]:
        # Failed members of a wave resolve to no episodes; there is no retry.
        try:
            return self._series_episodes(item, categories)
        except (IngestionError, ValueError, TypeError, KeyError) as exc:
            log.error(
                "failed to fetch episodes for series %r (%s): %s",
                item.get("name"),
                item.get("series_id"),
                exc,
            )
            return []

    def _series_episodes(self, item: Mapping[str, Any], categories: Mapping[str, str]) -> List[CanonicalChannelEntry]:
        series_id = _key(item.get("series_id"))
        series_name = _text(item.get("name")) or _text(item.get("title")) or "Unknown"
        info = self._api("get_series_info", series_id=series_id)
        if not isinstance(info, Mapping):
            raise IngestionError(f"series {series_name!r}: detail response is not an object")
        seasons = _season_map(info.get("episodes"))
        total = sum(len(episodes) for episodes in seasons.values())
        if total <= 1:
            log.debug("skipping series %r: only %d episode(s)", series_name, total)
            return []

        group = _prefixed("Series", categories.get(_key(item.get("category_id")), UNGROUPED))
        cover = _text(item.get("cover"))
        series_meta = _catalog_meta(item)
        series_meta["series_id"] = series_id
        entries: List[CanonicalChannelEntry] = []
        for season_num in sorted(seasons):
            for position, episode in enumerate(seasons[season_num], start=1):
                errors = list(_EPISODE_VALIDATOR.iter_errors(episode))
                if errors:
                    raise IngestionError(f"series {series_name!r}: invalid episode: {errors[0].message}")
                episode_num = _int(episode.get("episode_num"), position)
                episode_info = episode.get("info") if isinstance(episode.get("info"), Mapping) else {}
                synthesized = f"{series_name} S{season_num:02d}E{episode_num:02d}"
                title = _text(episode.get("title")) or synthesized
                episode_id = _key(episode.get("id"))
                extension = _text(episode.get("container_extension")) or DEFAULT_EXTENSION
                entries.append(
                    _make_entry(
                        entry_id=f"episode-{episode_id}",
                        name=synthesized,
                        title=title,
                        group=group,
                        uri=f"{self._stream_base('series')}/{episode_id}.{extension}",
                        guide_id=_text(episode_info.get("tmdb_id")) or _text(item.get("tmdb_id")),
                        logo=_text(episode_info.get("movie_image")) or cover,
                        content_type=ContentType.SERIES_EPISODE,
                        series_info=SeriesInfo(series_name=series_name, season=season_num, episode=episode_num),
                        extra=series_meta,
                    )
                )
        return entries

    def _listing(self, list_action: str, category_action: str) -> Tuple[List[Mapping[str, Any]], Dict[str, str]]:
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="xtream-listing") as pool:
            streams_future = pool.submit(self._api, list_action)
            categories_future = pool.submit(self._api, category_action)
            streams = streams_future.result()
            try:
                categories = _category_map(categories_future.result())
            except IngestionError as exc:
                log.warning("%s unavailable, entries fall back to %s: %s", category_action, UNGROUPED, exc)
                categories = {}

        if not isinstance(streams, list):
            raise IngestionError(f"{list_action} returned {type(streams).__name__}, expected a list")
        for index, item in enumerate(streams):
            if not isinstance(item, Mapping):
                raise IngestionError(f"{list_action} item {index} is not an object")
            errors = sorted(_STREAM_VALIDATOR.iter_errors(item), key=lambda err: list(err.path))
            if errors:
                raise IngestionError(f"{list_action} item {index} invalid: {errors[0].message}")
        return streams, categories

    def _api(self, action: str, **params: Any) -> Any:
        query = {"username": self.username, "password": self.password, "action": action}
        query.update(params)
        response = http_get(
            f"{self.base_url}/player_api.php",
            params=query,
            session=self.session,
            timeout=self.timeout,
        )
        try:
            return response.json()
        except ValueError as exc:
            raise IngestionError(f"{action} returned a non-JSON body: {exc}") from exc
        finally:
            response.close()

    def _stream_base(self, kind: str) -> str:
        return f"{self.base_url}/{kind}/{quote(self.username, safe='')}/{quote(self.password, safe='')}"


def build_descriptor(guide_id: str, name: str, logo: str, group: str, title: str) -> str:
    return (
        f'#EXTINF:-1 tvg-id="{_attr(guide_id)}" tvg-name="{_attr(name)}" '
        f'tvg-logo="{_attr(logo)}" group-title="{_attr(group)}",{title}'
    )


def _make_entry(
    *,
    entry_id: str,
    name: str,
    title: str,
    group: str,
    uri: str,
    guide_id: str,
    logo: str,
    content_type: str,
    series_info: Optional[SeriesInfo] = None,
    extra: Optional[Dict[str, str]] = None,
) -> CanonicalChannelEntry:
    return CanonicalChannelEntry(
        id=entry_id,
        display_name=name,
        category=group,
        stream_uri=uri,
        raw_descriptor=build_descriptor(guide_id, name, logo, group, title),
        quality_tag=naming.quality_tag(name),
        normalized_identity=naming.normalized_identity(name),
        content_type=content_type,
        series_info=series_info,
        guide_id=guide_id,
        logo=logo,
        extra=dict(extra or {}),
    )


def _resolve(kind: str, future: "Future[List[CanonicalChannelEntry]]") -> List[CanonicalChannelEntry]:
    try:
        return future.result()
    except IngestionError as exc:
        log.error("xtream %s fetch failed: %s", kind, exc)
        return []


def _category_map(payload: Any) -> Dict[str, str]:
    if not isinstance(payload, list):
        raise IngestionError(f"category listing returned {type(payload).__name__}, expected a list")
    result: Dict[str, str] = {}
    for item in payload:
        if not isinstance(item, Mapping):
            continue
        key = _key(item.get("category_id"))
        name = _text(item.get("category_name"))
        if key and name:
            result[key] = name
    return result


def _season_map(raw: Any) -> Dict[int, List[Mapping[str, Any]]]:
    seasons: Dict[int, List[Mapping[str, Any]]] = {}
    if isinstance(raw, Mapping):
        for season_key, episodes in raw.items():
            if not isinstance(episodes, list) or not episodes:
                continue
            seasons.setdefault(int(str(season_key)), []).extend(ep for ep in episodes if isinstance(ep, Mapping))
    elif isinstance(raw, list):
        # Some panels send a list of per-season lists instead of a map.
        for episodes in _flatten(raw):
            season = _int(episodes.get("season"), 1)
            seasons.setdefault(season, []).append(episodes)
    return {season: episodes for season, episodes in seasons.items() if episodes}


def _flatten(raw: Iterable[Any]) -> Iterable[Mapping[str, Any]]:
    for item in raw:
        if isinstance(item, list):
            yield from (ep for ep in item if isinstance(ep, Mapping))
        elif isinstance(item, Mapping):
            yield item


def _catalog_meta(item: Mapping[str, Any]) -> Dict[str, str]:
    meta: Dict[str, str] = {}
    for key in ("tmdb_id", "imdb_id", "year", "releaseDate", "rating", "plot"):
        value = _text(item.get(key))
        if value:
            meta[key] = value
    return meta


def _prefixed(prefix: str, group: str) -> str:
    return group if group == UNGROUPED else f"{prefix}: {group}"


def _key(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _int(value: Any, default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _attr(value: str) -> str:
    return value.replace('"', "'")


register(XtreamAdapter())
