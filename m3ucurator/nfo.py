"""
Read media-server ``.nfo`` files that sit next to exported pointer files.

Media servers write these after they have scraped an exported title; the
playlist synthesizer can use them for better titles, genres and artwork.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from xml.etree import ElementTree as ET

from .errors import ParseError
from .exporter import SIDECAR_SUFFIX

log = logging.getLogger(__name__)

# Checked in order next to a sidecar: per-item file first, then folder-level ones.
NFO_CANDIDATES = ("{stem}.nfo", "movie.nfo", "tvshow.nfo", "season.nfo")


@dataclass(frozen=True)
class NfoMetadata:
    title: Optional[str] = None
    original_title: Optional[str] = None
    plot: Optional[str] = None
    rating: Optional[str] = None
    year: Optional[str] = None
    release_date: Optional[str] = None
    runtime: Optional[str] = None
    genres: List[str] = field(default_factory=list)
    directors: List[str] = field(default_factory=list)
    actors: List[str] = field(default_factory=list)
    tmdb_id: Optional[str] = None
    imdb_id: Optional[str] = None
    poster: Optional[str] = None
    fanart: Optional[str] = None


def parse_nfo_text(text: str) -> NfoMetadata:
    """
    Parse the XML body of an ``.nfo`` file.

    Kodi-style files may carry a trailing scraper URL after the XML; everything
    after the closing root tag is ignored.
    """

    text = text.strip()
    try:
        root = ET.fromstring(_xml_part(text))
    except ET.ParseError as exc:
        raise ParseError(f"invalid nfo xml: {exc}") from exc

    return NfoMetadata(
        title=_tag(root, "title"),
        original_title=_tag(root, "originaltitle") or _tag(root, "sorttitle"),
        plot=_tag(root, "plot") or _tag(root, "outline"),
        rating=_tag(root, "rating") or _tag(root, "ratings/rating/value"),
        year=_tag(root, "year"),
        release_date=_tag(root, "releasedate") or _tag(root, "premiered") or _tag(root, "aired"),
        runtime=_tag(root, "runtime"),
        genres=_all(root, "genre"),
        directors=_all(root, "director/name") or _all(root, "director"),
        actors=_all(root, "actor/name"),
        tmdb_id=_tag(root, "tmdbid") or _tag(root, "tmdb") or _unique_id(root, "tmdb"),
        imdb_id=_tag(root, "imdbid") or _tag(root, "imdb") or _unique_id(root, "imdb"),
        poster=_tag(root, "thumb") or _tag(root, "poster"),
        fanart=_tag(root, "fanart/thumb") or _tag(root, "fanart"),
    )


def parse_nfo_file(path: Path) -> Optional[NfoMetadata]:
    path = Path(path)
    if not path.exists():
        return None
    try:
        return parse_nfo_text(path.read_text(encoding="utf-8", errors="replace"))
    except (OSError, ParseError) as exc:
        log.warning("failed to parse %s: %s", path, exc)
        return None


def find_nfo_for_entry(root: Path, entry_id: str) -> Optional[NfoMetadata]:
    """
    Locate the sidecar of ``entry_id`` below ``root`` and parse the nearest nfo.
    """

    return load_enrichment(root, [entry_id]).get(entry_id)


def load_enrichment(root: Path, entry_ids: Iterable[str]) -> Dict[str, NfoMetadata]:
    """
    Build an ``entry id -> metadata`` map for all ids that have an nfo on disk.

    The export tree is walked once regardless of how many ids are requested.
    """

    wanted = set(entry_ids)
    root = Path(root)
    result: Dict[str, NfoMetadata] = {}
    if not wanted or not root.is_dir():
        return result

    for sidecar in sorted(root.rglob(f"*{SIDECAR_SUFFIX}")):
        try:
            payload = json.loads(sidecar.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log.debug("skipping unreadable sidecar %s: %s", sidecar, exc)
            continue
        entry_id = str(payload.get("entryId") or "") if isinstance(payload, dict) else ""
        if entry_id not in wanted or entry_id in result:
            continue
        stem = sidecar.name[: -len(SIDECAR_SUFFIX)]
        for pattern in NFO_CANDIDATES:
            metadata = parse_nfo_file(sidecar.parent / pattern.format(stem=stem))
            if metadata is not None:
                result[entry_id] = metadata
                break
    log.info("found nfo metadata for %d of %d entries", len(result), len(wanted))
    return result


def _xml_part(text: str) -> str:
    if not text.startswith("<"):
        return text
    end = text.rfind(">")
    return text[: end + 1] if end >= 0 else text


def _tag(root: ET.Element, path: str) -> Optional[str]:
    node = root.find(path)
    if node is None or node.text is None:
        return None
    value = node.text.strip()
    return value or None


def _all(root: ET.Element, path: str) -> List[str]:
    values = []
    for node in root.findall(path):
        if node.text and node.text.strip():
            values.append(node.text.strip())
    return values


def _unique_id(root: ET.Element, kind: str) -> Optional[str]:
    for node in root.findall("uniqueid"):
        if (node.get("type") or "").lower() == kind and node.text and node.text.strip():
            return node.text.strip()
    return None
