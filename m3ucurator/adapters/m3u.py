"""
Adapter for M3U playlist text.

Parsing can run in two phases through :class:`ParseSession`: a cheap group
listing first, then the full entries of one selected group from the same
cached text.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import requests

from .. import naming
from ..errors import IngestionError, ParseError
from ..models import CanonicalChannelEntry, ContentType, GroupCount
from ..net import http_get
from . import BaseAdapter, register

log = logging.getLogger(__name__)

DESCRIPTOR_PREFIX = "#EXTINF"
HEADER_PREFIX = "#EXTM3U"
ATTRIBUTE_PATTERN = re.compile(r'([a-zA-Z0-9_\-]+)="([^"]*)"')
KNOWN_ATTRIBUTES = {"tvg-id", "tvg-name", "tvg-logo", "group-title"}


@dataclass(frozen=True)
class Descriptor:
    """
    One parsed ``#EXTINF`` line.
    """

    attributes: Dict[str, str]
    title: Optional[str]
    raw: str

    @property
    def name(self) -> str:
        return (self.attributes.get("tvg-name") or "").strip() or (self.title or "").strip() or "Unknown"

    @property
    def group(self) -> str:
        group = (self.attributes.get("group-title") or "").strip()
        return group or naming.infer_group(self.name)


class M3UAdapter(BaseAdapter):
    name = "m3u"

    def ingest(self, config: Mapping[str, Any]) -> List[CanonicalChannelEntry]:
        texts: List[Tuple[str, str]] = []
        if config.get("url"):
            url = str(config["url"])
            texts.append((url, fetch_playlist(url)))
        if config.get("path"):
            for path in _collect_files(Path(str(config["path"])), config):
                texts.append((str(path), path.read_text(encoding="utf-8", errors="replace")))
        if not texts:
            raise IngestionError(f"m3u source {config.get('id')} needs a 'path' or 'url'")

        groups = config.get("groups")
        entries: List[CanonicalChannelEntry] = []
        for origin, text in texts:
            if isinstance(groups, list) and groups:
                with ParseSession().open(text) as session:
                    for group in groups:
                        entries.extend(session.group_entries(str(group)))
            else:
                entries.extend(parse_text(text))
            log.info("parsed %s (%d entries so far)", origin, len(entries))
        return entries


class ParseSession:
    """
    Caller-owned two-phase parser state.

    Lifecycle: ``open(text)`` -> ``scan_groups()`` -> ``group_entries(name)``
    (any number of times) -> ``close()``. The raw text is cached between the
    phases so it does not need to be supplied again.
    """

    def __init__(self) -> None:
        self._text: Optional[str] = None
        self._closed = False

    def open(self, text: str) -> "ParseSession":
        if self._closed:
            raise ParseError("parse session already closed")
        self._text = text
        return self

    @property
    def is_open(self) -> bool:
        return self._text is not None and not self._closed

    def scan_groups(self) -> List[GroupCount]:
        """
        Phase 1: count entries per group without building entry objects.
        """

        counts: Dict[str, int] = {}
        for descriptor, _uri in _iter_pairs(self._require_text()):
            group = descriptor.group
            counts[group] = counts.get(group, 0) + 1
        return [
            GroupCount(name=name, count=count)
            for name, count in sorted(counts.items(), key=lambda item: (item[0].casefold(), item[0]))
        ]

    def group_entries(self, group_name: str, text: Optional[str] = None) -> List[CanonicalChannelEntry]:
        """
        Phase 2: full entries of a single group.

        ``text`` replaces the cached body when given.
        """

        if text is not None:
            self.open(text)
        return _build_entries(self._require_text(), only_group=group_name)

    def close(self) -> None:
        self._text = None
        self._closed = True

    def __enter__(self) -> "ParseSession":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _require_text(self) -> str:
        if self._closed:
            raise ParseError("parse session already closed")
        if self._text is None:
            raise ParseError("no playlist text loaded; call open() first")
        return self._text


def parse_text(text: str) -> List[CanonicalChannelEntry]:
    """
    Single-pass parse returning the entries of every group.
    """

    return _build_entries(text, only_group=None)


def parse_descriptor(line: str) -> Descriptor:
    """
    Parse one ``#EXTINF`` line into attributes and the trailing title.

    Raises :class:`ParseError` when the line carries no usable display name.
    """

    line = line.strip()
    if not line.startswith(DESCRIPTOR_PREFIX):
        raise ParseError(f"not a descriptor line: {line[:40]!r}")
    head, title = split_descriptor(line)
    attributes = {match.group(1).lower(): match.group(2) for match in ATTRIBUTE_PATTERN.finditer(head)}
    if title is None and not attributes.get("tvg-name", "").strip():
        raise ParseError(f"descriptor without display name: {line[:60]!r}")
    return Descriptor(attributes=attributes, title=title, raw=line)


def split_descriptor(line: str) -> Tuple[str, Optional[str]]:
    """
    Split a descriptor at the first comma outside quoted attribute values.

    Returns ``(head, title)``; ``title`` is ``None`` when there is no separator.
    """

    in_quotes = False
    for index, char in enumerate(line):
        if char == '"':
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            return line[:index], line[index + 1 :].strip()
    return line, None


def fetch_playlist(url: str, session: Optional[requests.Session] = None) -> str:
    response = http_get(url, session=session)
    text = response.text
    response.close()
    if HEADER_PREFIX not in text and DESCRIPTOR_PREFIX not in text:
        raise IngestionError(f"response from {url.split('?', 1)[0]} does not look like an M3U playlist")
    return text


def build_entry(descriptor: Descriptor, uri: str, entry_id: str) -> CanonicalChannelEntry:
    name = descriptor.name
    group = descriptor.group
    series_info = naming.parse_series_info(name)
    content_type = naming.infer_content_type(group, series_info)
    if content_type != ContentType.SERIES_EPISODE:
        series_info = None
    extra = {key: value for key, value in descriptor.attributes.items() if key not in KNOWN_ATTRIBUTES}
    return CanonicalChannelEntry(
        id=entry_id,
        display_name=name,
        category=group,
        stream_uri=uri,
        raw_descriptor=descriptor.raw,
        quality_tag=naming.quality_tag(name),
        normalized_identity=naming.normalized_identity(name),
        content_type=content_type,
        series_info=series_info,
        guide_id=descriptor.attributes.get("tvg-id", "").strip(),
        logo=descriptor.attributes.get("tvg-logo", "").strip(),
        extra=extra,
    )


def entry_id_for(uri: str) -> str:
    return "m3u-" + hashlib.sha1(uri.encode("utf-8")).hexdigest()[:12]


def _build_entries(text: str, only_group: Optional[str]) -> List[CanonicalChannelEntry]:
    entries: List[CanonicalChannelEntry] = []
    seen: Dict[str, int] = {}
    for descriptor, uri in _iter_pairs(text):
        base_id = entry_id_for(uri)
        # Repeated URIs keep distinct ids, counted over the whole playlist.
        occurrence = seen.get(base_id, 0) + 1
        seen[base_id] = occurrence
        if only_group is not None and descriptor.group != only_group:
            continue
        entry_id = base_id if occurrence == 1 else f"{base_id}-{occurrence}"
        entries.append(build_entry(descriptor, uri, entry_id))
    return entries


def _iter_pairs(text: str) -> Iterator[Tuple[Descriptor, str]]:
    current: Optional[Descriptor] = None
    for line_no, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith(DESCRIPTOR_PREFIX):
            try:
                current = parse_descriptor(stripped)
            except ParseError as exc:
                log.debug("skipping line %d: %s", line_no, exc)
                current = None
            continue
        if stripped.startswith("#"):
            continue
        if current is None:
            continue
        yield current, stripped
        current = None


def _collect_files(source_path: Path, config: Mapping[str, Any]) -> List[Path]:
    if source_path.is_file():
        return [source_path]
    include = config.get("include")
    files: List[Path] = []
    if isinstance(include, list):
        for pattern in include:
            files.extend(source_path.glob(str(pattern)))
    else:
        files.extend(source_path.glob("*.m3u"))
        files.extend(source_path.glob("*.m3u8"))
    return sorted(path for path in files if path.is_file())


register(M3UAdapter())
