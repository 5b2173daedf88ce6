"""
Name cleaning, identity derivation and variant grouping.

All heuristics are kept as ordered rule lists so each pattern can be tested
on its own; the first matching rule wins unless a helper says otherwise.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .models import CanonicalChannelEntry, ContentType, SeriesInfo, VariantGroup

DEFAULT_GROUP = "Ungrouped"

# (quality tag, pattern) - applied in order, each stripping one trailing marker.
QUALITY_RULES: List[Tuple[str, re.Pattern[str]]] = [
    ("UHD", re.compile(r"\s+(UHD|4K|2160p)(\s*\*)?$", re.IGNORECASE)),
    ("FHD", re.compile(r"\s+(FHD|1080p)(\s*\*)?$", re.IGNORECASE)),
    ("HD", re.compile(r"\s+(HD|720p)(\s*\*)?$", re.IGNORECASE)),
    ("SD", re.compile(r"\s+(SD|480p)(\s*\*)?$", re.IGNORECASE)),
]
TRAILING_ASTERISK = re.compile(r"\s+\*$")
WHITESPACE = re.compile(r"\s+")

QUALITY_RANK: Dict[str, int] = {"UHD": 0, "FHD": 1, "HD": 2, "SD": 3, "": 4}

SERIES_RULES: List[re.Pattern[str]] = [
    re.compile(r"^(?P<series>.+?)[\s._-]+S(?P<season>\d{1,3})[\s._-]*E(?P<episode>\d{1,4})(?!\d)", re.IGNORECASE),
    re.compile(r"^(?P<series>.+?)[\s._-]+(?P<season>\d{1,2})x(?P<episode>\d{1,3})(?!\d)", re.IGNORECASE),
]

# (pattern, action) - the action turns a match into a group name.
GROUP_RULES: List[Tuple[re.Pattern[str], str]] = [
    (re.compile(r"^([^:]{1,20}):"), "colon-prefix"),
    (re.compile(r"^([A-Z][A-Z0-9]{0,9})\s"), "uppercase-token"),
]

CONTENT_TYPE_PREFIXES: List[Tuple[str, str]] = [
    ("Movie:", ContentType.MOVIE),
    ("Series:", ContentType.SERIES_EPISODE),
]

FILENAME_INVALID = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
SLUG_INVALID = re.compile(r"[^a-z0-9]+")


def clean_name(name: Optional[str]) -> str:
    """
    Strip trailing quality markers and stray asterisks, collapse whitespace.
    """

    text = unicodedata.normalize("NFC", name or "").strip()
    for _tag, pattern in QUALITY_RULES:
        text = pattern.sub("", text)
    text = TRAILING_ASTERISK.sub("", text)
    return WHITESPACE.sub(" ", text).strip()


def quality_tag(name: Optional[str]) -> str:
    text = (name or "").strip()
    for tag, pattern in QUALITY_RULES:
        if pattern.search(text):
            return tag
    return ""


def normalized_identity(name: Optional[str]) -> str:
    """
    Case- and whitespace-insensitive identity of the cleaned name.
    """

    return WHITESPACE.sub("", clean_name(name)).casefold()


def parse_series_info(name: Optional[str]) -> Optional[SeriesInfo]:
    text = (name or "").strip()
    for pattern in SERIES_RULES:
        match = pattern.match(text)
        if not match:
            continue
        series = match.group("series").strip(" -._")
        if not series:
            continue
        return SeriesInfo(
            series_name=series,
            season=int(match.group("season")),
            episode=int(match.group("episode")),
        )
    return None


def infer_group(name: Optional[str]) -> str:
    text = name or ""
    for pattern, _action in GROUP_RULES:
        match = pattern.match(text)
        if match:
            group = match.group(1).strip()
            if group:
                return group
    return DEFAULT_GROUP


def infer_content_type(group: str, series_info: Optional[SeriesInfo]) -> str:
    for prefix, content_type in CONTENT_TYPE_PREFIXES:
        if group.startswith(prefix):
            return content_type
    if series_info is not None:
        return ContentType.SERIES_EPISODE
    return ContentType.LIVE


def group_variants(entries: Iterable[CanonicalChannelEntry]) -> List[VariantGroup]:
    """
    Collapse entries with the same normalized identity into variant groups.

    Groups keep first-seen order. The representative is the best quality tier,
    ties resolved by first appearance. Entries whose name cleans to nothing are
    never merged with anything.
    """

    buckets: Dict[str, List[CanonicalChannelEntry]] = {}
    for entry in entries:
        key = entry.normalized_identity or f"id:{entry.id}"
        buckets.setdefault(key, []).append(entry)

    groups: List[VariantGroup] = []
    for key, members in buckets.items():
        representative = min(
            enumerate(members),
            key=lambda item: (QUALITY_RANK.get(item[1].quality_tag, len(QUALITY_RANK)), item[0]),
        )[1]
        groups.append(
            VariantGroup(
                normalized_identity=key,
                representative=representative,
                member_ids=[member.id for member in members],
            )
        )
    return groups


def collapse_variants(entries: Sequence[CanonicalChannelEntry]) -> List[CanonicalChannelEntry]:
    return [group.representative for group in group_variants(entries)]


def sanitize_filename(name: Optional[str]) -> str:
    text = FILENAME_INVALID.sub("", name or "")
    text = WHITESPACE.sub(" ", text).strip().strip(".").strip()
    return text or "Unknown"


def slugify(value: Optional[str]) -> str:
    return SLUG_INVALID.sub("-", (value or "").lower()).strip("-") or "playlist"
