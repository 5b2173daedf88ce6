"""
Synthesize an M3U playlist from canonical entries and their overrides.

Descriptor lines are produced by rewriting the upstream descriptor: attributes
the playlist controls are replaced in place or appended, everything else the
upstream line carried is preserved. Running the rewrite on its own output
yields the same text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote

from .adapters.m3u import DESCRIPTOR_PREFIX, HEADER_PREFIX, split_descriptor
from .models import CanonicalChannelEntry, OverrideRecord
from .naming import clean_name
from .nfo import NfoMetadata
from .overrides import effective

log = logging.getLogger(__name__)

DEFAULT_CATCHUP_DAYS = 7
DEFAULT_DESCRIPTOR = f"{DESCRIPTOR_PREFIX}:-1"

# Attributes written by the synthesizer, in the order they are appended.
MANAGED_ATTRIBUTES = (
    "tvg-id",
    "tvg-name",
    "tvg-chno",
    "tvg-logo",
    "group-title",
    "catchup",
    "catchup-source",
    "catchup-days",
)

Pair = Tuple[CanonicalChannelEntry, Optional[OverrideRecord]]


@dataclass
class SynthesisOptions:
    guide_url: str = ""
    base_url: Optional[str] = None
    catchup_source: Optional[str] = None
    catchup_days: int = DEFAULT_CATCHUP_DAYS
    guide_map: Dict[str, str] = field(default_factory=dict)
    enrichment: Mapping[str, NfoMetadata] = field(default_factory=dict)
    clean_names: bool = False


def synthesize(pairs: Iterable[Pair], options: Optional[SynthesisOptions] = None) -> str:
    """
    Render the playlist text for ``pairs`` in the order given.

    Output is deterministic: equal input gives byte-identical text.
    """

    options = options or SynthesisOptions()
    lines = [f'{HEADER_PREFIX} url-tvg="{_attr(options.guide_url or "")}"']
    count = 0
    for entry, override in pairs:
        descriptor, uri = synthesize_entry(entry, override, options)
        lines.append(descriptor)
        lines.append(uri)
        count += 1
    log.debug("synthesized %d playlist entries", count)
    return "\n".join(lines) + "\n"


def synthesize_entry(
    entry: CanonicalChannelEntry,
    override: Optional[OverrideRecord],
    options: SynthesisOptions,
) -> Tuple[str, str]:
    merged = effective(entry, override)
    metadata = options.enrichment.get(entry.id)

    name = merged.display_name
    if options.clean_names and not (override and override.display_name):
        name = clean_name(name) or name
    if metadata and metadata.title:
        name = metadata.title

    if override and override.external_guide_id:
        guide_id = override.external_guide_id
    else:
        guide_id = options.guide_map.get(entry.guide_id, entry.guide_id) if entry.guide_id else ""

    logo = merged.logo
    if metadata and metadata.poster and options.base_url:
        logo = f"{options.base_url.rstrip('/')}/api/proxy-image?url={quote(metadata.poster, safe='')}"

    category = metadata.genres[0] if metadata and metadata.genres else merged.category

    attributes: Dict[str, Optional[str]] = {
        "tvg-id": guide_id,
        "tvg-name": name,
        "tvg-chno": str(merged.sort_number) if merged.sort_number > 0 else None,
        "tvg-logo": logo or None,
        "group-title": category or None,
    }
    if options.catchup_source:
        attributes["catchup"] = "default"
        attributes["catchup-source"] = options.catchup_source
        attributes["catchup-days"] = str(options.catchup_days)

    descriptor = rewrite_descriptor(entry.raw_descriptor, attributes, name)
    if options.base_url:
        uri = f"{options.base_url.rstrip('/')}/stream/{quote(entry.id, safe='')}"
    else:
        uri = merged.stream_uri
    return descriptor, uri


def rewrite_descriptor(raw: str, attributes: Mapping[str, Optional[str]], display_name: str) -> str:
    """
    Replace or append attribute tokens and the display-name segment of ``raw``.

    A token that already exists is replaced in place; a missing one is appended
    after the existing attributes. ``None`` values leave the token untouched.
    """

    raw = (raw or "").strip()
    if not raw.startswith(DESCRIPTOR_PREFIX):
        raw = DEFAULT_DESCRIPTOR
    head, _title = split_descriptor(raw)
    head = head.rstrip()
    for key, value in attributes.items():
        if value is None:
            continue
        token = f'{key}="{_attr(value)}"'
        pattern = _token_pattern(key)
        if pattern.search(head):
            head = pattern.sub(lambda _match: token, head, count=1)
        else:
            head = f"{head} {token}"
    return f"{head},{_single_line(display_name)}"


def order_by_groups(pairs: Sequence[Pair], group_order: Sequence[str]) -> List[Pair]:
    """
    Stable sort by saved group order, then by effective sort number.

    Groups missing from ``group_order`` go last; entries without a sort number
    (zero) follow the numbered ones of their group.
    """

    rank = {name: index for index, name in enumerate(group_order)}

    def key(pair: Pair) -> Tuple[int, int, int]:
        merged = effective(pair[0], pair[1])
        numbered = merged.sort_number > 0
        return (
            rank.get(merged.category, len(rank)),
            0 if numbered else 1,
            merged.sort_number if numbered else 0,
        )

    return sorted(pairs, key=key)


def write_playlist(path: Path, text: str) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(text, encoding="utf-8")
    tmp_path.replace(path)
    log.info("wrote playlist %s", path)
    return path


_TOKEN_PATTERNS: Dict[str, "re.Pattern[str]"] = {}


def _token_pattern(key: str) -> "re.Pattern[str]":
    pattern = _TOKEN_PATTERNS.get(key)
    if pattern is None:
        pattern = re.compile(rf'(?<![\w-]){re.escape(key)}="[^"]*"', re.IGNORECASE)
        _TOKEN_PATTERNS[key] = pattern
    return pattern


def _attr(value: str) -> str:
    return _single_line(str(value)).replace('"', "'")


def _single_line(value: str) -> str:
    return " ".join(str(value).split())
