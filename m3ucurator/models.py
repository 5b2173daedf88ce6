"""
Shared data models for the m3ucurator pipeline.

Entries are transient: they are built from caller-supplied input for a single
synthesis or export run and discarded afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


class ContentType:
    LIVE = "live"
    MOVIE = "movie"
    SERIES_EPISODE = "series-episode"

    ALL = (LIVE, MOVIE, SERIES_EPISODE)
    ON_DEMAND = (MOVIE, SERIES_EPISODE)


@dataclass(frozen=True)
class SeriesInfo:
    """
    Series placement of one episode.
    """

    series_name: str
    season: int
    episode: int


@dataclass(frozen=True)
class CanonicalChannelEntry:
    """
    Normalised representation of one playlist line or catalog item.

    ``guide_id`` and ``logo`` carry the upstream ``tvg-id`` / ``tvg-logo`` values
    so that overrides always have a canonical value to fall back to.
    """

    id: str
    display_name: str
    category: str
    stream_uri: str
    raw_descriptor: str
    quality_tag: str
    normalized_identity: str
    content_type: str = ContentType.LIVE
    series_info: Optional[SeriesInfo] = None
    guide_id: str = ""
    logo: str = ""
    extra: Dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def is_on_demand(self) -> bool:
        return self.content_type in ContentType.ON_DEMAND


@dataclass(frozen=True)
class VariantGroup:
    """
    Entries sharing one normalized identity across quality tiers.
    """

    normalized_identity: str
    representative: CanonicalChannelEntry
    member_ids: List[str]

    def __len__(self) -> int:
        return len(self.member_ids)


@dataclass(frozen=True)
class OverrideRecord:
    """
    Optional per-entry replacements; ``None`` means "use the canonical value".
    """

    display_name: Optional[str] = None
    category: Optional[str] = None
    sort_number: Optional[int] = None
    external_guide_id: Optional[str] = None
    logo_uri: Optional[str] = None

    def is_empty(self) -> bool:
        return all(
            value in (None, "")
            for value in (
                self.display_name,
                self.category,
                self.sort_number,
                self.external_guide_id,
                self.logo_uri,
            )
        )


@dataclass(frozen=True)
class EffectiveEntry:
    """
    Canonical entry merged with its override; produced per run, never stored.
    """

    id: str
    display_name: str
    category: str
    sort_number: int
    guide_id: str
    logo: str
    stream_uri: str
    raw_descriptor: str
    content_type: str
    series_info: Optional[SeriesInfo]
    entry: CanonicalChannelEntry


@dataclass(frozen=True)
class ReconciliationEntry:
    """
    Desired on-disk state of one exported id.

    Paths are relative to the export directory.
    """

    external_id: str
    display_name: str
    pointer_path: Path
    sidecar_path: Path
    sidecar_content: Dict[str, Any]
    directory_path: Path
    stream_uri: str


@dataclass
class DiscoveredEntry:
    """
    On-disk state of one exported id as found by the discovery scan.
    """

    external_id: str
    pointer_path: Path
    sidecar_path: Path
    metadata: Dict[str, Any]


@dataclass(frozen=True)
class GroupCount:
    name: str
    count: int


@dataclass
class ExportSummary:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: int = 0
    directory: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "errors": self.errors,
            "directory": str(self.directory) if self.directory else None,
        }


@dataclass
class CatalogResult:
    """
    Remote catalog content separated by class so callers can route each one.
    """

    live: List[CanonicalChannelEntry] = field(default_factory=list)
    movie: List[CanonicalChannelEntry] = field(default_factory=list)
    series: List[CanonicalChannelEntry] = field(default_factory=list)

    def all_entries(self) -> List[CanonicalChannelEntry]:
        return [*self.live, *self.movie, *self.series]
