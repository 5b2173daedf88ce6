"""
Job pipeline: load a YAML job file, ingest its sources, synthesize the live
playlist and reconcile the on-demand STRM tree.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from .adapters import get_adapter
from .errors import ConfigError, IngestionError
from .exporter import DEFAULT_EXPORT_ROOT, ExportOptions, reconcile
from .models import CanonicalChannelEntry, ContentType, ExportSummary, OverrideRecord
from .naming import group_variants
from .nfo import load_enrichment
from .overrides import expand_group_overrides, load_override_file, load_overrides
from .schemas import load_validator
from .synthesizer import DEFAULT_CATCHUP_DAYS, SynthesisOptions, order_by_groups, synthesize, write_playlist

log = logging.getLogger(__name__)

_JOB_VALIDATOR = load_validator("job.schema.json")


@dataclass
class JobConfig:
    path: Path
    sources: List[Dict[str, Any]]
    overrides: Dict[str, OverrideRecord] = field(default_factory=dict)
    playlist: Optional[Dict[str, Any]] = None
    vod: Optional[Dict[str, Any]] = None

    @property
    def name(self) -> str:
        for section in (self.vod, self.playlist):
            if section and section.get("name"):
                return str(section["name"])
        return self.path.stem


@dataclass
class JobResult:
    entries: List[CanonicalChannelEntry]
    failed_sources: List[str] = field(default_factory=list)
    playlist_path: Optional[Path] = None
    playlist_entries: int = 0
    export: Optional[ExportSummary] = None


def load_job(path: Path) -> JobConfig:
    """
    Read and validate a job file. Relative paths resolve against its directory.
    """

    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except OSError as exc:
        raise ConfigError(f"cannot read job file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"job file {path} must contain a mapping")

    errors = sorted(_JOB_VALIDATOR.iter_errors(data), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        location = "/".join(str(part) for part in first.path) or "<root>"
        raise ConfigError(f"{path}: {location}: {first.message}")

    base = path.parent
    sources = [dict(source) for source in data["sources"]]
    for source in sources:
        if source.get("path"):
            source["path"] = str(_resolve(base, source["path"]))

    raw_overrides = data.get("overrides")
    if isinstance(raw_overrides, str):
        overrides = load_override_file(_resolve(base, raw_overrides))
    else:
        overrides = load_overrides(raw_overrides)

    playlist = dict(data["playlist"]) if data.get("playlist") else None
    if playlist:
        playlist["output"] = str(_resolve(base, playlist["output"]))
    vod = dict(data["vod"]) if data.get("vod") else None
    if vod and vod.get("export_root"):
        vod["export_root"] = str(_resolve(base, vod["export_root"]))

    return JobConfig(path=path, sources=sources, overrides=overrides, playlist=playlist, vod=vod)


def run_job(path: Path, *, playlist: bool = True, vod: bool = True) -> JobResult:
    job = load_job(path)
    result = ingest_sources(job)

    known = {entry.id for entry in result.entries}
    unknown = sorted(entry_id for entry_id in job.overrides if entry_id not in known)
    if unknown:
        log.warning("%d override(s) match no ingested entry: %s", len(unknown), ", ".join(unknown[:10]))

    if playlist and job.playlist:
        result.playlist_path, result.playlist_entries = build_playlist(job, result.entries)
    if vod and job.vod:
        result.export = export_vod(job, result.entries)
    return result


def ingest_sources(job: JobConfig) -> JobResult:
    """
    Run every source through its adapter. A failing source is logged and skipped.
    """

    entries: List[CanonicalChannelEntry] = []
    failed: List[str] = []
    seen: Dict[str, str] = {}
    for source in job.sources:
        source_id = str(source["id"])
        adapter = get_adapter(str(source["type"]))
        try:
            ingested = adapter.ingest(source)
        except IngestionError as exc:
            log.error("source %s failed: %s", source_id, exc)
            failed.append(source_id)
            continue
        ingested = _filter_groups(ingested, source.get("groups"))
        added = 0
        for entry in ingested:
            if entry.id in seen:
                log.debug("entry %s from %s already provided by %s", entry.id, source_id, seen[entry.id])
                continue
            seen[entry.id] = source_id
            entries.append(entry)
            added += 1
        log.info("source %s: %d entries", source_id, added)
    return JobResult(entries=entries, failed_sources=failed)


def build_playlist(job: JobConfig, entries: Sequence[CanonicalChannelEntry]) -> tuple[Path, int]:
    config = job.playlist or {}
    if config.get("content", "live") == "all":
        selected = list(entries)
    else:
        selected = [entry for entry in entries if entry.content_type == ContentType.LIVE]

    groups = group_variants(selected)
    overrides = expand_group_overrides(groups, job.overrides)
    if config.get("collapse_variants"):
        selected = [group.representative for group in groups]

    enrichment = {}
    if config.get("enrich") and job.vod:
        enrichment = load_enrichment(export_options(job).directory, [entry.id for entry in selected])

    options = SynthesisOptions(
        guide_url=str(config.get("guide_url") or ""),
        base_url=config.get("base_url") or None,
        catchup_source=config.get("catchup_source") or os.getenv("M3UCURATOR_CATCHUP_SOURCE") or None,
        catchup_days=_catchup_days(config),
        guide_map=dict(config.get("guide_map") or {}),
        enrichment=enrichment,
        clean_names=bool(config.get("clean_names", False)),
    )
    pairs = [(entry, overrides.get(entry.id)) for entry in selected]
    if config.get("group_order"):
        pairs = order_by_groups(pairs, config["group_order"])
    output = write_playlist(Path(config["output"]), synthesize(pairs, options))
    return output, len(pairs)


def export_vod(job: JobConfig, entries: Sequence[CanonicalChannelEntry]) -> ExportSummary:
    on_demand = [entry for entry in entries if entry.is_on_demand]
    ids = {entry.id for entry in on_demand}
    overrides = {entry_id: record for entry_id, record in job.overrides.items() if entry_id in ids}
    return reconcile(on_demand, overrides, export_options(job))


def export_options(job: JobConfig) -> ExportOptions:
    config = job.vod or {}
    export_root = config.get("export_root") or os.getenv("M3UCURATOR_EXPORT_DIR") or DEFAULT_EXPORT_ROOT
    return ExportOptions(
        export_root=Path(export_root),
        playlist_name=job.name,
        base_url=str(config.get("base_url") or ""),
        username=str(config.get("username") or ""),
        password=str(config.get("password") or ""),
    )


def _catchup_days(config: Mapping[str, Any]) -> int:
    if config.get("catchup_days") is not None:
        return int(config["catchup_days"])
    env_value = os.getenv("M3UCURATOR_CATCHUP_DAYS")
    if env_value:
        try:
            return int(env_value)
        except ValueError:
            raise ConfigError(f"M3UCURATOR_CATCHUP_DAYS must be an integer, got {env_value!r}") from None
    return DEFAULT_CATCHUP_DAYS


def _filter_groups(entries: List[CanonicalChannelEntry], groups: Any) -> List[CanonicalChannelEntry]:
    if not isinstance(groups, list) or not groups:
        return entries
    wanted = {str(group) for group in groups}
    return [entry for entry in entries if entry.category in wanted]


def _resolve(base: Path, value: str) -> Path:
    candidate = Path(os.path.expanduser(str(value)))
    return candidate if candidate.is_absolute() else base / candidate
