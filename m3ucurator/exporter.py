"""
STRM exporter: keep a directory of ``.strm`` pointer files and JSON sidecars in
sync with the desired on-demand entries.

Every run takes one snapshot of the directory, diffs it against the desired
state and applies the difference. Running it twice with the same input writes
nothing the second time.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple
from urllib.parse import quote

from .errors import FatalError, ReconciliationError
from .models import (
    CanonicalChannelEntry,
    ContentType,
    DiscoveredEntry,
    EffectiveEntry,
    ExportSummary,
    OverrideRecord,
    ReconciliationEntry,
)
from .naming import clean_name, sanitize_filename, slugify
from .overrides import effective

log = logging.getLogger(__name__)

POINTER_SUFFIX = ".strm"
SIDECAR_SUFFIX = ".m3ucurator.json"
TIMESTAMP_KEY = "lastUpdated"
DEFAULT_EXPORT_ROOT = Path("/data/vod-strm")


@dataclass
class ExportOptions:
    export_root: Path
    playlist_name: str
    base_url: str = ""
    username: str = ""
    password: str = ""

    @property
    def directory(self) -> Path:
        return Path(self.export_root) / slugify(self.playlist_name)


@dataclass
class ScanResult:
    """
    Snapshot of an export directory.

    ``entries`` is keyed by entry id. Sidecars that repeat an id already seen
    land in ``duplicates`` and are removed like orphans.
    """

    entries: Dict[str, DiscoveredEntry] = field(default_factory=dict)
    duplicates: List[DiscoveredEntry] = field(default_factory=list)
    stray_pointers: List[Path] = field(default_factory=list)
    repaired: int = 0


def resolve_stream_uri(entry: CanonicalChannelEntry, options: ExportOptions) -> str:
    if not options.base_url:
        return entry.stream_uri
    if entry.content_type == ContentType.MOVIE:
        kind = "movie"
    elif entry.content_type == ContentType.SERIES_EPISODE:
        kind = "series"
    else:
        return entry.stream_uri
    base = options.base_url.rstrip("/")
    user = quote(options.username, safe="")
    password = quote(options.password, safe="")
    return f"{base}/{kind}/{user}/{password}/{quote(entry.id, safe='')}"


def plan_entries(
    entries: Sequence[CanonicalChannelEntry],
    overrides: Mapping[str, OverrideRecord],
    options: ExportOptions,
) -> List[ReconciliationEntry]:
    """
    Compute the desired on-disk pair for every entry.

    Paths are relative to the export directory. Two ids that would land on the
    same pointer path are told apart by appending `` [<id>]`` to the later one.
    """

    planned: List[ReconciliationEntry] = []
    taken: Set[str] = set()
    for entry in entries:
        merged = effective(entry, overrides.get(entry.id))
        directory = _target_directory(merged)
        stem = sanitize_filename(merged.display_name)
        if _path_key(directory / f"{stem}{POINTER_SUFFIX}") in taken:
            stem = sanitize_filename(f"{stem} [{entry.id}]")
        pointer_path = directory / f"{stem}{POINTER_SUFFIX}"
        taken.add(_path_key(pointer_path))

        stream_uri = resolve_stream_uri(entry, options)
        planned.append(
            ReconciliationEntry(
                external_id=entry.id,
                display_name=merged.display_name,
                pointer_path=pointer_path,
                sidecar_path=directory / f"{stem}{SIDECAR_SUFFIX}",
                sidecar_content=_sidecar_content(merged, stream_uri, options),
                directory_path=directory,
                stream_uri=stream_uri,
            )
        )
    return planned


def scan_existing(directory: Path) -> ScanResult:
    """
    Discover exported pairs below ``directory``.

    Sidecars whose pointer file is missing are deleted on the spot; unreadable
    sidecars are logged and skipped. Pointer files without a sidecar are only
    reported.
    """

    directory = Path(directory)
    result = ScanResult()
    if not directory.is_dir():
        return result

    for sidecar in sorted(directory.rglob(f"*{SIDECAR_SUFFIX}")):
        if not sidecar.is_file():
            continue
        stem = sidecar.name[: -len(SIDECAR_SUFFIX)]
        pointer = sidecar.with_name(f"{stem}{POINTER_SUFFIX}")
        if not pointer.exists():
            log.info("removing sidecar without pointer: %s", sidecar.relative_to(directory))
            try:
                sidecar.unlink()
                result.repaired += 1
            except OSError as exc:
                log.error("failed to remove orphaned sidecar %s: %s", sidecar, exc)
            continue
        try:
            metadata = json.loads(sidecar.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("skipping unreadable sidecar %s: %s", sidecar, exc)
            continue
        entry_id = str(metadata.get("entryId") or "") if isinstance(metadata, dict) else ""
        if not entry_id:
            log.warning("skipping sidecar without entryId: %s", sidecar)
            continue
        discovered = DiscoveredEntry(
            external_id=entry_id,
            pointer_path=pointer.relative_to(directory),
            sidecar_path=sidecar.relative_to(directory),
            metadata=metadata,
        )
        if entry_id in result.entries:
            result.duplicates.append(discovered)
        else:
            result.entries[entry_id] = discovered

    for pointer in sorted(directory.rglob(f"*{POINTER_SUFFIX}")):
        stem = pointer.name[: -len(POINTER_SUFFIX)]
        if not pointer.with_name(f"{stem}{SIDECAR_SUFFIX}").exists():
            result.stray_pointers.append(pointer.relative_to(directory))
    if result.stray_pointers:
        log.warning("%d pointer file(s) without sidecar left untouched", len(result.stray_pointers))
    return result


def reconcile(
    entries: Optional[Sequence[CanonicalChannelEntry]],
    overrides: Optional[Mapping[str, OverrideRecord]],
    options: ExportOptions,
) -> ExportSummary:
    """
    Bring the export directory in line with ``entries``.

    Input problems raise :class:`FatalError` before anything is touched.
    Filesystem failures are counted per entry in ``errors`` and do not stop
    the run.
    """

    if entries is None:
        raise FatalError("no entry list supplied for export")
    overrides = overrides or {}
    _validate_input(entries, overrides)

    directory = options.directory
    if not entries:
        log.info("no on-demand entries for %s, nothing to export", options.playlist_name)
        return ExportSummary(directory=directory)

    planned = plan_entries(entries, overrides, options)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FatalError(f"cannot create export directory {directory}: {exc}") from exc
    log.info("exporting %d entries to %s", len(planned), directory)

    scan = scan_existing(directory)
    summary = ExportSummary(directory=directory)
    desired_ids = {plan.external_id for plan in planned}
    touched: Set[Path] = set()

    writes: List[Tuple[ReconciliationEntry, str]] = []
    for plan in planned:
        existing = scan.entries.get(plan.external_id)
        if existing is None:
            writes.append((plan, "create"))
        elif _is_stale(plan, existing, directory):
            # Old pair goes first so that the new paths are free for every write below.
            try:
                _remove_pair(directory, existing, plan.display_name, touched)
            except ReconciliationError as exc:
                log.error("%s", exc)
                summary.errors += 1
                continue
            writes.append((plan, "update"))

    orphans = [item for item_id, item in scan.entries.items() if item_id not in desired_ids]
    for orphan in [*orphans, *scan.duplicates]:
        name = str(orphan.metadata.get("displayName") or orphan.pointer_path.stem)
        log.info("deleting %s", orphan.pointer_path)
        try:
            _remove_pair(directory, orphan, name, touched)
        except ReconciliationError as exc:
            log.error("%s", exc)
            summary.errors += 1
            continue
        summary.deleted += 1

    timestamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
    for plan, action in writes:
        log.info("%s %s", "creating" if action == "create" else "updating", plan.pointer_path)
        try:
            _write_pair(directory, plan, timestamp)
        except ReconciliationError as exc:
            log.error("%s", exc)
            summary.errors += 1
            continue
        if action == "create":
            summary.created += 1
        else:
            summary.updated += 1

    _prune_empty_dirs(directory, touched)
    log.info(
        "export finished: %d created, %d updated, %d deleted, %d errors",
        summary.created,
        summary.updated,
        summary.deleted,
        summary.errors,
    )
    return summary


def export_stats(directory: Path) -> Dict[str, Any]:
    directory = Path(directory)
    if not directory.is_dir():
        return {"total_files": 0, "directory": str(directory), "last_export": None}

    total = sum(1 for _ in directory.rglob(f"*{POINTER_SUFFIX}"))
    last_export: Optional[datetime] = None
    for sidecar in directory.rglob(f"*{SIDECAR_SUFFIX}"):
        try:
            stamp = json.loads(sidecar.read_text(encoding="utf-8")).get(TIMESTAMP_KEY)
            updated = datetime.fromisoformat(str(stamp))
        except (OSError, ValueError, AttributeError) as exc:
            log.debug("ignoring sidecar %s: %s", sidecar, exc)
            continue
        if last_export is None or updated > last_export:
            last_export = updated
    return {
        "total_files": total,
        "directory": str(directory),
        "last_export": last_export.isoformat() if last_export else None,
    }


def _validate_input(entries: Sequence[CanonicalChannelEntry], overrides: Mapping[str, OverrideRecord]) -> None:
    seen: Set[str] = set()
    for entry in entries:
        if entry.id in seen:
            raise FatalError(f"duplicate entry id {entry.id!r} in export input")
        seen.add(entry.id)
    for override_id in overrides:
        if override_id not in seen:
            raise FatalError(f"override references unknown entry id {override_id!r}")


def _target_directory(merged: EffectiveEntry) -> Path:
    info = merged.series_info
    if merged.content_type == ContentType.SERIES_EPISODE and info is not None:
        series = sanitize_filename(clean_name(info.series_name) or info.series_name)
        return Path(series) / f"Season {info.season:02d}"
    return Path()


def _sidecar_content(merged: EffectiveEntry, stream_uri: str, options: ExportOptions) -> Dict[str, Any]:
    info = merged.series_info
    return {
        "entryId": merged.id,
        "playlist": options.playlist_name,
        "displayName": merged.display_name,
        "category": merged.category,
        "contentType": merged.content_type,
        "guideId": merged.guide_id or None,
        "logo": merged.logo or None,
        "series": (
            {"seriesName": info.series_name, "season": info.season, "episode": info.episode} if info else None
        ),
        "upstreamUrl": merged.stream_uri,
        "streamUrl": stream_uri,
    }


def _is_stale(plan: ReconciliationEntry, existing: DiscoveredEntry, directory: Path) -> bool:
    if existing.pointer_path != plan.pointer_path or existing.sidecar_path != plan.sidecar_path:
        return True
    try:
        current_uri = (directory / existing.pointer_path).read_text(encoding="utf-8").strip()
    except OSError:
        return True
    if current_uri != plan.stream_uri:
        return True
    stored = {key: value for key, value in existing.metadata.items() if key != TIMESTAMP_KEY}
    return stored != plan.sidecar_content


def _write_pair(directory: Path, plan: ReconciliationEntry, timestamp: str) -> None:
    content = dict(plan.sidecar_content)
    content[TIMESTAMP_KEY] = timestamp
    try:
        # Pointer first: an interrupted write leaves a stray pointer, never a dangling sidecar.
        _write_text_atomic(directory / plan.pointer_path, plan.stream_uri)
        _write_text_atomic(directory / plan.sidecar_path, json.dumps(content, indent=2, sort_keys=True) + "\n")
    except OSError as exc:
        raise ReconciliationError(plan.display_name, "write", exc) from exc


def _remove_pair(directory: Path, existing: DiscoveredEntry, display_name: str, touched: Set[Path]) -> None:
    try:
        for relative in (existing.pointer_path, existing.sidecar_path):
            target = directory / relative
            if target.exists():
                target.unlink()
            touched.add(target.parent)
    except OSError as exc:
        raise ReconciliationError(display_name, "delete", exc) from exc


def _write_text_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def _prune_empty_dirs(root: Path, candidates: Iterable[Path]) -> None:
    root = root.resolve()
    for start in sorted(set(candidates), key=lambda path: len(path.parts), reverse=True):
        current = start.resolve()
        while current != root and root in current.parents:
            try:
                if any(current.iterdir()):
                    break
                current.rmdir()
                log.debug("removed empty directory %s", current)
            except FileNotFoundError:
                pass
            except OSError as exc:
                log.warning("could not remove empty directory %s: %s", current, exc)
                break
            current = current.parent


def _path_key(path: Path) -> str:
    return path.as_posix().casefold()
