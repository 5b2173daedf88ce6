"""
Override model: boundary validation and the pure ``effective`` merge.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

import yaml

from .errors import ConfigError, FatalError
from .models import CanonicalChannelEntry, EffectiveEntry, OverrideRecord, VariantGroup
from .schemas import load_validator

log = logging.getLogger(__name__)

_OVERRIDE_VALIDATOR = load_validator("overrides.schema.json")

# Accepted spellings per field, first present wins.
FIELD_ALIASES: Dict[str, Sequence[str]] = {
    "display_name": ("display_name", "displayName", "tvg_name"),
    "category": ("category", "group_title"),
    "sort_number": ("sort_number", "sortNumber", "sort_order"),
    "external_guide_id": ("external_guide_id", "externalGuideId", "custom_tvg_id"),
    "logo_uri": ("logo_uri", "logoURI", "custom_logo"),
}


def effective(record: CanonicalChannelEntry, override: Optional[OverrideRecord] = None) -> EffectiveEntry:
    """
    Merge ``record`` with ``override`` field by field.

    An override value wins when it is present and non-empty; otherwise the
    canonical value is kept. The canonical record is never modified.
    """

    override = override or OverrideRecord()
    return EffectiveEntry(
        id=record.id,
        display_name=_pick(override.display_name, record.display_name),
        category=_pick(override.category, record.category),
        sort_number=override.sort_number if override.sort_number is not None else 0,
        guide_id=_pick(override.external_guide_id, record.guide_id),
        logo=_pick(override.logo_uri, record.logo),
        stream_uri=record.stream_uri,
        raw_descriptor=record.raw_descriptor,
        content_type=record.content_type,
        series_info=record.series_info,
        entry=record,
    )


def load_overrides(raw: Optional[Mapping[str, Any]]) -> Dict[str, OverrideRecord]:
    """
    Validate a loosely typed ``{entry_id: {field: value}}`` mapping.

    Raises :class:`FatalError` naming the first entry id whose record is invalid.
    """

    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise FatalError("override map must be a mapping of entry id to override record")

    result: Dict[str, OverrideRecord] = {}
    for entry_id, payload in raw.items():
        key = str(entry_id)
        if payload is None:
            continue
        if not isinstance(payload, Mapping):
            raise FatalError(f"override for entry {key} must be a mapping, got {type(payload).__name__}")
        errors = sorted(_OVERRIDE_VALIDATOR.iter_errors(dict(payload)), key=lambda err: list(err.path))
        if errors:
            raise FatalError(f"override for entry {key} invalid: {errors[0].message}")
        try:
            sort_number = _number(_first(payload, FIELD_ALIASES["sort_number"]))
        except ValueError as exc:
            raise FatalError(f"override for entry {key} invalid: {exc}") from exc
        record = OverrideRecord(
            display_name=_text(_first(payload, FIELD_ALIASES["display_name"])),
            category=_text(_first(payload, FIELD_ALIASES["category"])),
            sort_number=sort_number,
            external_guide_id=_text(_first(payload, FIELD_ALIASES["external_guide_id"])),
            logo_uri=_text(_first(payload, FIELD_ALIASES["logo_uri"])),
        )
        if record.is_empty():
            log.debug("dropping empty override for %s", key)
            continue
        result[key] = record
    return result


def load_override_file(path: Path) -> Dict[str, OverrideRecord]:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"override file {path} not found")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"failed to parse override file {path}: {exc}") from exc
    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"override file {path} must contain a mapping")
    return load_overrides(data)


def expand_group_overrides(
    groups: Iterable[VariantGroup],
    overrides: Mapping[str, OverrideRecord],
) -> Dict[str, OverrideRecord]:
    """
    Apply one override record to every member of its variant group.

    The representative's override is preferred, then the first member that has
    one. The whole record is copied, fields are not blended between members.
    """

    expanded: Dict[str, OverrideRecord] = dict(overrides)
    for group in groups:
        source = overrides.get(group.representative.id)
        if source is None:
            source = next((overrides[mid] for mid in group.member_ids if mid in overrides), None)
        if source is None:
            continue
        for member_id in group.member_ids:
            expanded[member_id] = source
    return expanded


def _pick(override_value: Optional[str], canonical: str) -> str:
    if override_value is not None and str(override_value).strip():
        return str(override_value)
    return canonical


def _first(payload: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in payload and payload[key] not in (None, ""):
            return payload[key]
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _number(value: Any) -> Optional[int]:
    if value is None:
        return None
    # draft-07 counts 101.0 as an integer
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"sort number {value!r} is not a whole number")
        return int(value)
    if isinstance(value, int):
        return value
    return int(str(value).strip())
