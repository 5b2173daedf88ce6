from __future__ import annotations

import json
from pathlib import Path

import pytest

from m3ucurator import naming
from m3ucurator.errors import ConfigError, FatalError
from m3ucurator.models import CanonicalChannelEntry, OverrideRecord
from m3ucurator.overrides import effective, expand_group_overrides, load_override_file, load_overrides


def _entry(entry_id: str, name: str, **kwargs: str) -> CanonicalChannelEntry:
    return CanonicalChannelEntry(
        id=entry_id,
        display_name=name,
        category=kwargs.get("category", "News"),
        stream_uri=f"http://x/{entry_id}",
        raw_descriptor=f"#EXTINF:-1,{name}",
        quality_tag=naming.quality_tag(name),
        normalized_identity=naming.normalized_identity(name),
        guide_id=kwargs.get("guide_id", ""),
        logo=kwargs.get("logo", ""),
    )


def test_effective_without_override_keeps_canonical_values() -> None:
    record = _entry("a", "News One HD", guide_id="news.one", logo="http://img/a.png")
    merged = effective(record)

    assert merged.display_name == "News One HD"
    assert merged.category == "News"
    assert merged.sort_number == 0
    assert merged.guide_id == "news.one"
    assert merged.logo == "http://img/a.png"
    assert merged.entry is record


def test_effective_merges_fields_independently() -> None:
    record = _entry("a", "News One HD", guide_id="news.one", logo="http://img/a.png")
    merged = effective(record, OverrideRecord(display_name="News 1", sort_number=101, logo_uri=""))

    assert merged.display_name == "News 1"
    assert merged.sort_number == 101
    assert merged.category == "News"
    assert merged.guide_id == "news.one"
    assert merged.logo == "http://img/a.png"
    assert record.display_name == "News One HD"


def test_load_overrides_accepts_both_spellings() -> None:
    overrides = load_overrides(
        {
            "a": {"sortNumber": 101, "displayName": "News 1"},
            "b": {"sort_number": "7", "external_guide_id": "b.tv", "logoURI": "http://img/b.png"},
            "c": {"custom_tvg_id": "c.tv", "group_title": "Sports"},
        }
    )

    assert overrides["a"] == OverrideRecord(display_name="News 1", sort_number=101)
    assert overrides["b"] == OverrideRecord(sort_number=7, external_guide_id="b.tv", logo_uri="http://img/b.png")
    assert overrides["c"] == OverrideRecord(category="Sports", external_guide_id="c.tv")


def test_load_overrides_drops_empty_records() -> None:
    assert load_overrides({"a": {}, "b": None, "c": {"display_name": "  "}}) == {}
    assert load_overrides(None) == {}


@pytest.mark.parametrize(
    "payload",
    [
        {"bad-id": {"unknown": 1}},
        {"bad-id": {"sortNumber": "first"}},
        {"bad-id": ["not", "a", "mapping"]},
    ],
)
def test_load_overrides_rejects_invalid_records(payload: dict) -> None:
    with pytest.raises(FatalError, match="bad-id"):
        load_overrides(payload)


def test_load_override_file_yaml_and_json(tmp_path: Path) -> None:
    yaml_path = tmp_path / "overrides.yml"
    yaml_path.write_text("a:\n  sortNumber: 3\n", encoding="utf-8")
    json_path = tmp_path / "overrides.json"
    json_path.write_text(json.dumps({"a": {"displayName": "Renamed"}}), encoding="utf-8")

    assert load_override_file(yaml_path) == {"a": OverrideRecord(sort_number=3)}
    assert load_override_file(json_path) == {"a": OverrideRecord(display_name="Renamed")}


def test_load_override_file_errors(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_override_file(tmp_path / "missing.yml")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError, match="failed to parse"):
        load_override_file(broken)

    listing = tmp_path / "list.yml"
    listing.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="mapping"):
        load_override_file(listing)


def test_override_propagates_to_variant_group() -> None:
    entries = [_entry("hd", "News One HD"), _entry("sd", "News One SD"), _entry("other", "Sport Max")]
    groups = naming.group_variants(entries)

    expanded = expand_group_overrides(groups, {"sd": OverrideRecord(sort_number=5)})

    assert expanded["hd"] == OverrideRecord(sort_number=5)
    assert expanded["sd"] == OverrideRecord(sort_number=5)
    assert "other" not in expanded
    assert effective(entries[0], expanded["hd"]).sort_number == 5


def test_representative_override_wins_in_group() -> None:
    entries = [_entry("sd", "News One SD"), _entry("hd", "News One HD")]
    groups = naming.group_variants(entries)
    overrides = {"sd": OverrideRecord(sort_number=1), "hd": OverrideRecord(sort_number=2)}

    expanded = expand_group_overrides(groups, overrides)

    assert expanded["sd"].sort_number == 2
    assert expanded["hd"].sort_number == 2


def test_bundled_validators_are_cached() -> None:
    from m3ucurator.schemas import load_validator

    validator = load_validator("overrides.schema.json")
    assert load_validator("overrides.schema.json") is validator
    assert not validator.is_valid({"sortNumber": "first"})
    assert validator.is_valid({"sortNumber": "12", "displayName": None})


def test_whole_float_sort_numbers_are_accepted() -> None:
    overrides = load_overrides({"m3u-1": {"sortNumber": 101.0}, "m3u-2": {"sort_order": " 7 "}})

    assert overrides["m3u-1"].sort_number == 101
    assert overrides["m3u-2"].sort_number == 7


def test_fractional_sort_number_names_the_entry() -> None:
    with pytest.raises(FatalError, match="m3u-1"):
        load_overrides({"m3u-1": {"sortNumber": 101.5}})
