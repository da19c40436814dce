"""Tests for dot-path access into nested rows."""

from event_import_pipeline.utils.field_paths import get_value_at_path, set_value_at_path, split_path


def test_split_path_ignores_empty_segments():
    assert split_path("a..b.") == ["a", "b"]
    assert split_path("") == []


def test_get_value_at_path():
    row = {"location": {"coords": [10.5, -3.2]}, "title": "Flood", "zero": 0}

    assert get_value_at_path(row, "title") == "Flood"
    assert get_value_at_path(row, "location.coords.1") == -3.2
    assert get_value_at_path(row, "zero") == 0
    assert get_value_at_path(row, "location.coords.5") is None
    assert get_value_at_path(row, "location.coords.x") is None
    assert get_value_at_path(row, "title.length") is None
    assert get_value_at_path(row, "missing.deeper") is None


def test_set_value_creates_intermediate_dicts():
    row = {"a": 1}
    set_value_at_path(row, "meta.source.name", "upload")
    assert row == {"a": 1, "meta": {"source": {"name": "upload"}}}


def test_set_value_into_lists():
    row = {"tags": ["a", "b"]}
    set_value_at_path(row, "tags.1", "B")
    set_value_at_path(row, "tags.7", "ignored")
    assert row == {"tags": ["a", "B"]}


def test_set_value_replaces_scalar_parent():
    row = {"meta": "flat"}
    set_value_at_path(row, "meta.kind", "nested")
    assert row == {"meta": {"kind": "nested"}}
