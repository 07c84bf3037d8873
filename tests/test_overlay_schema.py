"""
Tests for the overlay list and applied-state JSON schemas.
"""

import json

import pytest
from pydantic import ValidationError

from apply_state import ApplyStateTracker, has_changed, snapshot_of
from overlay_models import ArchiveSource, FolderSource
from overlay_schema import (
    AppliedState,
    load_applied_state,
    parse_overlay_list,
    save_applied_state,
)


def overlay_list(*overlays, version="1.0"):
    return json.dumps({"schema_version": version, "overlays": list(overlays)}).encode()


def test_parse_overlay_list():
    data = overlay_list(
        {"id": "hd", "kind": "folder", "path": "/mods/hd/Mod", "order": 1},
        {"id": "liv", "kind": "archive", "path": "/mods/liv.7z",
         "archive_root": "Season2\\", "order": 2, "active": False, "name": "Liveries"},
    )

    entries = parse_overlay_list(data).to_entries()

    assert [e.id for e in entries] == ["hd", "liv"]
    assert isinstance(entries[0].source, FolderSource)
    assert entries[1].source == ArchiveSource(entries[1].source.archive_path, "Season2")
    assert entries[1].active is False
    assert entries[1].label == "Liveries"


def test_duplicate_ids_rejected():
    data = overlay_list(
        {"id": "a", "kind": "folder", "path": "/a"},
        {"id": "a", "kind": "folder", "path": "/b"},
    )
    with pytest.raises(ValidationError, match="Duplicate overlay id"):
        parse_overlay_list(data)


def test_folder_with_archive_root_rejected():
    data = overlay_list({"id": "a", "kind": "folder", "path": "/a", "archive_root": "x"})
    with pytest.raises(ValidationError):
        parse_overlay_list(data)


def test_unknown_kind_rejected():
    data = overlay_list({"id": "a", "kind": "torrent", "path": "/a"})
    with pytest.raises(ValidationError):
        parse_overlay_list(data)


def test_newer_major_version_rejected():
    with pytest.raises(ValidationError, match="newer launcher"):
        parse_overlay_list(overlay_list(version="2.0"))


def test_newer_minor_version_accepted():
    assert parse_overlay_list(overlay_list(version="1.7")).overlays == []


def test_malformed_version_rejected():
    with pytest.raises(ValidationError):
        parse_overlay_list(overlay_list(version="one"))


def test_invalid_json_raises():
    with pytest.raises(json.JSONDecodeError):
        parse_overlay_list(b"{not json")


# ── applied state ────────────────────────────────────────────────────────────

def test_applied_state_round_trip(tmp_path):
    entries = parse_overlay_list(overlay_list(
        {"id": "b", "kind": "archive", "path": str(tmp_path / "b.zip"), "archive_root": "R", "order": 2},
        {"id": "a", "kind": "folder", "path": str(tmp_path / "a"), "order": 1},
    )).to_entries()
    path = tmp_path / "state" / "applied.json"

    save_applied_state(path, AppliedState.from_sequence(entries))
    loaded = load_applied_state(path)

    assert [s.kind for s in loaded.applied] == ["folder", "archive"]
    assert not has_changed(loaded.to_snapshot(), entries)


def test_never_applied_versus_applied_nothing(tmp_path):
    missing = load_applied_state(tmp_path / "missing.json")
    assert missing.to_snapshot() is None

    path = tmp_path / "empty.json"
    save_applied_state(path, AppliedState.from_sequence([]))
    assert load_applied_state(path).to_snapshot() == ()


def test_corrupt_state_file_treated_as_never_applied(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{{{", encoding="utf-8")
    assert load_applied_state(path).applied is None


def test_tracker_round_trip_keeps_applied_files(tmp_path):
    entries = parse_overlay_list(overlay_list(
        {"id": "a", "kind": "folder", "path": str(tmp_path / "a"), "order": 1},
    )).to_entries()
    tracker = ApplyStateTracker()
    tracker.record(snapshot_of(entries), entries, ["data/a.dds"])
    path = tmp_path / "state.json"

    save_applied_state(path, AppliedState.from_tracker(tracker))
    restored = load_applied_state(path).to_tracker()

    assert restored.applied_files == ["data/a.dds"]
    assert not restored.has_changed(entries)


def test_incomplete_apply_saved_as_never_applied(tmp_path):
    tracker = ApplyStateTracker()
    tracker.record_incomplete(["b_new/b.txt"])
    path = tmp_path / "state.json"

    save_applied_state(path, AppliedState.from_tracker(tracker))
    loaded = load_applied_state(path)

    assert loaded.applied is None
    assert loaded.files == ["b_new/b.txt"]
    assert loaded.to_tracker().has_changed([])
