"""
JSON schemas for the files a host hands to the overlay core.

Overlay list
------------
The resolved, user-ordered list of overlays (discovery happens elsewhere):

{
    "schema_version": "1.0",
    "overlays": [
        {"id": "hd-textures", "kind": "folder", "path": "D:/Mods/HD/Mod", "order": 1},
        {"id": "liveries", "kind": "archive", "path": "D:/Mods/liveries.7z",
         "archive_root": "Season2", "order": 2, "active": false}
    ]
}

``order`` is ascending priority: the overlay with the highest order wins a
conflict. For archives, payload files are read from
``<archive_root>/Mod/`` inside the archive.

Applied state
-------------
What the last successful apply used, so the next launch can be skipped when
nothing changed, plus every relative path overlays have copied into the game
folder since its last clean restore:

{
    "schema_version": "1.0",
    "applied": [{"kind": "folder", "path": "...", "archive_root": "", "active": true}],
    "files": ["data/textures/car.dds"]
}

``applied`` is null after a failed or cancelled apply; ``files`` is kept so
the next apply can clean up after it.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from apply_state import AppliedSnapshot, ApplyStateTracker, snapshot_of
from overlay_models import (
    ArchiveSource,
    FolderSource,
    OverlayEntry,
    OverlaySource,
    normalize_relative,
)

CURRENT_VERSION = (1, 0)  # (major, minor) supported by this build

_log = logging.getLogger(__name__)


def check_schema_version(v: str) -> str:
    try:
        major, minor = (int(x) for x in v.split("."))
    except ValueError:
        raise ValueError(
            f"Invalid schema_version {v!r} — expected 'major.minor' (e.g. '1.0')"
        )
    cur_major, cur_minor = CURRENT_VERSION
    if major > cur_major:
        raise ValueError(
            f"schema_version {v!r} requires a newer launcher "
            f"(this build supports up to version {cur_major}.x)"
        )
    if major == cur_major and minor > cur_minor:
        _log.warning(
            "Schema version %s is newer than this build supports (%d.%d) — "
            "some fields may be ignored.",
            v, cur_major, cur_minor,
        )
    return v


class SourceSpec(BaseModel):
    """Where an overlay's files come from."""

    kind: Literal["folder", "archive"]
    path: str
    archive_root: str = ""

    @field_validator("archive_root")
    @classmethod
    def _normalize_root(cls, v: str) -> str:
        return normalize_relative(v)

    @model_validator(mode="after")
    def _folder_has_no_root(self) -> SourceSpec:
        if self.kind == "folder" and self.archive_root:
            raise ValueError("archive_root only applies to archive overlays")
        return self

    def to_source(self) -> OverlaySource:
        if self.kind == "folder":
            return FolderSource(Path(self.path))
        return ArchiveSource(Path(self.path), self.archive_root)

    @classmethod
    def from_source(cls, source: OverlaySource) -> SourceSpec:
        if isinstance(source, ArchiveSource):
            return cls(kind="archive", path=str(source.archive_path),
                       archive_root=source.internal_root)
        return cls(kind="folder", path=str(source.path))


class OverlaySpec(SourceSpec):
    id: str
    name: str | None = None
    active: bool = True
    order: int = 0

    def to_entry(self) -> OverlayEntry:
        return OverlayEntry(
            id=self.id,
            source=self.to_source(),
            active=self.active,
            order=self.order,
            name=self.name,
        )


class OverlayList(BaseModel):
    schema_version: str
    overlays: list[OverlaySpec] = Field(default_factory=list)

    @field_validator("schema_version")
    @classmethod
    def _check_version(cls, v: str) -> str:
        return check_schema_version(v)

    @model_validator(mode="after")
    def _no_duplicate_ids(self) -> OverlayList:
        seen = set()
        for overlay in self.overlays:
            if overlay.id in seen:
                raise ValueError(f"Duplicate overlay id: {overlay.id!r}")
            seen.add(overlay.id)
        return self

    def to_entries(self) -> list[OverlayEntry]:
        return [o.to_entry() for o in self.overlays]


class AppliedSourceSpec(SourceSpec):
    active: bool = True


class AppliedState(BaseModel):
    schema_version: str = "1.0"
    applied: list[AppliedSourceSpec] | None = None  # None: never applied
    files: list[str] = Field(default_factory=list)

    @field_validator("schema_version")
    @classmethod
    def _check_version(cls, v: str) -> str:
        return check_schema_version(v)

    @classmethod
    def from_sequence(
        cls, sequence: list[OverlayEntry], files: list[str] | None = None
    ) -> AppliedState:
        ordered = sorted(sequence, key=lambda e: e.order)
        return cls(
            files=list(files or []),
            applied=[
                AppliedSourceSpec(**SourceSpec.from_source(e.source).model_dump(), active=e.active)
                for e in ordered
            ]
        )

    @classmethod
    def from_tracker(cls, tracker: ApplyStateTracker) -> AppliedState:
        if tracker.last_snapshot is None:
            return cls(files=tracker.applied_files)
        return cls.from_sequence(tracker.last_sequence, tracker.applied_files)

    def to_tracker(self) -> ApplyStateTracker:
        return ApplyStateTracker(self.to_snapshot(), self.to_sequence(), self.files)

    def to_sequence(self) -> list[OverlayEntry]:
        return [
            OverlayEntry(id=f"applied-{i}", source=item.to_source(), active=item.active, order=i)
            for i, item in enumerate(self.applied or [])
        ]

    def to_snapshot(self) -> AppliedSnapshot | None:
        if self.applied is None:
            return None
        return snapshot_of(self.to_sequence())


def parse_overlay_list(data: bytes) -> OverlayList:
    """Parse raw JSON bytes into an OverlayList.

    Raises ``pydantic.ValidationError`` if the data is invalid.
    Raises ``json.JSONDecodeError`` if the bytes are not valid JSON.
    """
    return OverlayList.model_validate(json.loads(data))


def load_applied_state(path: Path) -> AppliedState:
    """Read the applied-state file; a missing or unreadable file means never applied."""
    if not path.exists():
        return AppliedState()
    try:
        return AppliedState.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except Exception as exc:
        _log.warning("Could not load applied state from %s: %s", path, exc)
        return AppliedState()


def save_applied_state(path: Path, state: AppliedState):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(state.model_dump_json(indent=2), encoding="utf-8")
