"""
Apply-state tracking: decides whether a restore/apply cycle can be skipped.

A snapshot is the ordered list of (source identity, active flag) that was
last applied successfully. Two equal snapshots produce the same install
tree, so an unchanged snapshot means there is nothing to do.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from overlay_models import OverlayEntry, active_sequence, path_key

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotEntry:
    identity: str
    active: bool


AppliedSnapshot = tuple[SnapshotEntry, ...]


def snapshot_of(sequence: list[OverlayEntry]) -> AppliedSnapshot:
    """Snapshot of ``sequence`` in ascending priority.

    Inactive entries are kept with their flag so a toggle shows up as a
    difference even when the caller passes the full list.
    """
    ordered = sorted(sequence, key=lambda e: e.order)
    return tuple(SnapshotEntry(identity=e.source.identity, active=e.active) for e in ordered)


def has_changed(
    last_snapshot: AppliedSnapshot | None,
    sequence: list[OverlayEntry],
    force: bool = False,
) -> bool:
    if force:
        _log.debug("Changed: force flag set")
        return True
    if last_snapshot is None:
        _log.debug("Changed: nothing applied yet")
        return True

    proposed = snapshot_of(sequence)
    if not last_snapshot and not proposed:
        return False
    if len(last_snapshot) != len(proposed):
        return True
    for last, current in zip(last_snapshot, proposed):
        if last.identity != current.identity or last.active != current.active:
            return True
    return False


class ApplyStateTracker:
    """Last successfully applied state for one installation.

    ``mark_dirty`` sets a one-shot force flag (e.g. after the user edits a
    mod folder in place); it is cleared by the next successful ``record``.

    ``applied_files`` lists every relative path overlays may have written
    since the last clean restore. It survives failed and cancelled cycles so
    the next apply can remove what they left behind.
    """

    def __init__(
        self,
        last_snapshot: AppliedSnapshot | None = None,
        last_sequence: list[OverlayEntry] | None = None,
        applied_files: list[str] | None = None,
    ):
        self._lock = threading.Lock()
        self._last_snapshot = last_snapshot
        self._last_sequence: list[OverlayEntry] = list(last_sequence or [])
        self._applied_files: list[str] = _merge_files([], applied_files or [])
        self._force = False

    @property
    def last_snapshot(self) -> AppliedSnapshot | None:
        with self._lock:
            return self._last_snapshot

    @property
    def last_sequence(self) -> list[OverlayEntry]:
        """Active sequence of the last successful apply."""
        with self._lock:
            return list(self._last_sequence)

    @property
    def applied_files(self) -> list[str]:
        with self._lock:
            return list(self._applied_files)

    @property
    def forced(self) -> bool:
        return self._force

    def mark_dirty(self):
        with self._lock:
            self._force = True

    def has_changed(self, entries: list[OverlayEntry], force: bool = False) -> bool:
        with self._lock:
            last = self._last_snapshot
            forced = self._force or force
        return has_changed(last, active_sequence(entries), force=forced)

    def record(
        self,
        snapshot: AppliedSnapshot,
        sequence: list[OverlayEntry],
        applied_files: list[str] | None = None,
    ):
        with self._lock:
            self._last_snapshot = snapshot
            self._last_sequence = list(sequence)
            self._applied_files = _merge_files([], applied_files or [])
            self._force = False
        _log.info("Recorded applied state: %d overlay(s)", len(snapshot))

    def record_incomplete(self, written_files: list[str]):
        """Forget the snapshot after a cycle that modified the tree but did not finish."""
        with self._lock:
            self._last_snapshot = None
            self._last_sequence = []
            self._applied_files = _merge_files(self._applied_files, written_files)
        _log.warning("Apply did not complete; the next launch will re-apply")

    def clear(self):
        with self._lock:
            self._last_snapshot = None
            self._last_sequence = []
            self._applied_files = []


def _merge_files(existing: list[str], extra: list[str]) -> list[str]:
    merged = {path_key(rel): rel for rel in existing}
    for rel in extra:
        merged.setdefault(path_key(rel), rel)
    return list(merged.values())
