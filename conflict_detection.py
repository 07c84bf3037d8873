"""
Conflict detection for the Mod Overlay Launcher.

A "conflict" means two or more active overlays both ship a file at the same
relative path. Only one copy can end up on disk: overlays are applied in
ascending priority and each one overwrites what came before, so the
highest-order contributor wins. The winner reported here is computed with
that exact rule, which keeps the conflict view and the installed tree in
agreement.

Public API
----------
detect_conflicts(entries, cache=None)
    -> list of ConflictRecord, sorted by relative path
file_contributions(sequence, indexes)
    -> list of FileContribution in application order
"""

from __future__ import annotations

import logging

from overlay_models import (
    ConflictRecord,
    FileContribution,
    OverlayEntry,
    active_sequence,
    path_key,
)
from payload_index import PayloadIndex, PayloadIndexCache

_log = logging.getLogger(__name__)


def file_contributions(
    sequence: list[OverlayEntry], indexes: dict[str, PayloadIndex]
) -> list[FileContribution]:
    contributions: list[FileContribution] = []
    for entry in sequence:
        index = indexes.get(entry.id)
        if index is None:
            continue
        for relpath in sorted(index.files):
            contributions.append(FileContribution(relative_path=relpath, overlay_id=entry.id))
    return contributions


def conflicts_from_indexes(
    sequence: list[OverlayEntry], indexes: dict[str, PayloadIndex]
) -> list[ConflictRecord]:
    """Build conflict records from precomputed indexes.

    ``sequence`` must already be in ascending priority.
    """
    # path key -> (display path, contributing ids in application order)
    by_path: dict[str, tuple[str, list[str]]] = {}
    for contribution in file_contributions(sequence, indexes):
        key = path_key(contribution.relative_path)
        slot = by_path.setdefault(key, (contribution.relative_path, []))
        if contribution.overlay_id not in slot[1]:
            slot[1].append(contribution.overlay_id)

    records = [
        ConflictRecord(
            relative_path=display,
            contributing_overlay_ids=tuple(ids),
            winning_overlay_id=ids[-1],
        )
        for display, ids in by_path.values()
        if len(ids) > 1
    ]
    records.sort(key=lambda r: r.relative_path)
    return records


def detect_conflicts(
    entries: list[OverlayEntry], cache: PayloadIndexCache | None = None
) -> list[ConflictRecord]:
    sequence = active_sequence(entries)
    if len(sequence) < 2:
        return []

    indexes = (cache or PayloadIndexCache()).index_all(sequence)
    records = conflicts_from_indexes(sequence, indexes)
    _log.info(
        "Conflict scan: %d active overlay(s), %d conflicting path(s)",
        len(sequence), len(records),
    )
    return records


def conflict_count(records: list[ConflictRecord]) -> int:
    return len(records)


def winners_by_path(records: list[ConflictRecord]) -> dict[str, str]:
    return {r.relative_path: r.winning_overlay_id for r in records}


def conflicts_for_overlay(records: list[ConflictRecord], overlay_id: str) -> list[ConflictRecord]:
    """Records the given overlay takes part in, won or lost."""
    return [r for r in records if overlay_id in r.contributing_overlay_ids]
