"""
Ordered overlay application.

One cycle restores the pristine backup over the install tree and then copies
every active overlay's payload on top, lowest priority first. Each copy
overwrites whatever is already there, so for any path the file on disk comes
from the highest-order overlay that ships it.

States: IDLE -> RESTORING -> APPLYING -> DONE | FAILED | CANCELLED

Planning (which file goes where) is separate from execution so it can be
inspected without touching the disk.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from apply_state import AppliedSnapshot, snapshot_of
from archive_reader import extract_members
from backup_manager import backup_exists, plan_restore, restore_into
from errors import MissingBackupError, OverlayError
from overlay_models import (
    ArchiveSource,
    FileError,
    FolderSource,
    OverlayEntry,
    OverlayFailure,
    active_sequence,
    canonical_path,
    path_key,
)
from payload_index import PayloadIndex, PayloadIndexCache

_log = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


class ApplyState(Enum):
    IDLE = "idle"
    RESTORING = "restoring"
    APPLYING = "applying"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CopyOperation:
    relative_path: str
    source: str  # Absolute file path (folder) or raw member name (archive)


@dataclass
class OverlayPlan:
    entry: OverlayEntry
    index: PayloadIndex
    operations: list[CopyOperation] = field(default_factory=list)

    @property
    def error(self) -> str | None:
        return self.index.error


@dataclass
class ApplyResult:
    state: ApplyState
    failed_overlays: list[OverlayFailure] = field(default_factory=list)
    file_errors: list[FileError] = field(default_factory=list)  # Restore and cleanup
    files_copied: int = 0
    stale_removed: int = 0
    applied_snapshot: AppliedSnapshot | None = None
    install_modified: bool = False  # Restore started
    written_files: list[str] = field(default_factory=list)  # Paths overlays were copied to

    @property
    def succeeded(self) -> bool:
        return self.state is ApplyState.DONE

    @property
    def failed_overlay_ids(self) -> list[str]:
        return [f.overlay_id for f in self.failed_overlays]

    @property
    def failed_file_count(self) -> int:
        return len(self.file_errors) + sum(len(f.file_errors) for f in self.failed_overlays)

    def summary(self) -> str:
        if self.state is ApplyState.CANCELLED:
            if not self.install_modified:
                return "Apply cancelled; the game folder was not modified."
            return "Apply cancelled; the game folder is partially modded."
        if self.succeeded:
            return f"Applied successfully ({self.files_copied} overlay file(s) copied)"
        parts = []
        if self.failed_overlays:
            parts.append(f"{len(self.failed_overlays)} overlay(s) failed: "
                         + ", ".join(self.failed_overlay_ids))
        if self.failed_file_count:
            parts.append(f"{self.failed_file_count} file(s) could not be copied")
        return "; ".join(parts) or "Apply failed"


# ── Planning ──────────────────────────────────────────────────────────


def plan_overlay(entry: OverlayEntry, index: PayloadIndex) -> OverlayPlan:
    operations = [
        CopyOperation(relative_path=rel, source=index.files[rel])
        for rel in sorted(index.files)
    ]
    return OverlayPlan(entry=entry, index=index, operations=operations)


def plan_apply(
    entries: list[OverlayEntry], cache: PayloadIndexCache | None = None
) -> list[OverlayPlan]:
    """One plan per active overlay, in application order."""
    cache = cache or PayloadIndexCache()
    return [plan_overlay(entry, cache.get(entry)) for entry in active_sequence(entries)]


def final_owners(plans: list[OverlayPlan]) -> dict[str, str]:
    """Relative path -> overlay id whose copy survives the cycle."""
    owners: dict[str, tuple[str, str]] = {}
    for plan in plans:
        for op in plan.operations:
            owners[path_key(op.relative_path)] = (op.relative_path, plan.entry.id)
    return dict(owners.values())


# ── Install-root locking ──────────────────────────────────────────────

_install_locks: dict[str, threading.Lock] = {}
_install_locks_guard = threading.Lock()


def _lock_for(install_root: Path) -> threading.Lock:
    key = canonical_path(install_root)
    with _install_locks_guard:
        lock = _install_locks.get(key)
        if lock is None:
            lock = _install_locks[key] = threading.Lock()
        return lock


# ── Execution ─────────────────────────────────────────────────────────


def _copy_file(rel: str, src: Path, install_root: Path) -> FileError | None:
    dst = install_root / rel
    try:
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)
    except OSError as exc:
        return FileError(path=rel, message=str(exc))
    return None


def _cleanup_empty_dirs(start: Path, stop_at: Path):
    current = start
    while current.exists() and current != stop_at and current != current.parent:
        if any(current.iterdir()):
            break
        current.rmdir()
        current = current.parent


class OverlayApplier:
    """Runs restore + ordered apply cycles.

    ``copy_workers`` > 1 copies the files of a single overlay in parallel.
    Overlays themselves are always applied one after another.
    """

    def __init__(
        self,
        cache: PayloadIndexCache | None = None,
        copy_workers: int = 1,
    ):
        self.cache = cache or PayloadIndexCache()
        self.copy_workers = max(1, copy_workers)
        self.state = ApplyState.IDLE

    def _report(self, progress: Optional[ProgressCallback], step: int, total: int, label: str):
        if progress is None:
            return
        try:
            progress(step, total, label)
        except Exception as exc:
            _log.warning("Progress callback raised, ignoring: %s", exc)

    def _copy_all(
        self, pairs: list[tuple[str, Path]], install_root: Path
    ) -> tuple[int, list[FileError]]:
        if self.copy_workers > 1 and len(pairs) > 1:
            with ThreadPoolExecutor(max_workers=self.copy_workers) as pool:
                outcomes = list(pool.map(lambda p: _copy_file(p[0], p[1], install_root), pairs))
        else:
            outcomes = [_copy_file(rel, src, install_root) for rel, src in pairs]
        errors = [o for o in outcomes if o is not None]
        return len(pairs) - len(errors), errors

    def _execute_plan(self, plan: OverlayPlan, install_root: Path) -> tuple[int, list[FileError]]:
        """Copy one overlay's files. Raises OverlayError if its source can't be read."""
        source = plan.entry.source
        if isinstance(source, FolderSource):
            pairs = [(op.relative_path, Path(op.source)) for op in plan.operations]
            return self._copy_all(pairs, install_root)

        if isinstance(source, ArchiveSource):
            with tempfile.TemporaryDirectory() as tmpdir:
                members = [op.source for op in plan.operations]
                extracted = extract_members(source.archive_path, members, Path(tmpdir))
                pairs = []
                missing = []
                for op in plan.operations:
                    src = extracted.get(op.source)
                    if src is None or not src.is_file():
                        missing.append(FileError(
                            path=op.relative_path,
                            message="Expected file not found after extraction",
                        ))
                        continue
                    pairs.append((op.relative_path, src))
                copied, errors = self._copy_all(pairs, install_root)
                return copied, missing + errors

        raise OverlayError(f"Unknown overlay source: {source!r}")

    def _remove_stale(
        self,
        install_root: Path,
        backup_root: Path,
        previous_files: list[str],
        plans: list[OverlayPlan],
        result: ApplyResult,
    ):
        """Delete files earlier cycles wrote that neither the backup nor this cycle provides."""
        keep = {path_key(rel) for rel in plan_restore(backup_root)}
        keep.update(path_key(op.relative_path) for plan in plans for op in plan.operations)

        for rel in previous_files:
            if path_key(rel) in keep:
                continue
            target = install_root / rel
            if not target.is_file():
                continue
            try:
                target.unlink()
                _cleanup_empty_dirs(target.parent, stop_at=install_root)
                result.stale_removed += 1
            except OSError as exc:
                result.file_errors.append(FileError(path=rel, message=str(exc)))
        if result.stale_removed:
            _log.info("Removed %d file(s) left by previous overlays", result.stale_removed)

    def apply(
        self,
        install_root: Path,
        backup_root: Path,
        entries: list[OverlayEntry],
        previous_files: list[str] | None = None,
        progress: Optional[ProgressCallback] = None,
        cancel_event: threading.Event | None = None,
    ) -> ApplyResult:
        """Restore the backup and apply ``entries``' active sequence.

        Raises ``MissingBackupError`` before touching ``install_root`` when
        the backup is missing. Every other failure ends up in the result.

        ``previous_files`` are the relative paths earlier cycles copied into
        the tree; the ones nothing provides any more are deleted.
        """
        install_root = Path(install_root)
        backup_root = Path(backup_root)

        with _lock_for(install_root):
            if not backup_exists(backup_root):
                self.state = ApplyState.FAILED
                raise MissingBackupError(backup_root)

            sequence = active_sequence(entries)
            total = len(sequence) + 2
            result = ApplyResult(state=ApplyState.RESTORING)

            if cancel_event is not None and cancel_event.is_set():
                self.state = result.state = ApplyState.CANCELLED
                return result

            plans = [plan_overlay(entry, self.cache.get(entry)) for entry in sequence]

            self.state = ApplyState.RESTORING
            result.install_modified = True
            self._report(progress, 0, total, "Restoring original game files...")
            if previous_files:
                self._remove_stale(install_root, backup_root, previous_files, plans, result)
            restored = restore_into(install_root, backup_root)
            result.file_errors.extend(restored.errors)

            self.state = result.state = ApplyState.APPLYING
            for i, plan in enumerate(plans):
                if cancel_event is not None and cancel_event.is_set():
                    _log.info("Apply cancelled before overlay %d/%d", i + 1, len(plans))
                    self.state = result.state = ApplyState.CANCELLED
                    return result

                label = plan.entry.label
                self._report(progress, i + 1, total, f"Applying mod ({i + 1}/{len(plans)}): {label}")
                if plan.error:
                    result.failed_overlays.append(
                        OverlayFailure(overlay_id=plan.entry.id, message=plan.error)
                    )
                    continue

                result.written_files.extend(op.relative_path for op in plan.operations)
                try:
                    copied, errors = self._execute_plan(plan, install_root)
                except OverlayError as exc:
                    _log.warning("Overlay '%s' failed: %s", label, exc)
                    result.failed_overlays.append(
                        OverlayFailure(overlay_id=plan.entry.id, message=str(exc))
                    )
                    continue

                result.files_copied += copied
                if errors:
                    _log.warning("Overlay '%s': %d file(s) failed to copy", label, len(errors))
                    result.failed_overlays.append(
                        OverlayFailure(
                            overlay_id=plan.entry.id,
                            message=f"{len(errors)} file(s) could not be copied",
                            file_errors=errors,
                        )
                    )
                else:
                    _log.info("  Applied '%s' (%d file(s))", label, copied)

            failed = bool(result.failed_overlays or result.file_errors)
            self.state = result.state = ApplyState.FAILED if failed else ApplyState.DONE
            if result.succeeded:
                result.applied_snapshot = snapshot_of(sequence)
            self._report(progress, total - 1, total, result.summary())
            return result
