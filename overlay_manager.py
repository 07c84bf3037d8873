"""
Mod Overlay Launcher - Core Logic

Ties the overlay pipeline together for one game installation: conflict
reporting, the launch-time change gate, and restore + apply cycles.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

import backup_manager
from apply_state import ApplyStateTracker
from conflict_detection import detect_conflicts
from errors import BackupExistsError, MissingBackupError
from overlay_applier import ApplyResult, OverlayApplier, ProgressCallback
from overlay_models import ConflictRecord, GameInstallation, OverlayEntry, active_sequence
from payload_index import PayloadIndexCache

_log = logging.getLogger(__name__)


class OverlayManager:
    """
    Main overlay controller for a single game installation.

    Workflow:
        1. create_backup() once, while the game folder is still unmodded
        2. detect_conflicts() whenever the overlay list changes, for display
        3. check_and_apply() before every launch; it skips the file work when
           the active overlays are the same as last time
    """

    def __init__(
        self,
        installation: GameInstallation,
        log_callback: Optional[Callable[[str], None]] = None,
        cache: PayloadIndexCache | None = None,
        tracker: ApplyStateTracker | None = None,
        copy_workers: int = 1,
    ):
        self.installation = installation
        self.cache = cache or PayloadIndexCache()
        self.tracker = tracker or ApplyStateTracker()
        self.applier = OverlayApplier(self.cache, copy_workers=copy_workers)
        self._log_cb = log_callback or _log.info
        self._executor: ThreadPoolExecutor | None = None

    @property
    def install_root(self) -> Path:
        return self.installation.install_root

    @property
    def backup_root(self) -> Path:
        return self.installation.backup_root

    # ── Logging ───────────────────────────────────────────────────────

    def log(self, msg: str):
        self._log_cb(msg)

    # ── Backup ────────────────────────────────────────────────────────

    def has_backup(self) -> bool:
        return backup_manager.backup_exists(self.backup_root)

    def create_backup(self, include: Optional[list[str]] = None) -> tuple[bool, str]:
        self.log(f"Creating backup of {self.install_root}...")
        try:
            result = backup_manager.create_backup(self.install_root, self.backup_root, include)
        except BackupExistsError as exc:
            return False, str(exc)
        except OSError as exc:
            return False, f"Backup failed: {exc}"
        if result.errors:
            return False, f"Backup incomplete: {len(result.errors)} file(s) could not be copied"
        return True, f"Backed up {result.copied} file(s)"

    def reset_backup(self, include: Optional[list[str]] = None) -> tuple[bool, str]:
        self.log(f"Resetting backup at {self.backup_root}...")
        try:
            result = backup_manager.reset_backup(self.install_root, self.backup_root, include)
        except OSError as exc:
            return False, f"Backup reset failed: {exc}"
        # A new baseline invalidates whatever was applied on top of the old one
        self.tracker.clear()
        if result.errors:
            return False, f"Backup incomplete: {len(result.errors)} file(s) could not be copied"
        return True, f"Backed up {result.copied} file(s)"

    # ── Conflicts ─────────────────────────────────────────────────────

    def detect_conflicts(self, entries: list[OverlayEntry]) -> list[ConflictRecord]:
        return detect_conflicts(entries, self.cache)

    def invalidate(self, entry: OverlayEntry | None = None):
        """Forget cached payload listings after an overlay's files changed on disk."""
        self.cache.invalidate(entry.source if entry else None)
        self.tracker.mark_dirty()

    # ── Change gate ───────────────────────────────────────────────────

    def has_changed(self, entries: list[OverlayEntry], force: bool = False) -> bool:
        return self.tracker.has_changed(entries, force=force)

    # ── Apply ─────────────────────────────────────────────────────────

    def apply(
        self,
        entries: list[OverlayEntry],
        progress: Optional[ProgressCallback] = None,
        cancel_event: threading.Event | None = None,
    ) -> ApplyResult:
        """Restore and apply; raises MissingBackupError if there is no backup."""
        sequence = active_sequence(entries)
        if sequence:
            self.log(f"Applying {len(sequence)} overlay(s) to {self.install_root}...")
        else:
            self.log("No active overlays, restoring original game files...")

        result = self.applier.apply(
            self.install_root,
            self.backup_root,
            sequence,
            previous_files=self.tracker.applied_files,
            progress=progress,
            cancel_event=cancel_event,
        )

        for failure in result.failed_overlays:
            self.log(f"  Overlay '{failure.overlay_id}' failed: {failure.message}")
        if result.succeeded and result.applied_snapshot is not None:
            self.tracker.record(result.applied_snapshot, sequence, result.written_files)
        elif result.install_modified:
            self.tracker.record_incomplete(result.written_files)
        self.log(result.summary())
        return result

    def check_and_apply(
        self,
        entries: list[OverlayEntry],
        force: bool = False,
        progress: Optional[ProgressCallback] = None,
        cancel_event: threading.Event | None = None,
    ) -> tuple[bool, str]:
        if not self.has_changed(entries, force=force):
            self.log("No changes detected in overlays - nothing to apply")
            return True, "No changes"

        try:
            result = self.apply(entries, progress=progress, cancel_event=cancel_event)
        except MissingBackupError as exc:
            self.log(f"  {exc}")
            return False, "Original game data backup not found. Create a backup first."
        return result.succeeded, result.summary()

    def start_apply(
        self,
        entries: list[OverlayEntry],
        force: bool = False,
        progress: Optional[ProgressCallback] = None,
        cancel_event: threading.Event | None = None,
    ) -> Future:
        """Run check_and_apply on a background thread; the future yields its tuple."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="overlay-apply")
        return self._executor.submit(
            self.check_and_apply, list(entries), force, progress, cancel_event
        )

    def shutdown(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    # ── Validation ────────────────────────────────────────────────────

    def validate_paths(self) -> list[str]:
        issues = []

        if not self.install_root.exists():
            issues.append(f"Game install directory does not exist: {self.install_root}")

        if not self.has_backup():
            issues.append(
                f"Original game data backup not found: {self.backup_root} "
                f"(create one before applying mods)"
            )

        return issues

    def validate_overlays(self, entries: list[OverlayEntry]) -> list[str]:
        issues = []
        for entry in active_sequence(entries):
            index = self.cache.get(entry)
            if index.error:
                issues.append(f"{entry.label}: {index.error}")
        return issues
