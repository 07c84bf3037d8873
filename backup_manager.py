"""
Pristine backup handling.

``restore_into`` is a plain overwrite-copy of the backup over the install
tree: it creates missing directories and replaces files, but never deletes
anything in the install tree and never writes to the backup. Per-file
failures are collected and the copy carries on.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from errors import BackupExistsError, MissingBackupError
from overlay_models import FileError, canonical_path
from payload_index import iter_folder_files

_log = logging.getLogger(__name__)


@dataclass
class RestoreResult:
    copied: int = 0
    errors: list[FileError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def backup_exists(backup_root: Path) -> bool:
    return Path(backup_root).is_dir()


def plan_restore(backup_root: Path) -> list[str]:
    """Relative paths the backup covers, in copy order."""
    return [rel for rel, _ in iter_folder_files(Path(backup_root))]


def restore_into(
    install_root: Path,
    backup_root: Path,
    progress: Optional[Callable[[int, int], None]] = None,
) -> RestoreResult:
    install_root = Path(install_root)
    backup_root = Path(backup_root)
    if not backup_exists(backup_root):
        raise MissingBackupError(backup_root)

    result = RestoreResult()
    planned = plan_restore(backup_root)
    total = len(planned)
    _log.info("Restoring %d file(s) from %s", total, backup_root)

    for i, rel in enumerate(planned, start=1):
        src = backup_root / rel
        dst = install_root / rel
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)
            result.copied += 1
        except OSError as exc:
            _log.warning("  Restore failed for %s: %s", rel, exc)
            result.errors.append(FileError(path=rel, message=str(exc)))
        if progress:
            progress(i, total)

    _log.info(
        "Restore complete: %d copied, %d failed", result.copied, len(result.errors)
    )
    return result


def _is_within(path: Path, parent: Path) -> bool:
    child = canonical_path(path)
    root = canonical_path(parent)
    return child == root or child.startswith(root + "/")


def create_backup(
    install_root: Path,
    backup_root: Path,
    include: Optional[list[str]] = None,
) -> RestoreResult:
    """Snapshot ``install_root`` (or only the ``include`` entries) into ``backup_root``.

    The backup folder itself is skipped when it lives inside the install
    tree. Include entries that do not exist are skipped.
    """
    install_root = Path(install_root)
    backup_root = Path(backup_root)
    if backup_exists(backup_root):
        raise BackupExistsError(backup_root)

    result = RestoreResult()
    sources = [install_root / name for name in include] if include else [install_root]
    backup_root.mkdir(parents=True)
    _log.info("Creating backup of %s at %s", install_root, backup_root)

    for source in sources:
        if not source.exists():
            _log.info("  Skipping non-existent source: %s", source)
            continue
        if source.is_file():
            files = [(source.relative_to(install_root).as_posix(), source)]
        else:
            files = [
                ((source / rel).relative_to(install_root).as_posix(), full)
                for rel, full in iter_folder_files(source)
            ]
        for rel, full in files:
            if _is_within(full, backup_root):
                continue
            dst = backup_root / rel
            try:
                dst.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(full, dst)
                result.copied += 1
            except OSError as exc:
                _log.warning("  Backup failed for %s: %s", rel, exc)
                result.errors.append(FileError(path=rel, message=str(exc)))

    _log.info("Backup complete: %d file(s) copied", result.copied)
    return result


def reset_backup(
    install_root: Path,
    backup_root: Path,
    include: Optional[list[str]] = None,
) -> RestoreResult:
    """Discard the current backup and snapshot the install tree again.

    The install tree should be in its pristine state (e.g. after the game's
    own file verification) before calling this.
    """
    backup_root = Path(backup_root)
    if backup_exists(backup_root):
        _log.info("Deleting existing backup at %s", backup_root)
        shutil.rmtree(backup_root)
    return create_backup(install_root, backup_root, include)
