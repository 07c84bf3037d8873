"""
Mod Overlay Launcher - data model

Overlay sources, entries and the records produced by conflict detection and
application. Sources carry a canonical identity string; that string is the
only thing compared when matching overlays across passes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

PAYLOAD_ROOT_MARKER = "Mod"
BACKUP_FOLDER_NAME = "Pristine_GameData"

# Windows paths compare case-insensitively; everything else is exact.
CASE_INSENSITIVE_PATHS = os.name == "nt"


def canonical_path(path: str | Path) -> str:
    """Absolute, normalized, forward-slash form of ``path`` used for identity."""
    text = os.path.normpath(os.path.abspath(os.fspath(path))).replace("\\", "/")
    return text.casefold() if CASE_INSENSITIVE_PATHS else text


def normalize_relative(path: str) -> str:
    """Forward-slash relative path with no leading/trailing separators."""
    return path.replace("\\", "/").strip("/")


def path_key(relative_path: str) -> str:
    """Key under which two relative paths land on the same file on this host."""
    return relative_path.casefold() if CASE_INSENSITIVE_PATHS else relative_path


@dataclass(frozen=True)
class FolderSource:
    path: Path

    kind = "folder"

    def __post_init__(self):
        object.__setattr__(self, "path", Path(self.path))

    @property
    def identity(self) -> str:
        return f"folder:{canonical_path(self.path)}"

    def describe(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class ArchiveSource:
    archive_path: Path
    internal_root: str = ""  # Subfolder holding the payload marker, "" for the archive root

    kind = "archive"

    def __post_init__(self):
        object.__setattr__(self, "archive_path", Path(self.archive_path))

    @property
    def identity(self) -> str:
        root = normalize_relative(self.internal_root)
        if CASE_INSENSITIVE_PATHS:
            root = root.casefold()
        return f"archive:{canonical_path(self.archive_path)}::{root}"

    def describe(self) -> str:
        root = normalize_relative(self.internal_root)
        return f"{self.archive_path.name}:{root}" if root else self.archive_path.name


OverlaySource = Union[FolderSource, ArchiveSource]


@dataclass
class OverlayEntry:
    """One overlay in the user's list.

    ``order`` is ascending priority: lower applies first, higher wins.
    """

    id: str
    source: OverlaySource
    active: bool = True
    order: int = 0
    name: str | None = None  # Display only, never used for matching

    @property
    def label(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class GameInstallation:
    install_root: Path
    backup_root: Path

    @classmethod
    def from_install_root(
        cls, install_root: str | Path, backup_root: str | Path | None = None
    ) -> GameInstallation:
        root = Path(install_root)
        backup = Path(backup_root) if backup_root else root / BACKUP_FOLDER_NAME
        return cls(install_root=root, backup_root=backup)


@dataclass(frozen=True)
class FileContribution:
    relative_path: str
    overlay_id: str


@dataclass(frozen=True)
class ConflictRecord:
    relative_path: str
    contributing_overlay_ids: tuple[str, ...]  # Ascending priority
    winning_overlay_id: str


@dataclass(frozen=True)
class FileError:
    path: str
    message: str


@dataclass
class OverlayFailure:
    overlay_id: str
    message: str
    file_errors: list[FileError] = field(default_factory=list)


def active_sequence(entries: list[OverlayEntry]) -> list[OverlayEntry]:
    """Active entries in ascending priority.

    The sort is stable, so entries sharing an ``order`` keep their list
    position relative to each other.
    """
    return sorted((e for e in entries if e.active), key=lambda e: e.order)
