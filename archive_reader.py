"""
Read-only access to overlay archives (.zip / .7z / .rar).

Entries are listed with forward-slash names. Payload files live beneath a
fixed marker folder (``Mod/``), optionally nested under an internal root
(``<root>/Mod/``); anything outside that subtree is packaging and ignored.
"""

from __future__ import annotations

import logging
import os
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import py7zr
import rarfile

from errors import ArchiveReadError, UnknownOverlaySourceError
from overlay_models import PAYLOAD_ROOT_MARKER, normalize_relative

_log = logging.getLogger(__name__)

# rarfile shells out to an unrar tool; MODOVERLAY_UNRAR points it at a specific binary
if os.environ.get("MODOVERLAY_UNRAR"):
    rarfile.UNRAR_TOOL = os.environ["MODOVERLAY_UNRAR"]

SUPPORTED_EXTENSIONS = {".zip", ".7z", ".rar"}


@dataclass(frozen=True)
class ArchiveEntry:
    name: str  # Forward-slash normalized
    raw_name: str  # As stored in the archive, used for extraction
    is_dir: bool


def is_supported_archive(filepath: Path) -> bool:
    return filepath.suffix.lower() in SUPPORTED_EXTENSIONS


def payload_prefix(internal_root: str) -> str:
    root = normalize_relative(internal_root)
    return f"{root}/{PAYLOAD_ROOT_MARKER}/" if root else f"{PAYLOAD_ROOT_MARKER}/"


def _is_safe_relative(relpath: str) -> bool:
    parts = PurePosixPath(relpath).parts
    if not parts or relpath.startswith("/") or ":" in parts[0]:
        return False
    return ".." not in parts


def list_entries(filepath: Path) -> list[ArchiveEntry]:
    ext = filepath.suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise UnknownOverlaySourceError(f"Unsupported archive format: {ext or filepath.name}")
    if not filepath.is_file():
        raise ArchiveReadError(f"Archive not found: {filepath}")

    raw: list[tuple[str, bool]] = []
    try:
        if ext == ".zip":
            with zipfile.ZipFile(filepath, "r") as zf:
                raw = [(info.filename, info.is_dir()) for info in zf.infolist()]
        elif ext == ".7z":
            with py7zr.SevenZipFile(filepath, "r") as sz:
                raw = [(info.filename, info.is_directory) for info in sz.list()]
        else:
            with rarfile.RarFile(filepath, "r") as rf:
                raw = [(info.filename, info.is_dir()) for info in rf.infolist()]
    except Exception as exc:
        raise ArchiveReadError(f"Could not read {filepath.name}: {exc}") from exc

    entries = []
    for name, is_dir in raw:
        normalized = name.replace("\\", "/")
        entries.append(
            ArchiveEntry(
                name=normalized,
                raw_name=name,
                is_dir=is_dir or normalized.endswith("/"),
            )
        )
    return entries


def payload_members(entries: list[ArchiveEntry], internal_root: str = "") -> dict[str, str]:
    """Map payload-relative path -> raw archive member name.

    Prefix matching is case-insensitive; archives authored on Windows are
    inconsistent about the marker's casing.
    """
    prefix = payload_prefix(internal_root)
    prefix_lower = prefix.lower()
    members: dict[str, str] = {}
    for entry in entries:
        if entry.is_dir or not entry.name.lower().startswith(prefix_lower):
            continue
        rel = entry.name[len(prefix):]
        if not rel:
            continue
        if not _is_safe_relative(rel):
            _log.warning("Skipping unsafe archive member %r", entry.name)
            continue
        members[rel] = entry.raw_name
    return members


def extract_members(filepath: Path, members: list[str], dest: Path) -> dict[str, Path]:
    """Extract raw ``members`` into ``dest``; return member -> extracted file."""
    ext = filepath.suffix.lower()
    extracted: dict[str, Path] = {}
    if not members:
        return extracted
    try:
        if ext == ".zip":
            with zipfile.ZipFile(filepath, "r") as zf:
                for member in members:
                    extracted[member] = Path(zf.extract(member, dest))
        elif ext == ".7z":
            with py7zr.SevenZipFile(filepath, "r") as sz:
                sz.extract(path=dest, targets=members)
            for member in members:
                extracted[member] = dest / member.replace("\\", "/")
        elif ext == ".rar":
            with rarfile.RarFile(filepath, "r") as rf:
                for member in members:
                    rf.extract(member, dest)
                    extracted[member] = dest / member.replace("\\", "/")
        else:
            raise UnknownOverlaySourceError(f"Unsupported archive format: {ext}")
    except UnknownOverlaySourceError:
        raise
    except Exception as exc:
        raise ArchiveReadError(f"Extraction from {filepath.name} failed: {exc}") from exc
    return extracted
