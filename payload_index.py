"""
Payload file index: the relative paths one overlay contributes.

Folder overlays are walked on every request. Archive overlays are listed
once and cached until the archive file changes on disk (mtime or size).
Failures never raise out of here; they produce an empty index carrying an
error message so the caller can flag that overlay and move on.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from archive_reader import list_entries, payload_members
from errors import OverlayError, UnknownOverlaySourceError
from overlay_models import ArchiveSource, FolderSource, OverlayEntry, OverlaySource

_log = logging.getLogger(__name__)


@dataclass
class PayloadIndex:
    overlay_id: str
    source: OverlaySource
    # relative path -> copy source (absolute file for folders, member name for archives)
    files: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    @property
    def relative_paths(self) -> frozenset[str]:
        return frozenset(self.files)

    @property
    def ok(self) -> bool:
        return self.error is None


def iter_folder_files(root: Path) -> Iterator[tuple[str, Path]]:
    """Yield ``(relative_path, absolute_path)`` for every file below ``root``."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        for name in sorted(filenames):
            full = base / name
            yield full.relative_to(root).as_posix(), full


def _index_folder(overlay_id: str, source: FolderSource) -> PayloadIndex:
    index = PayloadIndex(overlay_id=overlay_id, source=source)
    if not source.path.is_dir():
        index.error = f"Overlay folder does not exist: {source.path}"
        return index
    try:
        index.files = {rel: str(full) for rel, full in iter_folder_files(source.path)}
    except OSError as exc:
        index.files = {}
        index.error = f"Could not read overlay folder {source.path}: {exc}"
    return index


def _index_archive(overlay_id: str, source: ArchiveSource) -> PayloadIndex:
    index = PayloadIndex(overlay_id=overlay_id, source=source)
    try:
        index.files = payload_members(list_entries(source.archive_path), source.internal_root)
    except OverlayError as exc:
        index.error = str(exc)
    return index


def build_payload_index(entry: OverlayEntry) -> PayloadIndex:
    source = entry.source
    if isinstance(source, FolderSource):
        index = _index_folder(entry.id, source)
    elif isinstance(source, ArchiveSource):
        index = _index_archive(entry.id, source)
    else:
        index = PayloadIndex(
            overlay_id=entry.id,
            source=source,
            error=str(UnknownOverlaySourceError(f"Unknown overlay source: {source!r}")),
        )

    if index.error:
        _log.warning("Overlay '%s': %s", entry.label, index.error)
    else:
        _log.debug("Overlay '%s': %d payload file(s)", entry.label, len(index.files))
    return index


def _archive_fingerprint(path: Path) -> tuple[int, int] | None:
    try:
        st = path.stat()
    except OSError:
        return None
    return st.st_mtime_ns, st.st_size


class PayloadIndexCache:
    """Archive payload indexes keyed by source identity.

    A cached index is reused only while the archive's (mtime, size) is
    unchanged. Failed reads are not cached.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._archives: dict[str, tuple[tuple[int, int], dict[str, str]]] = {}
        self.archive_reads = 0

    def get(self, entry: OverlayEntry) -> PayloadIndex:
        source = entry.source
        if not isinstance(source, ArchiveSource):
            return build_payload_index(entry)

        fingerprint = _archive_fingerprint(source.archive_path)
        key = source.identity
        with self._lock:
            cached = self._archives.get(key)
        if cached is not None and fingerprint is not None and cached[0] == fingerprint:
            return PayloadIndex(overlay_id=entry.id, source=source, files=dict(cached[1]))

        index = build_payload_index(entry)
        with self._lock:
            self.archive_reads += 1
            if index.ok and fingerprint is not None:
                self._archives[key] = (fingerprint, dict(index.files))
            else:
                self._archives.pop(key, None)
        return index

    def invalidate(self, source: OverlaySource | None = None):
        with self._lock:
            if source is None:
                self._archives.clear()
            else:
                self._archives.pop(source.identity, None)

    def index_all(self, sequence: list[OverlayEntry]) -> dict[str, PayloadIndex]:
        """Index each overlay of ``sequence`` once, keyed by overlay id."""
        return {entry.id: self.get(entry) for entry in sequence}
