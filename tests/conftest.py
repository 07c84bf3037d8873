"""
Shared fixtures and helpers for the Mod Overlay Launcher test suite.
"""

import shutil
import zipfile
from pathlib import Path

import pytest

from overlay_models import ArchiveSource, FolderSource, GameInstallation, OverlayEntry

BASE_GAME_FILES = {
    "game.exe": b"exe",
    "data/textures/car.dds": b"original car",
    "data/audio/engine.bnk": b"original engine",
    "config/settings.xml": b"<settings/>",
}


def write_tree(root: Path, files: dict) -> Path:
    for rel, data in files.items():
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, str):
            data = data.encode("utf-8")
        target.write_bytes(data)
    return root


def read_tree(root: Path) -> dict[str, bytes]:
    return {
        f.relative_to(root).as_posix(): f.read_bytes()
        for f in sorted(root.rglob("*"))
        if f.is_file()
    }


def make_zip(path: Path, members: dict) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        for member, data in members.items():
            zf.writestr(member, data)
    return path


def folder_overlay(tmp_path: Path, overlay_id: str, files: dict, order: int, active: bool = True):
    root = write_tree(tmp_path / "mods" / overlay_id / "Mod", files)
    return OverlayEntry(id=overlay_id, source=FolderSource(root), active=active, order=order)


def archive_overlay(
    tmp_path: Path, overlay_id: str, members: dict, order: int, internal_root: str = ""
):
    archive_dir = tmp_path / "archives"
    archive_dir.mkdir(exist_ok=True)
    path = make_zip(archive_dir / f"{overlay_id}.zip", members)
    return OverlayEntry(id=overlay_id, source=ArchiveSource(path, internal_root), order=order)


@pytest.fixture
def game(tmp_path):
    """A fresh install tree plus its pristine backup (outside the install tree)."""
    install = write_tree(tmp_path / "game", BASE_GAME_FILES)
    backup = tmp_path / "backup"
    shutil.copytree(install, backup)
    return GameInstallation(install_root=install, backup_root=backup)
