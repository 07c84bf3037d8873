"""
Tests for the command-line driver.
"""

import json
import logging
from logging.handlers import RotatingFileHandler

from main import parse_args, run, setup_logging
from tests.conftest import BASE_GAME_FILES, read_tree, write_tree

LOGGER = logging.getLogger("modoverlay.tests")


def cli(tmp_path, *argv):
    return run(parse_args(list(argv)), LOGGER, tmp_path / "appdata")


def write_overlays(path, overlays):
    path.write_text(json.dumps({"schema_version": "1.0", "overlays": overlays}), encoding="utf-8")
    return path


def test_backup_apply_status_cycle(tmp_path, capsys):
    install = write_tree(tmp_path / "game", BASE_GAME_FILES)
    mod = write_tree(tmp_path / "mods" / "hd" / "Mod", {"data/textures/car.dds": "hd car"})
    overlays = write_overlays(tmp_path / "overlays.json", [
        {"id": "hd", "kind": "folder", "path": str(mod), "order": 1},
    ])
    common = ["--install-root", str(install), "--overlays", str(overlays)]

    assert cli(tmp_path, "backup", "--install-root", str(install)) == 0
    assert cli(tmp_path, "status", *common) == 0
    assert "Apply needed" in capsys.readouterr().out

    assert cli(tmp_path, "apply", *common) == 0
    assert (install / "data/textures/car.dds").read_bytes() == b"hd car"

    capsys.readouterr()
    assert cli(tmp_path, "status", *common) == 0
    assert "Up to date" in capsys.readouterr().out

    assert cli(tmp_path, "apply", *common) == 0
    assert "No changes" in capsys.readouterr().out


def test_apply_without_backup_fails(tmp_path, capsys):
    install = write_tree(tmp_path / "game", BASE_GAME_FILES)
    before = read_tree(install)

    assert cli(tmp_path, "apply", "--install-root", str(install)) == 1
    assert "backup" in capsys.readouterr().out.lower()
    assert read_tree(install) == before


def test_conflicts_command(tmp_path, capsys):
    install = write_tree(tmp_path / "game", BASE_GAME_FILES)
    a = write_tree(tmp_path / "mods" / "a", {"x/y.txt": "a"})
    b = write_tree(tmp_path / "mods" / "b", {"x/y.txt": "b"})
    overlays = write_overlays(tmp_path / "overlays.json", [
        {"id": "A", "kind": "folder", "path": str(a), "order": 1},
        {"id": "B", "kind": "folder", "path": str(b), "order": 2},
    ])

    assert cli(tmp_path, "conflicts", "--install-root", str(install), "--overlays", str(overlays)) == 0

    out = capsys.readouterr().out
    assert "x/y.txt: B wins over A" in out
    assert "1 conflict(s)" in out


def test_bad_overlay_list_fails(tmp_path):
    install = write_tree(tmp_path / "game", BASE_GAME_FILES)
    overlays = tmp_path / "overlays.json"
    overlays.write_text("[]", encoding="utf-8")
    assert cli(tmp_path, "apply", "--install-root", str(install), "--overlays", str(overlays)) == 1


def test_failed_apply_is_saved_as_needing_reapply(tmp_path, capsys):
    install = write_tree(tmp_path / "game", BASE_GAME_FILES)
    mod = write_tree(tmp_path / "mods" / "hd" / "Mod", {"data/textures/car.dds": "hd car"})
    broken = tmp_path / "broken.zip"
    broken.write_bytes(b"junk")
    good = [{"id": "hd", "kind": "folder", "path": str(mod), "order": 1}]
    overlays = tmp_path / "overlays.json"
    common = ["--install-root", str(install), "--overlays", str(overlays)]

    assert cli(tmp_path, "backup", "--install-root", str(install)) == 0
    write_overlays(overlays, good)
    assert cli(tmp_path, "apply", *common) == 0

    write_overlays(overlays, good + [{"id": "broken", "kind": "archive", "path": str(broken), "order": 2}])
    assert cli(tmp_path, "apply", *common) == 1

    write_overlays(overlays, good)
    capsys.readouterr()
    assert cli(tmp_path, "status", *common) == 0
    assert "Apply needed" in capsys.readouterr().out

    assert cli(tmp_path, "apply", *common) == 0
    assert "Applied successfully" in capsys.readouterr().out


def test_setup_logging_twice_attaches_one_file_handler(tmp_path, monkeypatch):
    monkeypatch.setenv("MODOVERLAY_LOG_DIR", str(tmp_path / "logs"))
    root = logging.getLogger()
    before = list(root.handlers)

    setup_logging()
    setup_logging()
    try:
        added = [h for h in root.handlers if h not in before]
        assert len(added) == 2
        assert len([h for h in added if isinstance(h, RotatingFileHandler)]) == 1
    finally:
        for handler in root.handlers[:]:
            if handler not in before:
                root.removeHandler(handler)
                handler.close()
