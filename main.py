#!/usr/bin/env python3
"""Mod Overlay Launcher — Entry Point"""

import argparse
import faulthandler
import hashlib
import logging
import os
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path

COMMANDS = ("apply", "conflicts", "status", "backup", "reset-backup")


# Handlers installed by the last setup_logging call
_handlers: list[logging.Handler] = []


def setup_logging(level: str = "INFO") -> tuple[logging.Logger, Path]:
    log_dir = Path(
        os.environ.get("MODOVERLAY_LOG_DIR")
        or Path(os.environ.get("APPDATA", "~")).expanduser() / "ModOverlayLauncher"
    )
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "modoverlay.log"

    handler = RotatingFileHandler(
        log_file,
        maxBytes=1 * 1024 * 1024,  # 1 MB
        backupCount=2,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"))

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    # Library modules log under their own names; attach to the root so they're captured
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for old in _handlers:
        root.removeHandler(old)
        old.close()
    _handlers[:] = [handler, console]
    for new in _handlers:
        root.addHandler(new)

    logger = logging.getLogger("modoverlay")
    return logger, log_dir


def install_crash_handler(logger: logging.Logger, log_dir: Path):
    # Python-level unhandled exceptions
    def handle_exception(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logger.critical(
            "Unhandled exception:\n%s",
            "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
        )

    sys.excepthook = handle_exception

    # C-level crashes (segfault, abort) — faulthandler writes to a separate
    # file because it can't use Python logging machinery after a crash
    crash_file = log_dir / "crash.log"
    faulthandler.enable(open(crash_file, "w"), all_threads=True)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mod Overlay Launcher")
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument("--install-root", required=True)
    parser.add_argument("--backup-root")
    parser.add_argument("--overlays", help="JSON overlay list")
    parser.add_argument("--state-file", help="Where the last applied state is kept")
    parser.add_argument("--include", action="append", help="Top-level entry to back up (repeatable)")
    parser.add_argument("--force", action="store_true")
    parser.add_argument("--copy-workers", type=int, default=1)
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def _print_progress(step: int, total: int, label: str):
    print(f"[{step + 1}/{total}] {label}")


def run(args: argparse.Namespace, logger: logging.Logger, data_dir: Path) -> int:
    from overlay_manager import OverlayManager
    from overlay_models import GameInstallation, canonical_path
    from overlay_schema import AppliedState, load_applied_state, parse_overlay_list, save_applied_state

    installation = GameInstallation.from_install_root(args.install_root, args.backup_root)
    if args.state_file:
        state_file = Path(args.state_file)
    else:
        digest = hashlib.sha1(canonical_path(installation.install_root).encode()).hexdigest()
        state_file = data_dir / "state" / f"{digest[:16]}.json"

    entries = []
    if args.overlays:
        try:
            entries = parse_overlay_list(Path(args.overlays).read_bytes()).to_entries()
        except Exception as exc:
            logger.error("Could not load overlay list %s: %s", args.overlays, exc)
            return 1

    state = load_applied_state(state_file)
    tracker = state.to_tracker()
    manager = OverlayManager(
        installation,
        log_callback=logger.info,
        tracker=tracker,
        copy_workers=args.copy_workers,
    )

    if args.command == "backup":
        ok, msg = manager.create_backup(args.include)
        print(msg)
        return 0 if ok else 1

    if args.command == "reset-backup":
        ok, msg = manager.reset_backup(args.include)
        if ok:
            save_applied_state(state_file, AppliedState())
        print(msg)
        return 0 if ok else 1

    if args.command == "conflicts":
        records = manager.detect_conflicts(entries)
        for record in records:
            losers = ", ".join(record.contributing_overlay_ids[:-1])
            print(f"{record.relative_path}: {record.winning_overlay_id} wins over {losers}")
        print(f"{len(records)} conflict(s)")
        return 0

    if args.command == "status":
        for issue in manager.validate_paths() + manager.validate_overlays(entries):
            print(f"! {issue}")
        changed = manager.has_changed(entries, force=args.force)
        print("Apply needed" if changed else "Up to date")
        return 0

    ok, msg = manager.check_and_apply(entries, force=args.force, progress=_print_progress)
    # A failed or cancelled apply saves a null snapshot, so the next launch re-applies
    save_applied_state(state_file, AppliedState.from_tracker(manager.tracker))
    print(msg)
    return 0 if ok else 1


def main(argv=None) -> int:
    args = parse_args(argv)
    logger, log_dir = setup_logging(args.log_level)
    install_crash_handler(logger, log_dir)
    logger.info("Starting Mod Overlay Launcher: %s", args.command)
    return run(args, logger, log_dir)


if __name__ == "__main__":
    sys.exit(main())
