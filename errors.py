"""
Error types for the overlay pipeline.

Only ``MissingBackupError`` aborts an apply. Archive and source errors are
raised by the low-level readers and turned into per-overlay failures by the
applier; per-file copy failures never raise, they are recorded as
``overlay_models.FileError`` values.
"""


class OverlayError(Exception):
    """Base class for every error raised by the overlay pipeline."""


class MissingBackupError(OverlayError):
    def __init__(self, backup_root):
        self.backup_root = backup_root
        super().__init__(
            f"Pristine backup not found at {backup_root}. Create a backup first."
        )


class BackupExistsError(OverlayError):
    def __init__(self, backup_root):
        self.backup_root = backup_root
        super().__init__(
            f"A backup already exists at {backup_root}. Reset it to take a new one."
        )


class ArchiveReadError(OverlayError):
    """An archive could not be listed or extracted."""


class UnknownOverlaySourceError(OverlayError):
    """The overlay source kind or archive format is not supported."""
