"""Error hierarchy for backup operations."""

from typing import List, Optional


class BackupError(RuntimeError):
    """Base exception for backup related failures."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(BackupError):
    """Required storage or database settings are missing."""


class DumpError(BackupError):
    """Every snapshot exporter failed."""


class IntegrityError(BackupError):
    """Snapshot failed verification and must not be uploaded."""

    def __init__(self, message: str, report=None):
        self.report = report
        self.validation_errors: List[str] = list(report.validation_errors) if report else []
        super().__init__(message, details="; ".join(self.validation_errors) or None)


class UploadError(BackupError):
    """Writing the artifact to object storage failed."""


class StorageError(BackupError):
    """Listing or reading stored artifacts failed."""


class BackupNotFoundError(StorageError):
    """No artifact exists under the requested key."""


class BackupInProgressError(BackupError):
    """Another run is active and the concurrency policy rejects this one."""

    def __init__(self, message: str, active_run_id: Optional[str] = None):
        super().__init__(message)
        self.active_run_id = active_run_id


class BackupTimeoutError(BackupError):
    """The run exceeded its wall-clock ceiling."""


__all__ = [
    "BackupError",
    "ConfigurationError",
    "DumpError",
    "IntegrityError",
    "UploadError",
    "StorageError",
    "BackupNotFoundError",
    "BackupInProgressError",
    "BackupTimeoutError",
]
