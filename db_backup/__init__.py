"""Database backup engine.

Snapshots a relational database (pg_dump with a SQLAlchemy fallback),
verifies the snapshot, uploads it to S3-compatible storage and rotates old
backups with a daily/weekly/monthly policy.
"""

from .artifacts import (
    BackupArtifact,
    BackupRunResult,
    BackupTrigger,
    DumpMethod,
    DumpResult,
    IntegrityReport,
    RetentionResult,
    TableReport,
)
from .errors import (
    BackupError,
    BackupInProgressError,
    BackupNotFoundError,
    BackupTimeoutError,
    ConfigurationError,
    DumpError,
    IntegrityError,
    StorageError,
    UploadError,
)
from .manager import BackupManager
from .progress import BackupStatus, ConcurrencyPolicy, ProgressState
from .retention import DEFAULT_RETENTION_POLICY, RetentionEngine, RetentionPolicy

__all__ = [
    'BackupManager',
    'BackupArtifact',
    'BackupRunResult',
    'BackupTrigger',
    'DumpMethod',
    'DumpResult',
    'IntegrityReport',
    'RetentionResult',
    'TableReport',
    'BackupStatus',
    'ConcurrencyPolicy',
    'ProgressState',
    'RetentionEngine',
    'RetentionPolicy',
    'DEFAULT_RETENTION_POLICY',
    'BackupError',
    'BackupInProgressError',
    'BackupNotFoundError',
    'BackupTimeoutError',
    'ConfigurationError',
    'DumpError',
    'IntegrityError',
    'StorageError',
    'UploadError',
]
