"""Typed records that flow through a backup run."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


class DumpMethod(str, Enum):
    NATIVE = "native"
    LOGICAL = "logical"


class BackupTrigger(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


# backup-2024-01-15T10-30-00-000Z.sql
KEY_TIMESTAMP_RE = re.compile(
    r'backup-(?:[a-z]+-)*(\d{4}-\d{2}-\d{2})T(\d{2})-(\d{2})-(\d{2})(?:-(\d{1,6}))?Z?'
)


def format_size(bytes_size: int) -> str:
    """Format bytes as human-readable size."""
    if bytes_size == 0:
        return "0 B"
    size = float(bytes_size)
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size < 1024.0:
            return f"{size:.2f} {unit}"
        size /= 1024.0
    return f"{size:.2f} PB"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_utc(ts: datetime) -> str:
    """ISO-8601 with millisecond precision and a trailing Z."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    ts = ts.astimezone(timezone.utc)
    return ts.strftime('%Y-%m-%dT%H:%M:%S.') + f"{ts.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO timestamp written by isoformat_utc (or any ISO variant)."""
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def timestamp_from_key(key: str) -> Optional[datetime]:
    """Recover the creation time encoded in an artifact file name."""
    match = KEY_TIMESTAMP_RE.search(key)
    if not match:
        return None
    date, hour, minute, second, fraction = match.groups()
    micro = int((fraction or '0').ljust(6, '0')[:6])
    try:
        ts = datetime.strptime(f"{date} {hour}:{minute}:{second}", '%Y-%m-%d %H:%M:%S')
    except ValueError:
        return None
    return ts.replace(microsecond=micro, tzinfo=timezone.utc)


def _as_bool(value: Optional[str]) -> bool:
    return str(value).strip().lower() in ('1', 'true', 'yes')


def _as_int(value: Optional[str], default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class BackupArtifact:
    """A stored snapshot. Immutable once uploaded."""
    key: str
    file_name: str
    created_at: datetime
    size_bytes: int
    checksum: Optional[str] = None
    record_count: int = 0
    table_count: int = 0
    method: Optional[DumpMethod] = None
    trigger: BackupTrigger = BackupTrigger.AUTOMATIC
    validated: bool = False

    @property
    def is_manual(self) -> bool:
        return self.trigger == BackupTrigger.MANUAL

    @property
    def size_formatted(self) -> str:
        return format_size(self.size_bytes)

    def to_metadata(self) -> Dict[str, str]:
        """String map stored alongside the object."""
        metadata = {
            'timestamp': isoformat_utc(self.created_at),
            'type': self.trigger.value,
            'size': str(self.size_bytes),
            'record-count': str(self.record_count),
            'table-count': str(self.table_count),
            'validated': 'true' if self.validated else 'false',
        }
        if self.method:
            metadata['method'] = self.method.value
        if self.checksum:
            metadata['checksum'] = self.checksum
        return metadata

    @classmethod
    def from_metadata(cls, key: str, metadata: Optional[Dict[str, str]], size_bytes: int,
                      last_modified: Optional[datetime] = None) -> "BackupArtifact":
        """Rebuild an artifact from an object listing plus its metadata map.

        Older objects may lack some fields. Creation time falls back to the
        time encoded in the key, then to the object's LastModified. The
        trigger falls back to "manual" appearing in the key.
        """
        metadata = {k.lower(): v for k, v in (metadata or {}).items()}
        file_name = key.rsplit('/', 1)[-1]

        created_at = (parse_timestamp(metadata.get('timestamp', ''))
                      or timestamp_from_key(file_name)
                      or last_modified)
        if created_at is None:
            created_at = datetime.fromtimestamp(0, timezone.utc)
        elif created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        trigger_value = metadata.get('type', '').lower()
        if trigger_value in (BackupTrigger.MANUAL.value, BackupTrigger.AUTOMATIC.value):
            trigger = BackupTrigger(trigger_value)
        elif 'manual' in file_name.lower():
            trigger = BackupTrigger.MANUAL
        else:
            trigger = BackupTrigger.AUTOMATIC

        method_value = metadata.get('method', '').lower()
        method = DumpMethod(method_value) if method_value in ('native', 'logical') else None

        return cls(
            key=key,
            file_name=file_name,
            created_at=created_at,
            size_bytes=size_bytes,
            checksum=metadata.get('checksum') or None,
            record_count=_as_int(metadata.get('record-count')),
            table_count=_as_int(metadata.get('table-count')),
            method=method,
            trigger=trigger,
            validated=_as_bool(metadata.get('validated')),
        )

    def to_dict(self) -> dict:
        return {
            'key': self.key,
            'fileName': self.file_name,
            'size': self.size_bytes,
            'sizeFormatted': self.size_formatted,
            'lastModified': isoformat_utc(self.created_at),
            'type': self.trigger.value,
            'method': self.method.value if self.method else None,
            'checksum': self.checksum,
            'recordCount': self.record_count,
            'tablesCount': self.table_count,
            'validated': self.validated,
        }


@dataclass
class TableReport:
    """Per-table result of snapshot verification."""
    name: str
    record_count: int
    is_valid: bool = True
    expected_count: Optional[int] = None


@dataclass
class IntegrityReport:
    """Result of snapshot verification. Not persisted."""
    is_valid: bool
    checksum: str
    size_bytes: int
    record_count: int
    tables: List[TableReport] = field(default_factory=list)
    validation_errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    simplified: bool = True

    @property
    def tables_count(self) -> int:
        return len(self.tables)

    def to_dict(self) -> dict:
        return {
            'isValid': self.is_valid,
            'checksum': self.checksum,
            'size': self.size_bytes,
            'sizeFormatted': format_size(self.size_bytes),
            'recordCount': self.record_count,
            'tablesCount': self.tables_count,
            'tables': [
                {
                    'name': t.name,
                    'recordCount': t.record_count,
                    'isValid': t.is_valid,
                    'expectedCount': t.expected_count,
                }
                for t in self.tables
            ],
            'validationErrors': list(self.validation_errors),
            'warnings': list(self.warnings),
            'simplified': self.simplified,
            'createdAt': isoformat_utc(self.created_at),
        }


@dataclass
class DumpResult:
    """Snapshot bytes plus the method that produced them."""
    data: bytes
    method: DumpMethod
    fallback_reasons: List[str] = field(default_factory=list)

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass
class RetentionResult:
    """Outcome of one retention pass."""
    kept: List[BackupArtifact] = field(default_factory=list)
    deleted: List[BackupArtifact] = field(default_factory=list)
    total_size_before: int = 0
    total_size_after: int = 0
    errors: List[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            'kept': [a.file_name for a in self.kept],
            'deleted': [a.file_name for a in self.deleted],
            'keptCount': len(self.kept),
            'deletedCount': len(self.deleted),
            'totalSizeBefore': self.total_size_before,
            'totalSizeAfter': self.total_size_after,
            'spaceFreed': format_size(self.total_size_before - self.total_size_after),
            'errors': list(self.errors),
            'dryRun': self.dry_run,
        }


@dataclass
class BackupRunResult:
    """Everything a caller needs after a successful run."""
    run_id: str
    artifact: BackupArtifact
    integrity: IntegrityReport
    location: str
    retention: Optional[RetentionResult] = None
    diagnostics: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        artifact = self.artifact
        return {
            'fileName': artifact.file_name,
            'key': artifact.key,
            'size': artifact.size_bytes,
            'sizeFormatted': artifact.size_formatted,
            'timestamp': isoformat_utc(artifact.created_at),
            'location': self.location,
            'type': artifact.trigger.value,
            'method': artifact.method.value if artifact.method else None,
            'integrity': {
                'checksum': artifact.checksum,
                'recordCount': artifact.record_count,
                'tablesCount': artifact.table_count,
                'validated': artifact.validated,
                'isValid': self.integrity.is_valid,
            },
        }
