"""Grandfather-father-son retention for stored backups.

Automatic backups are kept according to three rolling windows measured back
from ``now``:

    daily    [now - d days,   now]          every backup
    weekly   [now - w*7 days, daily start)  newest backup per 7-day bucket
    monthly  [now - m*30 days, weekly start) newest backup per 30-day bucket

Bucket ``i`` of a window holds backups whose age falls in
``[i * length, (i + 1) * length)``. Manual backups are never deleted and never
count against the size or count caps.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from db_backup.artifacts import BackupArtifact, RetentionResult, format_size, utc_now
from db_backup.errors import StorageError

logger = logging.getLogger(__name__)

WEEK = timedelta(days=7)
MONTH = timedelta(days=30)


@dataclass(frozen=True)
class RetentionPolicy:
    daily_retention_days: int = 7
    weekly_retention_weeks: int = 4
    monthly_retention_months: int = 6
    max_total_size_bytes: Optional[int] = None
    max_backup_count: Optional[int] = None

    def __post_init__(self):
        for name in ('daily_retention_days', 'weekly_retention_weeks', 'monthly_retention_months'):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        for name in ('max_total_size_bytes', 'max_backup_count'):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be >= 0")

    @classmethod
    def from_config(cls, retention_config) -> "RetentionPolicy":
        return cls(
            daily_retention_days=retention_config.daily_retention_days,
            weekly_retention_weeks=retention_config.weekly_retention_weeks,
            monthly_retention_months=retention_config.monthly_retention_months,
            max_total_size_bytes=retention_config.max_total_size_bytes,
            max_backup_count=retention_config.max_backup_count,
        )


DEFAULT_RETENTION_POLICY = RetentionPolicy(
    daily_retention_days=7,
    weekly_retention_weeks=4,
    monthly_retention_months=6,
    max_total_size_bytes=5 * 1024 * 1024 * 1024,
    max_backup_count=50,
)


@dataclass(frozen=True)
class RetentionWindow:
    """A span of ages with its bucketing rule.

    ``end`` of None means unbounded (the daily window also takes backups
    stamped slightly in the future). ``bucket`` of None keeps everything in
    the window; otherwise at most ``limit`` buckets are kept, newest first.
    """
    name: str
    now: datetime
    start: datetime
    end: Optional[datetime]
    bucket: Optional[timedelta] = None
    limit: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.end is not None and self.start >= self.end

    def contains(self, ts: datetime) -> bool:
        if ts < self.start:
            return False
        return self.end is None or ts < self.end

    def bucket_index(self, ts: datetime) -> int:
        return int((self.now - ts) // self.bucket)

    def select(self, newest_first: Sequence[BackupArtifact]) -> List[BackupArtifact]:
        """Artifacts this window retains."""
        if self.is_empty:
            return []
        in_window = [a for a in newest_first if self.contains(a.created_at)]
        if self.bucket is None:
            return in_window

        chosen: Dict[int, BackupArtifact] = {}
        for artifact in in_window:
            chosen.setdefault(self.bucket_index(artifact.created_at), artifact)

        indices = sorted(chosen)
        if self.limit is not None:
            indices = indices[:self.limit]
        return [chosen[i] for i in indices]


def build_windows(policy: RetentionPolicy, now: datetime) -> List[RetentionWindow]:
    daily_start = now - timedelta(days=policy.daily_retention_days)
    weekly_start = min(now - policy.weekly_retention_weeks * WEEK, daily_start)
    monthly_start = min(now - policy.monthly_retention_months * MONTH, weekly_start)

    return [
        RetentionWindow('daily', now, daily_start, None),
        RetentionWindow('weekly', now, weekly_start, daily_start,
                        bucket=WEEK, limit=policy.weekly_retention_weeks),
        RetentionWindow('monthly', now, monthly_start, weekly_start,
                        bucket=MONTH, limit=policy.monthly_retention_months),
    ]


def plan_retention(artifacts: Sequence[BackupArtifact], policy: RetentionPolicy,
                   now: datetime) -> Tuple[List[BackupArtifact], List[BackupArtifact]]:
    """Split artifacts into (keep, delete) without touching storage."""
    manual = [a for a in artifacts if a.is_manual]
    automatic = sorted((a for a in artifacts if not a.is_manual),
                       key=lambda a: a.created_at, reverse=True)

    keep_keys = set()
    for window in build_windows(policy, now):
        selected = window.select(automatic)
        logger.debug(f"{window.name} window keeps {len(selected)} backup(s)")
        keep_keys.update(a.key for a in selected)

    kept_automatic = [a for a in automatic if a.key in keep_keys]

    if policy.max_total_size_bytes is not None:
        within_cap = []
        total = 0
        for artifact in kept_automatic:
            if total + artifact.size_bytes > policy.max_total_size_bytes:
                break
            within_cap.append(artifact)
            total += artifact.size_bytes
        kept_automatic = within_cap

    if policy.max_backup_count is not None:
        kept_automatic = kept_automatic[:policy.max_backup_count]

    kept: List[BackupArtifact] = []
    seen = set()
    for artifact in manual + kept_automatic:
        if artifact.key not in seen:
            seen.add(artifact.key)
            kept.append(artifact)

    to_delete = [a for a in automatic if a.key not in seen]
    return kept, to_delete


class RetentionEngine:
    """Apply a retention policy to the artifacts in a store."""

    def __init__(self, store, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def apply_retention_policy(self, policy: RetentionPolicy = DEFAULT_RETENTION_POLICY,
                               dry_run: bool = False) -> RetentionResult:
        result = RetentionResult(dry_run=dry_run)

        try:
            artifacts = self.store.list_artifacts()
        except StorageError as e:
            logger.error(f"Retention aborted: {e}")
            result.errors.append(str(e))
            return result

        kept, to_delete = plan_retention(artifacts, policy, self.clock())
        result.kept = kept
        result.total_size_before = sum(a.size_bytes for a in artifacts)

        logger.info(
            f"Retention: {len(artifacts)} backups, keeping {len(kept)}, "
            f"deleting {len(to_delete)}{' (dry run)' if dry_run else ''}"
        )

        for artifact in to_delete:
            if dry_run:
                result.deleted.append(artifact)
                continue
            try:
                self.store.delete(artifact.key)
                result.deleted.append(artifact)
            except Exception as e:
                message = f"Failed to delete {artifact.file_name}: {e}"
                logger.warning(message)
                result.errors.append(message)

        result.total_size_after = result.total_size_before - sum(a.size_bytes for a in result.deleted)
        return result


def format_retention_report(result: RetentionResult, policy: RetentionPolicy = DEFAULT_RETENTION_POLICY) -> str:
    """Plain-text summary of a retention pass."""
    lines = [
        "Backup Retention Report",
        "=" * 40,
        f"Policy: {policy.daily_retention_days} daily, "
        f"{policy.weekly_retention_weeks} weekly, "
        f"{policy.monthly_retention_months} monthly",
    ]
    if policy.max_total_size_bytes is not None:
        lines.append(f"Size limit: {format_size(policy.max_total_size_bytes)}")
    if policy.max_backup_count is not None:
        lines.append(f"Count limit: {policy.max_backup_count}")
    if result.dry_run:
        lines.append("Mode: dry run (nothing deleted)")

    lines += [
        "",
        f"Kept: {len(result.kept)}",
        f"Deleted: {len(result.deleted)}",
        f"Size before: {format_size(result.total_size_before)}",
        f"Size after: {format_size(result.total_size_after)}",
        f"Space freed: {format_size(result.total_size_before - result.total_size_after)}",
    ]

    if result.deleted:
        lines.append("")
        lines.append("Deleted backups:")
        lines.extend(f"  - {a.file_name}" for a in result.deleted)

    if result.errors:
        lines.append("")
        lines.append("Errors:")
        lines.extend(f"  - {e}" for e in result.errors)

    return "\n".join(lines)
