"""Run progress tracking.

Progress is kept per run id in a store that observers can poll. A run moves
idle -> creating -> uploading -> completed | error; terminal states read back
as idle once the reset delay has passed. Within a run the reported percentage
never goes down.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError as DBIntegrityError

from db_backup.artifacts import isoformat_utc, utc_now
from db_backup.errors import BackupInProgressError, BackupTimeoutError
from models import BackupLock, BackupRun, DatabaseManager

logger = logging.getLogger(__name__)

RESERVATION_LOCK = "backup"


class BackupStatus(str, Enum):
    IDLE = "idle"
    CREATING = "creating"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ERROR = "error"


ACTIVE_STATUSES = (BackupStatus.CREATING, BackupStatus.UPLOADING)
TERMINAL_STATUSES = (BackupStatus.COMPLETED, BackupStatus.ERROR)

# Forward-only ordering used to reject status regressions inside a run
_STATUS_ORDER = {
    BackupStatus.IDLE: 0,
    BackupStatus.CREATING: 1,
    BackupStatus.UPLOADING: 2,
    BackupStatus.COMPLETED: 3,
    BackupStatus.ERROR: 3,
}


class ConcurrencyPolicy(str, Enum):
    """What happens when a run starts while another is still active."""
    OVERWRITE = "overwrite"
    REJECT = "reject"
    QUEUE = "queue"


@dataclass
class ProgressState:
    run_id: Optional[str] = None
    status: BackupStatus = BackupStatus.IDLE
    progress: int = 0
    current_step: str = ""
    trigger: Optional[str] = None
    start_time: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    estimated_duration_ms: Optional[float] = None
    error: Optional[str] = None
    error_details: Optional[str] = None
    backup_info: Optional[dict] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        """Payload shape polled by the UI."""
        now = now or utc_now()
        elapsed_ms = None
        estimated_ms = self.estimated_duration_ms
        if self.start_time is not None:
            end = self.finished_at or now
            elapsed_ms = max(0, int((end - self.start_time).total_seconds() * 1000))
            if estimated_ms is None and self.is_active and self.progress > 0:
                estimated_ms = int(elapsed_ms * (100 - self.progress) / self.progress)

        return {
            'runId': self.run_id,
            'status': self.status.value,
            'progress': self.progress,
            'currentStep': self.current_step,
            'type': self.trigger,
            'startTime': isoformat_utc(self.start_time) if self.start_time else None,
            'elapsedTime': elapsed_ms,
            'estimatedTime': estimated_ms,
            'error': self.error,
            'errorDetails': self.error_details,
            'backupInfo': self.backup_info,
        }


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class ProgressStore:
    """Base class holding the state machine; subclasses provide storage."""

    def __init__(self, policy: ConcurrencyPolicy = ConcurrencyPolicy.OVERWRITE,
                 reset_delay_seconds: float = 120.0,
                 queue_timeout_seconds: float = 300.0,
                 stale_after_seconds: float = 900.0,
                 clock: Callable[[], datetime] = utc_now,
                 poll_interval: float = 0.5):
        self.policy = ConcurrencyPolicy(policy)
        self.reset_delay = timedelta(seconds=reset_delay_seconds)
        self.queue_timeout_seconds = queue_timeout_seconds
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.clock = clock
        self.poll_interval = poll_interval

    # Storage primitives

    def _load(self, run_id: str) -> Optional[ProgressState]:
        raise NotImplementedError

    def _load_latest(self) -> Optional[ProgressState]:
        raise NotImplementedError

    def _reserve(self, state: ProgressState, force: bool) -> Optional[ProgressState]:
        """Atomically save ``state`` unless another live run is active.

        Returns the blocking run when one exists and ``force`` is false.
        """
        raise NotImplementedError

    def _mutate(self, run_id: str, fn: Callable[[ProgressState], None]) -> Optional[ProgressState]:
        raise NotImplementedError

    def _wait_for_change(self, timeout: float):
        time.sleep(timeout)

    # State machine

    def _is_live(self, state: ProgressState, now: datetime) -> bool:
        if not state.is_active:
            return False
        updated = state.updated_at or state.start_time
        return updated is None or now - updated < self.stale_after

    def begin(self, trigger: Optional[str] = None, run_id: Optional[str] = None,
              estimated_duration_ms: Optional[float] = None) -> ProgressState:
        """Start a run, resetting progress to 0 under the configured policy."""
        run_id = run_id or uuid.uuid4().hex
        deadline = time.monotonic() + self.queue_timeout_seconds

        while True:
            now = self.clock()
            state = ProgressState(
                run_id=run_id,
                status=BackupStatus.CREATING,
                progress=0,
                current_step="Starting backup",
                trigger=trigger,
                start_time=now,
                updated_at=now,
                estimated_duration_ms=estimated_duration_ms,
            )

            force = self.policy == ConcurrencyPolicy.OVERWRITE
            active = self._reserve(state, force=force)
            if active is None:
                logger.debug(f"Run {run_id} started ({trigger})")
                return state

            if self.policy == ConcurrencyPolicy.REJECT:
                raise BackupInProgressError(
                    f"Backup run {active.run_id} is already in progress",
                    active_run_id=active.run_id
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise BackupTimeoutError(
                    f"Timed out waiting for backup run {active.run_id} to finish"
                )
            logger.info(f"Run {run_id} queued behind active run {active.run_id}")
            self._wait_for_change(min(remaining, self.poll_interval))

    def update(self, run_id: str, progress: Optional[int] = None,
               step: Optional[str] = None,
               status: Optional[BackupStatus] = None) -> Optional[ProgressState]:
        """Advance a running run. Lower percentages and backward statuses are ignored."""
        now = self.clock()

        def apply(state: ProgressState):
            if state.is_terminal:
                return
            if (status is not None and BackupStatus(status) in ACTIVE_STATUSES
                    and _STATUS_ORDER[BackupStatus(status)] >= _STATUS_ORDER[state.status]):
                state.status = BackupStatus(status)
            if progress is not None:
                state.progress = max(state.progress, min(100, int(progress)))
            if step is not None:
                state.current_step = step
            state.updated_at = now

        return self._mutate(run_id, apply)

    def complete(self, run_id: str, backup_info: Optional[dict] = None) -> Optional[ProgressState]:
        now = self.clock()

        def apply(state: ProgressState):
            state.status = BackupStatus.COMPLETED
            state.progress = 100
            state.current_step = "Backup completed"
            state.backup_info = backup_info
            state.error = None
            state.error_details = None
            state.updated_at = now
            state.finished_at = now

        return self._mutate(run_id, apply)

    def fail(self, run_id: str, error: str, details: Optional[str] = None,
             step: Optional[str] = None) -> Optional[ProgressState]:
        now = self.clock()

        def apply(state: ProgressState):
            state.status = BackupStatus.ERROR
            state.current_step = step or "Backup failed"
            state.error = error
            state.error_details = details
            state.updated_at = now
            state.finished_at = now

        return self._mutate(run_id, apply)

    def get(self, run_id: Optional[str] = None) -> ProgressState:
        """Current state of a run (or the latest run), with auto-reset applied."""
        state = self._load(run_id) if run_id else self._load_latest()
        if state is None:
            return ProgressState(run_id=run_id)

        now = self.clock()
        if state.is_terminal and state.finished_at is not None:
            if now - state.finished_at >= self.reset_delay:
                return ProgressState(run_id=state.run_id)
        return state

    def active_run(self) -> Optional[ProgressState]:
        state = self._load_latest()
        if state is not None and self._is_live(state, self.clock()):
            return state
        return None


class InMemoryProgressStore(ProgressStore):
    """Process-local store guarded by a condition variable."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._runs: Dict[str, ProgressState] = {}
        self._latest_id: Optional[str] = None
        self._cond = threading.Condition()

    def _copy(self, state: Optional[ProgressState]) -> Optional[ProgressState]:
        if state is None:
            return None
        return replace(state, backup_info=dict(state.backup_info) if state.backup_info else None)

    def _load(self, run_id):
        with self._cond:
            return self._copy(self._runs.get(run_id))

    def _load_latest(self):
        with self._cond:
            if self._latest_id is None:
                return None
            return self._copy(self._runs.get(self._latest_id))

    def _reserve(self, state, force):
        with self._cond:
            now = self.clock()
            for other in self._runs.values():
                if other.run_id != state.run_id and self._is_live(other, now):
                    if not force:
                        return self._copy(other)
                    logger.warning(
                        f"Run {state.run_id} replaces active run {other.run_id} as the reported run"
                    )
                    break
            self._runs[state.run_id] = self._copy(state)
            self._latest_id = state.run_id
            self._prune(now)
            self._cond.notify_all()
            return None

    def _prune(self, now: datetime):
        """Drop finished runs that already read back as idle."""
        expired = [
            run_id for run_id, state in self._runs.items()
            if run_id != self._latest_id and state.is_terminal
            and state.finished_at is not None and now - state.finished_at >= self.reset_delay
        ]
        for run_id in expired:
            del self._runs[run_id]

    def _mutate(self, run_id, fn):
        with self._cond:
            state = self._runs.get(run_id)
            if state is None:
                logger.debug(f"Ignoring update for unknown run {run_id}")
                return None
            fn(state)
            self._cond.notify_all()
            return self._copy(state)

    def _wait_for_change(self, timeout):
        with self._cond:
            self._cond.wait(timeout)


class DatabaseProgressStore(ProgressStore):
    """Store backed by the ``backup_runs`` table, shared between instances."""

    def __init__(self, db_manager, **kwargs):
        super().__init__(**kwargs)
        self.db_manager = db_manager
        self.db_manager.create_tables()
        self._ensure_lock_row()

    def _ensure_lock_row(self):
        session = self.db_manager.get_session()
        try:
            if session.get(BackupLock, RESERVATION_LOCK) is None:
                session.add(BackupLock(name=RESERVATION_LOCK))
                session.commit()
        except DBIntegrityError:
            # Another instance created it first
            session.rollback()
        finally:
            session.close()

    def _acquire_lock(self, session, run_id: str, now: datetime):
        """Write-lock the reservation row until the session commits or rolls back."""
        updated = (
            session.query(BackupLock)
            .filter(BackupLock.name == RESERVATION_LOCK)
            .update({'holder': run_id, 'acquired_at': now}, synchronize_session=False)
        )
        if not updated:
            session.add(BackupLock(name=RESERVATION_LOCK, holder=run_id, acquired_at=now))
            session.flush()

    @staticmethod
    def _to_state(row) -> ProgressState:
        return ProgressState(
            run_id=row.run_id,
            status=BackupStatus(row.status),
            progress=row.progress or 0,
            current_step=row.current_step or "",
            trigger=row.trigger,
            start_time=_aware(row.start_time),
            updated_at=_aware(row.updated_at),
            finished_at=_aware(row.finished_at),
            estimated_duration_ms=row.estimated_duration_ms,
            error=row.error,
            error_details=row.error_details,
            backup_info=row.get_backup_info(),
        )

    @staticmethod
    def _write(row, state: ProgressState):
        row.status = state.status.value
        row.progress = state.progress
        row.current_step = state.current_step
        row.trigger = state.trigger
        row.start_time = state.start_time
        row.updated_at = state.updated_at
        row.finished_at = state.finished_at
        row.estimated_duration_ms = state.estimated_duration_ms
        row.error = state.error
        row.error_details = state.error_details
        row.set_backup_info(state.backup_info)

    def _load(self, run_id):
        session = self.db_manager.get_session()
        try:
            row = session.get(BackupRun, run_id)
            return self._to_state(row) if row else None
        finally:
            session.close()

    def _load_latest(self):
        session = self.db_manager.get_session()
        try:
            row = session.query(BackupRun).order_by(BackupRun.start_time.desc()).first()
            return self._to_state(row) if row else None
        finally:
            session.close()

    def _reserve(self, state, force):
        session = self.db_manager.get_session()
        try:
            now = self.clock()
            self._acquire_lock(session, state.run_id, now)
            active_rows = (
                session.query(BackupRun)
                .filter(BackupRun.status.in_([s.value for s in ACTIVE_STATUSES]))
                .filter(BackupRun.run_id != state.run_id)
                .with_for_update()
                .all()
            )
            blocking = [self._to_state(r) for r in active_rows]
            blocking = [s for s in blocking if self._is_live(s, now)]
            if blocking and not force:
                session.rollback()
                return blocking[0]
            if blocking:
                logger.warning(
                    f"Run {state.run_id} replaces active run {blocking[0].run_id} as the reported run"
                )

            row = BackupRun(run_id=state.run_id)
            self._write(row, state)
            session.add(row)
            session.commit()
            return None
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _mutate(self, run_id, fn):
        session = self.db_manager.get_session()
        try:
            row = (
                session.query(BackupRun)
                .filter(BackupRun.run_id == run_id)
                .with_for_update()
                .first()
            )
            if row is None:
                logger.debug(f"Ignoring update for unknown run {run_id}")
                return None
            state = self._to_state(row)
            fn(state)
            self._write(row, state)
            session.commit()
            return state
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def create_progress_store(progress_config, progress_database_url: Optional[str] = None,
                          clock: Callable[[], datetime] = utc_now) -> ProgressStore:
    """Build the store selected by configuration."""
    kwargs = dict(
        policy=ConcurrencyPolicy(progress_config.concurrency_policy),
        reset_delay_seconds=progress_config.reset_delay_seconds,
        queue_timeout_seconds=progress_config.queue_timeout_seconds,
        stale_after_seconds=progress_config.stale_after_seconds,
        clock=clock,
    )
    if progress_config.backend == 'database':
        return DatabaseProgressStore(DatabaseManager(progress_database_url), **kwargs)
    return InMemoryProgressStore(**kwargs)
