"""Backup Manager - runs the snapshot, verify, upload, rotate pipeline."""

import logging
import time
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy import create_engine

from db_backup.artifacts import (
    BackupArtifact, BackupRunResult, BackupTrigger, IntegrityReport,
    RetentionResult, utc_now
)
from db_backup.dump import DumpStrategyChain, build_dump_chain
from db_backup.errors import (
    BackupError, BackupNotFoundError, BackupTimeoutError, ConfigurationError,
    IntegrityError
)
from db_backup.integrity import IntegrityVerifier
from db_backup.progress import BackupStatus, ProgressState, ProgressStore, create_progress_store
from db_backup.retention import RetentionEngine, RetentionPolicy
from db_backup.storage import S3ArtifactStore, build_key

logger = logging.getLogger(__name__)


def validate_configuration(config) -> None:
    """Raise ConfigurationError listing every missing required setting."""
    storage = config.storage
    missing = []
    if not storage.resolved_endpoint:
        missing.append("storage endpoint (endpoint_url or account_id)")
    if not storage.access_key_id:
        missing.append("storage access key id")
    if not storage.secret_access_key:
        missing.append("storage secret access key")
    if not storage.bucket:
        missing.append("storage bucket")
    if not config.database.connection_string:
        missing.append("database connection string")

    if missing:
        raise ConfigurationError(
            "Incomplete backup configuration",
            details="Missing: " + ", ".join(missing)
        )


class BackupManager:
    """Sequences one backup run and reports its progress.

    reset progress -> validate config -> dump -> verify -> upload -> retention
    (automatic runs only). A failed verification stops the run before upload.
    Retention problems are recorded on the result and never fail the run.
    """

    def __init__(self, config, dump_chain: DumpStrategyChain, verifier: IntegrityVerifier,
                 store: S3ArtifactStore, progress: ProgressStore,
                 retention_engine: Optional[RetentionEngine] = None,
                 retention_policy: Optional[RetentionPolicy] = None,
                 clock: Callable[[], datetime] = utc_now,
                 monotonic: Callable[[], float] = time.monotonic):
        self.config = config
        self.dump_chain = dump_chain
        self.verifier = verifier
        self.store = store
        self.progress = progress
        self.retention_engine = retention_engine or RetentionEngine(store, clock=clock)
        self.retention_policy = retention_policy or RetentionPolicy.from_config(config.retention)
        self.clock = clock
        self.monotonic = monotonic
        self.run_timeout_seconds = config.progress.run_timeout_seconds

    @classmethod
    def from_config(cls, config, s3_client=None, engine=None,
                    progress_store: Optional[ProgressStore] = None,
                    clock: Callable[[], datetime] = utc_now,
                    show_progress: bool = False) -> "BackupManager":
        connection_string = config.database.connection_string
        if engine is None and connection_string:
            engine = create_engine(connection_string)

        store = S3ArtifactStore.from_config(config.storage, s3_client=s3_client,
                                            show_progress=show_progress)
        verifier = IntegrityVerifier(
            engine=engine,
            essential_tables=config.integrity.essential_tables,
            tolerance_ratio=config.integrity.count_tolerance_ratio,
            tolerance_rows=config.integrity.count_tolerance_rows,
            clock=clock,
        )
        progress = progress_store or create_progress_store(
            config.progress, config.progress_database_url, clock=clock
        )
        return cls(
            config,
            dump_chain=build_dump_chain(config.dump, connection_string, engine=engine),
            verifier=verifier,
            store=store,
            progress=progress,
            clock=clock,
        )

    def _default_simplified(self, trigger: BackupTrigger) -> bool:
        if trigger == BackupTrigger.MANUAL:
            return self.config.integrity.simplified_for_manual
        return self.config.integrity.simplified_for_automatic

    def _check_deadline(self, started: float):
        elapsed = self.monotonic() - started
        if elapsed > self.run_timeout_seconds:
            raise BackupTimeoutError(
                f"Backup exceeded the {self.run_timeout_seconds:.0f}s limit ({elapsed:.0f}s elapsed)"
            )

    def create_backup(self, trigger: BackupTrigger = BackupTrigger.AUTOMATIC,
                      simplified: Optional[bool] = None,
                      run_id: Optional[str] = None) -> BackupRunResult:
        """Run the full pipeline. Raises a BackupError subclass on failure."""
        trigger = BackupTrigger(trigger)
        if simplified is None:
            simplified = self._default_simplified(trigger)

        started = self.monotonic()
        state = self.progress.begin(trigger=trigger.value, run_id=run_id)
        run_id = state.run_id
        phase = "validating configuration"

        def report(percent: int, step: str, status: Optional[BackupStatus] = None):
            self.progress.update(run_id, progress=percent, step=step, status=status)

        logger.info(f"Starting {trigger.value} backup (run {run_id})")

        try:
            report(0, "Validating configuration")
            validate_configuration(self.config)

            phase = "creating snapshot"
            report(5, "Creating database snapshot")
            dump = self.dump_chain.produce_snapshot(progress=report)
            self._check_deadline(started)

            phase = "verifying snapshot"
            mode = "simplified" if simplified else "full"
            report(60, f"Verifying snapshot integrity ({mode})")
            integrity = self.verifier.verify(dump.data, simplified=simplified)
            if not integrity.is_valid:
                raise IntegrityError("Backup failed integrity validation", report=integrity)
            self._check_deadline(started)

            phase = "uploading"
            created_at = self.clock()
            key = build_key(created_at, self.store.prefix)
            artifact = BackupArtifact(
                key=key,
                file_name=key.rsplit('/', 1)[-1],
                created_at=created_at,
                size_bytes=dump.size_bytes,
                checksum=integrity.checksum,
                record_count=integrity.record_count,
                table_count=integrity.tables_count,
                method=dump.method,
                trigger=trigger,
                validated=integrity.is_valid,
            )
            report(70, f"Uploading {artifact.file_name}", status=BackupStatus.UPLOADING)
            self.store.upload(dump.data, artifact)

            result = BackupRunResult(
                run_id=run_id,
                artifact=artifact,
                integrity=integrity,
                location=self.store.location(key),
                diagnostics=[f"Fallback: {r}" for r in dump.fallback_reasons],
            )

            if trigger == BackupTrigger.AUTOMATIC and self.config.retention.enabled:
                phase = "applying retention"
                report(90, "Applying retention policy")
                result.retention = self._apply_retention_safely(result.diagnostics)

            self.progress.complete(run_id, backup_info=result.to_dict())
            logger.info(
                f"✓ Backup completed: {artifact.file_name} ({artifact.size_formatted}, "
                f"{artifact.method.value}, {artifact.record_count} records)"
            )
            return result

        except BackupError as e:
            logger.error(f"Backup failed while {phase}: {e.message}")
            self.progress.fail(run_id, e.message, details=e.details, step=f"Failed while {phase}")
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while {phase}")
            self.progress.fail(run_id, str(e), step=f"Failed while {phase}")
            raise

    def _apply_retention_safely(self, diagnostics: List[str]) -> Optional[RetentionResult]:
        try:
            result = self.retention_engine.apply_retention_policy(self.retention_policy)
        except Exception as e:
            logger.error(f"Retention failed (backup kept): {e}")
            diagnostics.append(f"Retention failed: {e}")
            return None

        for error in result.errors:
            diagnostics.append(f"Retention: {error}")
        if result.deleted:
            logger.info(f"Retention removed {len(result.deleted)} old backup(s)")
        return result

    def get_progress(self, run_id: Optional[str] = None) -> ProgressState:
        return self.progress.get(run_id)

    def list_backups(self) -> List[BackupArtifact]:
        return self.store.list_artifacts()

    def _require(self, file_name: str) -> BackupArtifact:
        key = self.store.key_for(file_name)
        artifact = self.store.get_artifact(key)
        if artifact is None:
            raise BackupNotFoundError(f"Backup not found: {key}")
        return artifact

    def validate_backup(self, file_name: str, full: bool = False) -> Tuple[BackupArtifact, IntegrityReport]:
        """Download a stored artifact and run it through the verifier."""
        artifact = self._require(file_name)
        data = self.store.download(artifact.key)
        report = self.verifier.verify(data, simplified=not full)
        if artifact.checksum and artifact.checksum != report.checksum:
            report.is_valid = False
            report.validation_errors.append(
                f"Checksum mismatch: stored {artifact.checksum}, computed {report.checksum}"
            )
        return artifact, report

    def apply_retention(self, dry_run: bool = False,
                        policy: Optional[RetentionPolicy] = None) -> RetentionResult:
        return self.retention_engine.apply_retention_policy(
            policy or self.retention_policy, dry_run=dry_run
        )

    def delete_backup(self, file_name: str) -> BackupArtifact:
        artifact = self._require(file_name)
        self.store.delete(artifact.key)
        return artifact

    def download_url(self, file_name: str, expires_in: Optional[int] = None) -> str:
        artifact = self._require(file_name)
        return self.store.presigned_url(
            artifact.key, expires_in or self.config.storage.presigned_url_expiry_seconds
        )
