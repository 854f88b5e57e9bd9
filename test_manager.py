from datetime import timedelta

import pytest

from config import Config
from conftest import FIXED_NOW, StaticExporter, make_artifact, seed
from db_backup.artifacts import BackupTrigger, DumpMethod
from db_backup.dump import DumpStrategyChain
from db_backup.errors import (
    BackupNotFoundError, BackupTimeoutError, ConfigurationError, IntegrityError,
    UploadError
)
from db_backup.manager import BackupManager, validate_configuration
from db_backup.progress import BackupStatus, InMemoryProgressStore


class ExplodingRetention:
    def apply_retention_policy(self, policy, dry_run=False):
        raise RuntimeError("listing exploded")


class SteppingMonotonic:
    """Each call moves the monotonic clock forward by ``step`` seconds."""

    def __init__(self, step):
        self.step = step
        self.value = 0.0

    def __call__(self):
        current = self.value
        self.value += self.step
        return current


@pytest.fixture
def progress(clock):
    return InMemoryProgressStore(clock=clock)


@pytest.fixture
def manager(config, s3, source_engine, progress, clock):
    return BackupManager.from_config(
        config, s3_client=s3, engine=source_engine, progress_store=progress, clock=clock
    )


def with_chain(manager, *exporters):
    manager.dump_chain = DumpStrategyChain(list(exporters))
    return manager


def test_validate_configuration_lists_missing_settings():
    with pytest.raises(ConfigurationError) as excinfo:
        validate_configuration(Config())
    assert "storage access key id" in excinfo.value.details
    assert "database connection string" in excinfo.value.details


def test_automatic_run_falls_back_and_uploads(manager, s3, progress):
    # sqlite source: pg_dump refuses it, the ORM export takes over
    result = manager.create_backup(trigger=BackupTrigger.AUTOMATIC)

    assert result.artifact.method == DumpMethod.LOGICAL
    assert result.artifact.key == "backups/backup-2024-06-15T12-00-00-000Z.sql"
    assert result.location == "s3://test-bucket/backups/backup-2024-06-15T12-00-00-000Z.sql"
    assert any(d.startswith("Fallback: native") for d in result.diagnostics)

    stored = s3.objects[result.artifact.key]
    assert stored['ContentType'] == "application/sql"
    assert stored['Metadata']['type'] == 'automatic'
    assert stored['Metadata']['record-count'] == '5'
    assert stored['Metadata']['checksum'] == result.integrity.checksum

    assert result.retention is not None
    assert [a.key for a in result.retention.kept] == [result.artifact.key]

    state = progress.get()
    assert state.status == BackupStatus.COMPLETED
    assert state.progress == 100
    assert state.backup_info['fileName'] == result.artifact.file_name


def test_payload_matches_http_shape(manager):
    payload = manager.create_backup().to_dict()

    assert payload['fileName'] == "backup-2024-06-15T12-00-00-000Z.sql"
    assert payload['timestamp'] == "2024-06-15T12:00:00.000Z"
    assert payload['type'] == 'automatic'
    assert payload['method'] == 'logical'
    assert payload['integrity']['recordCount'] == 5
    assert payload['integrity']['tablesCount'] == 3
    assert payload['integrity']['isValid'] is True
    assert payload['integrity']['validated'] is True


def test_progress_is_monotonic(manager, progress):
    seen = []
    original = progress.update

    def recording_update(run_id, progress=None, step=None, status=None):
        state = original(run_id, progress=progress, step=step, status=status)
        seen.append((state.progress, state.status))
        return state

    manager.progress.update = recording_update
    manager.create_backup()

    percents = [p for p, _ in seen]
    assert percents == sorted(percents)
    assert (70, BackupStatus.UPLOADING) in seen
    assert progress.get().progress == 100


def test_corrupt_snapshot_is_never_uploaded(manager, s3, progress):
    with_chain(manager, StaticExporter(DumpMethod.LOGICAL, data=b"BEGIN;\nINSERT INTO t VALUES (1);\n"))

    with pytest.raises(IntegrityError) as excinfo:
        manager.create_backup()

    assert excinfo.value.validation_errors
    assert s3.uploads == []
    state = progress.get()
    assert state.status == BackupStatus.ERROR
    assert state.error == "Backup failed integrity validation"
    assert state.current_step == "Failed while verifying snapshot"


def test_manual_run_skips_retention(manager, s3):
    stale = make_artifact(FIXED_NOW - timedelta(days=400))
    seed(s3, stale)

    result = manager.create_backup(trigger=BackupTrigger.MANUAL)

    assert result.retention is None
    assert stale.key in s3.objects
    assert s3.objects[result.artifact.key]['Metadata']['type'] == 'manual'


def test_automatic_run_rotates_old_backups(manager, s3):
    stale = make_artifact(FIXED_NOW - timedelta(days=400))
    seed(s3, stale)

    result = manager.create_backup()

    assert stale.key not in s3.objects
    assert [a.key for a in result.retention.deleted] == [stale.key]


def test_retention_failure_does_not_fail_the_run(manager, s3, progress):
    manager.retention_engine = ExplodingRetention()

    result = manager.create_backup()

    assert result.artifact.key in s3.objects
    assert result.retention is None
    assert "Retention failed: listing exploded" in result.diagnostics
    assert progress.get().status == BackupStatus.COMPLETED


def test_missing_configuration_stops_before_dump(s3, progress, clock):
    exporter = StaticExporter(DumpMethod.LOGICAL, data=b"unused")
    manager = BackupManager.from_config(Config(), s3_client=s3, progress_store=progress, clock=clock)
    with_chain(manager, exporter)

    with pytest.raises(ConfigurationError):
        manager.create_backup()

    assert exporter.calls == 0
    assert progress.get().status == BackupStatus.ERROR


def test_upload_failure_keeps_provider_message(manager, s3, progress):
    s3.fail_upload = "We encountered an internal error. Please try again."

    with pytest.raises(UploadError) as excinfo:
        manager.create_backup()

    assert excinfo.value.message == "We encountered an internal error. Please try again."
    assert progress.get().error == "We encountered an internal error. Please try again."


def test_run_timeout(config, s3, source_engine, progress, clock):
    config.progress.run_timeout_seconds = 10
    manager = BackupManager.from_config(
        config, s3_client=s3, engine=source_engine, progress_store=progress, clock=clock
    )
    manager.monotonic = SteppingMonotonic(step=60)

    with pytest.raises(BackupTimeoutError):
        manager.create_backup()

    assert s3.uploads == []
    assert progress.get().status == BackupStatus.ERROR


def test_validation_mode_defaults_by_trigger(manager):
    calls = []
    original = manager.verifier.verify

    def recording_verify(data, simplified=True):
        calls.append(simplified)
        return original(data, simplified=simplified)

    manager.verifier.verify = recording_verify
    manager.create_backup(trigger=BackupTrigger.AUTOMATIC)
    manager.create_backup(trigger=BackupTrigger.MANUAL)
    manager.create_backup(trigger=BackupTrigger.MANUAL, simplified=True)

    assert calls == [True, False, True]


def test_validate_stored_backup(manager, s3):
    result = manager.create_backup()

    artifact, report = manager.validate_backup(result.artifact.file_name, full=True)
    assert artifact.key == result.artifact.key
    assert report.is_valid, report.validation_errors

    s3.objects[result.artifact.key]['Body'] += b"\n-- tampered\n"
    _, report = manager.validate_backup(result.artifact.file_name)
    assert not report.is_valid
    assert any("Checksum mismatch" in e for e in report.validation_errors)


def test_delete_and_download_url(manager, s3):
    result = manager.create_backup(trigger=BackupTrigger.MANUAL)

    url = manager.download_url(result.artifact.file_name, expires_in=60)
    assert result.artifact.key in url and "expires=60" in url

    deleted = manager.delete_backup(result.artifact.file_name)
    assert deleted.key == result.artifact.key
    assert result.artifact.key not in s3.objects

    with pytest.raises(BackupNotFoundError):
        manager.delete_backup(result.artifact.file_name)
