import json
import os

import pytest
from pydantic import ValidationError

from config import (
    Config, DatabaseConfig, ProgressConfig, RetentionConfig, StorageConfig,
    apply_env_overrides, create_default_config, load_config
)


def test_missing_file_uses_defaults(tmp_path):
    config = load_config(str(tmp_path / 'absent.json'), environ={})
    assert config.storage.bucket == "db-backups"
    assert config.retention.daily_retention_days == 7
    assert config.progress.concurrency_policy == "overwrite"
    assert config.database.connection_string is None


def test_default_file_round_trip(tmp_path):
    path = tmp_path / 'config.json'
    create_default_config(str(path))

    data = json.loads(path.read_text())
    assert data['storage']['access_key_id'] is None

    config = load_config(str(path), environ={})
    assert config.retention.max_backup_count == 50
    assert config.integrity.simplified_for_manual is False


def test_environment_overrides_file(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'storage': {'bucket': 'from-file', 'access_key_id': 'file-key'}}))

    config = load_config(str(path), environ={
        'R2_ACCOUNT_ID': 'abc123',
        'R2_BUCKET_NAME': 'from-env',
        'DIRECT_DATABASE_URL': 'postgresql://u:p@db/app',
        'DATABASE_URL': '',
    })

    assert config.storage.bucket == 'from-env'
    assert config.storage.access_key_id == 'file-key'
    assert config.storage.resolved_endpoint == "https://abc123.r2.cloudflarestorage.com"
    assert config.database.direct_url == 'postgresql://u:p@db/app'
    assert config.database.pooled_url is None


def test_apply_env_overrides_creates_sections():
    data = apply_env_overrides({}, environ={'R2_SECRET_ACCESS_KEY': 'shh'})
    assert data == {'storage': {'secret_access_key': 'shh'}}


def test_explicit_endpoint_wins_over_account():
    storage = StorageConfig(endpoint_url='https://minio.local:9000', account_id='abc')
    assert storage.resolved_endpoint == 'https://minio.local:9000'
    assert StorageConfig().resolved_endpoint is None


def test_direct_connection_preferred():
    assert DatabaseConfig(direct_url='a', pooled_url='b').connection_string == 'a'
    assert DatabaseConfig(pooled_url='b').connection_string == 'b'


def test_prefix_gets_trailing_slash():
    assert StorageConfig(prefix='nightly').prefix == 'nightly/'
    assert StorageConfig(prefix='nightly/').prefix == 'nightly/'


def test_negative_retention_rejected():
    with pytest.raises(ValidationError):
        RetentionConfig(weekly_retention_weeks=-1)


def test_unknown_progress_options_rejected():
    with pytest.raises(ValidationError):
        ProgressConfig(concurrency_policy='whatever')
    with pytest.raises(ValidationError):
        ProgressConfig(backend='redis')


def test_progress_database_path_is_expanded():
    config = Config()
    assert config.progress_database_url.startswith('sqlite:///')
    assert '~' not in config.progress_database_url
    assert config.progress_database_url.endswith(os.path.join('.db_backup', 'progress.db'))


def test_credentials_are_not_expanded(monkeypatch):
    monkeypatch.setenv('PART', 'leaked')
    monkeypatch.setenv('BUCKET_SUFFIX', 'prod')

    storage = StorageConfig(secret_access_key='abc$PART', access_key_id='id$PART',
                            bucket='db-$BUCKET_SUFFIX')
    database = DatabaseConfig(direct_url='postgresql://u:pa$PART@db/app')

    assert storage.secret_access_key == 'abc$PART'
    assert storage.access_key_id == 'id$PART'
    assert storage.bucket == 'db-prod'
    assert database.direct_url == 'postgresql://u:pa$PART@db/app'
