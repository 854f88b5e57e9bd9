"""Shared pytest fixtures: fake S3 client, fixed clock, sample source database."""

import io
from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError
from sqlalchemy import (
    Column, ForeignKey, Integer, MetaData, String, Table, Text, create_engine
)

from config import Config, DatabaseConfig, StorageConfig
from db_backup.artifacts import BackupArtifact, BackupTrigger, DumpMethod
from db_backup.dump import SnapshotExporter
from db_backup.errors import DumpError
from db_backup.storage import S3ArtifactStore, build_key

FIXED_NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


def client_error(code: str, message: str, operation: str) -> ClientError:
    return ClientError({'Error': {'Code': code, 'Message': message}}, operation)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class FakePaginator:
    def __init__(self, client, page_size: int = 2):
        self.client = client
        self.page_size = page_size

    def paginate(self, Bucket, Prefix=''):
        if self.client.fail_list:
            raise client_error('InternalError', 'listing unavailable', 'ListObjectsV2')
        keys = sorted(k for k in self.client.objects if k.startswith(Prefix))
        for i in range(0, max(len(keys), 1), self.page_size):
            chunk = keys[i:i + self.page_size]
            page = {'KeyCount': len(chunk)}
            if chunk:
                page['Contents'] = [
                    {
                        'Key': k,
                        'Size': self.client.objects[k]['Size'],
                        'LastModified': self.client.objects[k]['LastModified'],
                    }
                    for k in chunk
                ]
            yield page


class FakeS3Client:
    """In-memory stand-in for the boto3 S3 client methods the store uses."""

    def __init__(self):
        self.objects = {}
        self.uploads = []
        self.deleted = []
        self.fail_upload = None
        self.fail_list = False
        self.fail_delete = set()

    def put(self, key, data=b'', metadata=None, size=None, last_modified=FIXED_NOW):
        self.objects[key] = {
            'Body': data,
            'Metadata': dict(metadata or {}),
            'Size': len(data) if size is None else size,
            'LastModified': last_modified,
        }

    def upload_fileobj(self, Fileobj, Bucket, Key, ExtraArgs=None, Callback=None):
        if self.fail_upload:
            raise client_error('InternalError', self.fail_upload, 'PutObject')
        data = Fileobj.read()
        extra = ExtraArgs or {}
        self.put(Key, data, extra.get('Metadata'))
        self.objects[Key]['ContentType'] = extra.get('ContentType')
        self.uploads.append((Bucket, Key, extra))
        if Callback:
            Callback(len(data))

    def get_paginator(self, name):
        assert name == 'list_objects_v2'
        return FakePaginator(self)

    def head_bucket(self, Bucket):
        return {}

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise client_error('404', 'Not Found', 'HeadObject')
        obj = self.objects[Key]
        return {
            'Metadata': dict(obj['Metadata']),
            'ContentLength': obj['Size'],
            'LastModified': obj['LastModified'],
        }

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise client_error('NoSuchKey', 'The specified key does not exist.', 'GetObject')
        return {'Body': io.BytesIO(self.objects[Key]['Body'])}

    def delete_object(self, Bucket, Key):
        if Key in self.fail_delete:
            raise client_error('AccessDenied', 'Access Denied', 'DeleteObject')
        self.objects.pop(Key, None)
        self.deleted.append(Key)
        return {}

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        return f"https://storage.test/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"


class StaticExporter(SnapshotExporter):
    """Exporter returning fixed bytes or failing with a fixed reason."""

    def __init__(self, method=DumpMethod.NATIVE, data=None, error=None):
        self.method = method
        self.description = f"static {method.value}"
        self.data = data
        self.error = error
        self.calls = 0

    def export(self):
        self.calls += 1
        if self.error:
            raise DumpError(self.error)
        return self.data


def make_artifact(created_at, trigger=BackupTrigger.AUTOMATIC, size=100, prefix="backups/"):
    key = build_key(created_at, prefix)
    if trigger == BackupTrigger.MANUAL:
        key = key.replace('backup-', 'backup-manual-')
    return BackupArtifact(
        key=key,
        file_name=key.rsplit('/', 1)[-1],
        created_at=created_at,
        size_bytes=size,
        checksum='0' * 64,
        record_count=1,
        table_count=1,
        method=DumpMethod.LOGICAL,
        trigger=trigger,
        validated=True,
    )


def seed(s3, artifact, data=b''):
    s3.put(artifact.key, data, artifact.to_metadata(), size=artifact.size_bytes)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def s3():
    return FakeS3Client()


@pytest.fixture
def store(s3):
    return S3ArtifactStore(s3, bucket='test-bucket', prefix='backups/')


@pytest.fixture
def source_url(tmp_path):
    return f"sqlite:///{tmp_path / 'source.db'}"


@pytest.fixture
def source_engine(source_url):
    """Small relational source: users <- orders, plus an empty audit table."""
    engine = create_engine(source_url)
    metadata = MetaData()
    users = Table(
        'users', metadata,
        Column('id', Integer, primary_key=True),
        Column('name', String(50)),
        Column('email', String(100)),
    )
    orders = Table(
        'orders', metadata,
        Column('id', Integer, primary_key=True),
        Column('user_id', Integer, ForeignKey('users.id')),
        Column('note', Text),
    )
    Table('audit_log', metadata, Column('id', Integer, primary_key=True), Column('entry', Text))
    metadata.create_all(engine)

    with engine.begin() as conn:
        conn.execute(users.insert(), [
            {'id': 1, 'name': 'Ada', 'email': 'ada@example.com'},
            {'id': 2, 'name': "O'Brien", 'email': None},
            {'id': 3, 'name': 'Grace', 'email': 'grace@example.com'},
        ])
        conn.execute(orders.insert(), [
            {'id': 1, 'user_id': 1, 'note': 'first'},
            {'id': 2, 'user_id': 3, 'note': 'DROP TABLE users; is just text here'},
        ])
    yield engine
    engine.dispose()


@pytest.fixture
def config(source_url, tmp_path):
    return Config(
        storage=StorageConfig(
            endpoint_url='https://storage.test',
            access_key_id='test-key',
            secret_access_key='test-secret',
            bucket='test-bucket',
        ),
        database=DatabaseConfig(direct_url=source_url),
        logging={'file': str(tmp_path / 'test.log')},
    )
