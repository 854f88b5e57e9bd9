"""S3-compatible object storage for backup artifacts.

This module is the only place where a ``BackupArtifact`` is turned into (or
rebuilt from) the string metadata map that S3 stores with each object.
"""

import io
import logging
from datetime import datetime
from typing import List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from tqdm import tqdm

from db_backup.artifacts import BackupArtifact, format_size, isoformat_utc
from db_backup.errors import ConfigurationError, StorageError, UploadError

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/sql"


def create_s3_client(storage_config):
    """boto3 client for the configured endpoint (R2 or any S3 API)."""
    boto_config = BotoConfig(
        region_name=storage_config.region,
        retries={'max_attempts': storage_config.max_attempts, 'mode': 'adaptive'}
    )
    return boto3.client(
        's3',
        endpoint_url=storage_config.resolved_endpoint,
        aws_access_key_id=storage_config.access_key_id,
        aws_secret_access_key=storage_config.secret_access_key,
        config=boto_config
    )


def build_key(created_at: datetime, prefix: str = "backups/") -> str:
    """``<prefix>backup-<ISO timestamp with ':' and '.' replaced by '-'>.sql``"""
    stamp = isoformat_utc(created_at).replace(':', '-').replace('.', '-')
    return f"{prefix}backup-{stamp}.sql"


def _error_message(e: Exception) -> str:
    if isinstance(e, ClientError):
        error = e.response.get('Error', {})
        return error.get('Message') or error.get('Code') or str(e)
    return str(e)


class S3ArtifactStore:
    """Upload, list, fetch and delete backup artifacts in one bucket/prefix."""

    def __init__(self, s3_client, bucket: str, prefix: str = "backups/",
                 show_progress: bool = False):
        self.s3_client = s3_client
        self.bucket = bucket
        self.prefix = prefix
        self.show_progress = show_progress

    @classmethod
    def from_config(cls, storage_config, s3_client=None, show_progress: bool = False):
        return cls(
            s3_client or create_s3_client(storage_config),
            bucket=storage_config.bucket,
            prefix=storage_config.prefix,
            show_progress=show_progress
        )

    def key_for(self, file_name: str) -> str:
        if file_name.startswith(self.prefix):
            return file_name
        return f"{self.prefix}{file_name}"

    def location(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    def verify_bucket_access(self):
        """Verify we can access the bucket."""
        try:
            self.s3_client.head_bucket(Bucket=self.bucket)
            logger.info(f"✓ Verified access to bucket: {self.bucket}")
        except ClientError as e:
            error_code = e.response['Error']['Code']
            if error_code in ('404', 'NoSuchBucket'):
                raise ConfigurationError(f"Bucket not found: {self.bucket}") from e
            elif error_code in ('403', 'AccessDenied'):
                raise ConfigurationError(f"Access denied to bucket: {self.bucket}") from e
            else:
                raise ConfigurationError(f"Error accessing bucket: {e}") from e

    def upload(self, data: bytes, artifact: BackupArtifact):
        """Write the artifact. Same-key uploads overwrite."""
        logger.info(f"Uploading {artifact.file_name} ({format_size(len(data))})")
        logger.info(f"  Destination: {self.location(artifact.key)}")

        try:
            with tqdm(total=len(data), unit='B', unit_scale=True,
                      desc="  Uploading", leave=False,
                      disable=not self.show_progress) as pbar:

                def upload_callback(bytes_amount):
                    pbar.update(bytes_amount)

                self.s3_client.upload_fileobj(
                    io.BytesIO(data),
                    self.bucket,
                    artifact.key,
                    ExtraArgs={
                        'ContentType': CONTENT_TYPE,
                        'Metadata': artifact.to_metadata(),
                    },
                    Callback=upload_callback
                )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 upload failed: {e}")
            raise UploadError(_error_message(e), details=str(e)) from e

        logger.info(f"✓ Upload complete: {artifact.key}")

    def list_artifacts(self) -> List[BackupArtifact]:
        """All ``.sql`` artifacts under the prefix, newest first."""
        artifacts = []
        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix):
                for obj in page.get('Contents', []):
                    key = obj['Key']
                    if not key.endswith('.sql'):
                        continue
                    metadata = self._head_metadata(key)
                    artifacts.append(BackupArtifact.from_metadata(
                        key, metadata, obj.get('Size', 0), obj.get('LastModified')
                    ))
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Error listing backups: {_error_message(e)}") from e

        artifacts.sort(key=lambda a: a.created_at, reverse=True)
        return artifacts

    def _head_metadata(self, key: str) -> dict:
        try:
            response = self.s3_client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            # Listed but gone or unreadable: fall back to what the key encodes
            logger.warning(f"Could not read metadata for {key}: {_error_message(e)}")
            return {}
        return response.get('Metadata', {})

    def get_artifact(self, key: str) -> Optional[BackupArtifact]:
        try:
            response = self.s3_client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response['Error']['Code'] in ('404', 'NoSuchKey', 'NotFound'):
                return None
            raise
        return BackupArtifact.from_metadata(
            key, response.get('Metadata', {}),
            response.get('ContentLength', 0), response.get('LastModified')
        )

    def download(self, key: str) -> bytes:
        response = self.s3_client.get_object(Bucket=self.bucket, Key=key)
        return response['Body'].read()

    def delete(self, key: str):
        self.s3_client.delete_object(Bucket=self.bucket, Key=key)
        logger.info(f"Deleted {self.location(key)}")

    def presigned_url(self, key: str, expires_in: int = 3600) -> str:
        return self.s3_client.generate_presigned_url(
            'get_object',
            Params={'Bucket': self.bucket, 'Key': key},
            ExpiresIn=expires_in
        )
