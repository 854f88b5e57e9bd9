"""Configuration management for the database backup engine."""

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator


R2_ENDPOINT_TEMPLATE = "https://{account_id}.r2.cloudflarestorage.com"

# Environment variables that override values from config.json
ENV_OVERRIDES = {
    ('storage', 'account_id'): 'R2_ACCOUNT_ID',
    ('storage', 'access_key_id'): 'R2_ACCESS_KEY_ID',
    ('storage', 'secret_access_key'): 'R2_SECRET_ACCESS_KEY',
    ('storage', 'bucket'): 'R2_BUCKET_NAME',
    ('storage', 'endpoint_url'): 'S3_ENDPOINT_URL',
    ('database', 'direct_url'): 'DIRECT_DATABASE_URL',
    ('database', 'pooled_url'): 'DATABASE_URL',
}


def _expand(v):
    if isinstance(v, str):
        return os.path.expanduser(os.path.expandvars(v))
    return v


class StorageConfig(BaseModel):
    """S3-compatible object store configuration."""
    endpoint_url: Optional[str] = None
    account_id: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    bucket: str = "db-backups"
    region: str = "auto"
    prefix: str = "backups/"
    max_attempts: int = 3
    presigned_url_expiry_seconds: int = 3600

    @field_validator('endpoint_url', 'account_id', 'bucket', 'region', 'prefix', mode='before')
    @classmethod
    def expand_values(cls, v):
        """Expand environment variables and user home directory. Credentials are taken literally."""
        return _expand(v)

    @field_validator('prefix')
    @classmethod
    def normalize_prefix(cls, v):
        if v and not v.endswith('/'):
            v = v + '/'
        return v

    @property
    def resolved_endpoint(self) -> Optional[str]:
        """Explicit endpoint, else the R2 endpoint derived from the account id."""
        if self.endpoint_url:
            return self.endpoint_url
        if self.account_id:
            return R2_ENDPOINT_TEMPLATE.format(account_id=self.account_id)
        return None


class DatabaseConfig(BaseModel):
    """Source database configuration. Connection strings are used verbatim."""
    direct_url: Optional[str] = None
    pooled_url: Optional[str] = None

    @property
    def connection_string(self) -> Optional[str]:
        """Direct connection preferred, pooled connection as fallback."""
        return self.direct_url or self.pooled_url


class DumpConfig(BaseModel):
    """Snapshot producer configuration."""
    native_enabled: bool = True
    native_binary: str = "pg_dump"
    native_timeout_seconds: int = 240
    max_output_bytes: int = 50 * 1024 * 1024  # 50MB
    native_extra_args: List[str] = ["--no-owner", "--no-acl"]
    logical_enabled: bool = True


class IntegrityConfig(BaseModel):
    """Snapshot verification configuration."""
    essential_tables: List[str] = []
    count_tolerance_ratio: float = 0.5
    count_tolerance_rows: int = 10
    simplified_for_automatic: bool = True
    simplified_for_manual: bool = False


class RetentionConfig(BaseModel):
    """Grandfather-father-son rotation configuration."""
    enabled: bool = True
    daily_retention_days: int = 7
    weekly_retention_weeks: int = 4
    monthly_retention_months: int = 6
    max_total_size_bytes: Optional[int] = 5 * 1024 * 1024 * 1024  # 5GB
    max_backup_count: Optional[int] = 50

    @field_validator('daily_retention_days', 'weekly_retention_weeks', 'monthly_retention_months')
    @classmethod
    def non_negative(cls, v):
        if v < 0:
            raise ValueError("retention windows must be >= 0")
        return v


class ProgressConfig(BaseModel):
    """Run progress tracking configuration."""
    backend: str = "memory"
    concurrency_policy: str = "overwrite"
    reset_delay_seconds: float = 120.0
    queue_timeout_seconds: float = 300.0
    stale_after_seconds: float = 900.0
    run_timeout_seconds: float = 300.0

    @field_validator('backend')
    @classmethod
    def check_backend(cls, v):
        if v not in ('memory', 'database'):
            raise ValueError(f"Unknown progress backend: {v}")
        return v

    @field_validator('concurrency_policy')
    @classmethod
    def check_policy(cls, v):
        if v not in ('overwrite', 'reject', 'queue'):
            raise ValueError(f"Unknown concurrency policy: {v}")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: str = "db_backup.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5


class Config(BaseModel):
    """Main configuration model."""
    storage: StorageConfig = Field(default_factory=StorageConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    dump: DumpConfig = Field(default_factory=DumpConfig)
    integrity: IntegrityConfig = Field(default_factory=IntegrityConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    progress_database_url: str = Field(default="sqlite:///~/.db_backup/progress.db", validate_default=True)

    @field_validator('progress_database_url', mode='before')
    @classmethod
    def expand_progress_url(cls, v):
        if isinstance(v, str) and v.startswith('sqlite:///'):
            return 'sqlite:///' + _expand(v[len('sqlite:///'):])
        return v


def apply_env_overrides(config_data: dict, environ=None) -> dict:
    """Overlay well-known environment variables onto raw config data."""
    environ = os.environ if environ is None else environ
    for (section, key), env_name in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            config_data.setdefault(section, {})[key] = value
    return config_data


def load_config(config_path: str = "config.json", environ=None) -> Config:
    """Load configuration from a JSON file plus environment overrides.

    A missing file is not an error: defaults and environment variables are
    used, and required values are checked when a backup actually runs.
    """
    config_file = Path(config_path)
    config_data = {}

    if config_file.exists():
        with open(config_file, 'r') as f:
            config_data = json.load(f)

    config_data = apply_env_overrides(config_data, environ)
    return Config(**config_data)


def create_default_config(config_path: str = "config.json") -> None:
    """Create a default configuration file."""
    default_config = {
        "storage": {
            "endpoint_url": None,
            "account_id": None,
            "access_key_id": None,
            "secret_access_key": None,
            "bucket": "db-backups",
            "region": "auto",
            "prefix": "backups/"
        },
        "database": {
            "direct_url": None,
            "pooled_url": None
        },
        "dump": {
            "native_binary": "pg_dump",
            "native_timeout_seconds": 240,
            "max_output_bytes": 52428800
        },
        "integrity": {
            "essential_tables": [],
            "simplified_for_automatic": True,
            "simplified_for_manual": False
        },
        "retention": {
            "enabled": True,
            "daily_retention_days": 7,
            "weekly_retention_weeks": 4,
            "monthly_retention_months": 6,
            "max_total_size_bytes": 5368709120,
            "max_backup_count": 50
        },
        "progress": {
            "backend": "memory",
            "concurrency_policy": "overwrite",
            "reset_delay_seconds": 120
        },
        "logging": {
            "level": "INFO",
            "file": "db_backup.log",
            "max_bytes": 10485760,
            "backup_count": 5
        }
    }

    with open(config_path, 'w') as f:
        json.dump(default_config, f, indent=2)

    print(f"Created default configuration file: {config_path}")


def setup_logging(config: Config, verbose: bool = False, console: bool = True):
    """Setup logging based on configuration."""
    log_level = logging.DEBUG if verbose else getattr(logging, config.logging.level.upper(), logging.INFO)

    handlers = [
        RotatingFileHandler(
            config.logging.file,
            maxBytes=config.logging.max_bytes,
            backupCount=config.logging.backup_count
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )

    # Quiet noisy libraries
    for noisy in ('botocore', 'boto3', 's3transfer', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.WARNING)
