"""Database models and connection management for the backup engine."""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    DateTime, Integer, String, Text, Float,
    create_engine, Column, Index, event
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class BackupRun(Base):
    """Progress record of one backup run, keyed by run id.

    Lets several application instances observe and coordinate the same run.
    """
    __tablename__ = 'backup_runs'

    run_id = Column(String(64), primary_key=True)
    status = Column(String(20), nullable=False, default='idle')
    progress = Column(Integer, nullable=False, default=0)
    current_step = Column(String(255), default='')
    trigger = Column(String(20))

    start_time = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=_utcnow)
    finished_at = Column(DateTime(timezone=True))
    estimated_duration_ms = Column(Float)

    error = Column(Text)
    error_details = Column(Text)
    backup_info = Column(Text)  # JSON

    __table_args__ = (
        Index('idx_backup_runs_status', 'status'),
        Index('idx_backup_runs_updated', 'updated_at'),
    )

    def get_backup_info(self) -> Optional[dict]:
        return json.loads(self.backup_info) if self.backup_info else None

    def set_backup_info(self, info: Optional[dict]):
        self.backup_info = json.dumps(info) if info is not None else None

    def __repr__(self):
        return f"<BackupRun(run_id='{self.run_id}', status='{self.status}', progress={self.progress})>"


class BackupLock(Base):
    """Single row that serialises run reservation across instances."""
    __tablename__ = 'backup_locks'

    name = Column(String(64), primary_key=True)
    holder = Column(String(64))
    acquired_at = Column(DateTime(timezone=True))

    def __repr__(self):
        return f"<BackupLock(name='{self.name}', holder='{self.holder}')>"


class DatabaseManager:
    """Database connection and session management."""

    def __init__(self, connection_string: str):
        url = make_url(connection_string)
        if url.get_backend_name() == 'sqlite' and url.database and url.database != ':memory:':
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(connection_string, echo=False)

        if url.get_backend_name() == 'sqlite':
            @event.listens_for(self.engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        self.SessionLocal = sessionmaker(bind=self.engine)

    def create_tables(self):
        """Create all tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self):
        """Get a database session."""
        return self.SessionLocal()

    def close(self):
        """Close the database connection."""
        self.engine.dispose()
