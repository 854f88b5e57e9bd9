"""Snapshot producers.

Two exporters share one interface: ``NativeDumpExporter`` shells out to
pg_dump, ``OrmDumpExporter`` reflects the schema through SQLAlchemy and writes
INSERT statements. ``DumpStrategyChain`` tries them in order.
"""

import json
import logging
import os
import re
import shutil
import subprocess
from datetime import date, datetime, time
from decimal import Decimal
from typing import Callable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import MetaData, create_engine, select
from sqlalchemy.engine import make_url

from db_backup.artifacts import DumpMethod, DumpResult, isoformat_utc, utc_now
from db_backup.errors import DumpError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]

# pg_dump prefixes problems with "error:" / "fatal:"; anything else is advisory
STDERR_FAILURE_RE = re.compile(r'(^|\s|:)(error|fatal)\s*:', re.IGNORECASE)


class SnapshotExporter:
    """Produces a complete snapshot of the source database as bytes."""

    method: DumpMethod = None
    description: str = "exporter"

    def export(self) -> bytes:
        raise NotImplementedError


class NativeDumpExporter(SnapshotExporter):
    """Run pg_dump against the configured PostgreSQL endpoint."""

    method = DumpMethod.NATIVE
    description = "pg_dump"

    def __init__(self, connection_string: str, binary: str = "pg_dump",
                 timeout_seconds: float = 240,
                 max_output_bytes: int = 50 * 1024 * 1024,
                 extra_args: Sequence[str] = ("--no-owner", "--no-acl"),
                 runner=subprocess.run, which=shutil.which):
        self.connection_string = connection_string
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self.max_output_bytes = max_output_bytes
        self.extra_args = list(extra_args)
        self.runner = runner
        self.which = which

    def build_command(self):
        """Return (argv, env). The password only ever travels in PGPASSWORD."""
        if not self.connection_string:
            raise DumpError("No database connection configured")
        url = make_url(self.connection_string)
        if url.get_backend_name() != 'postgresql':
            raise DumpError(f"{self.binary} only supports PostgreSQL, not {url.get_backend_name()}")

        binary_path = self.which(self.binary)
        if not binary_path:
            raise DumpError(f"{self.binary} not found on PATH")

        args = [binary_path]
        if url.host:
            args += ['-h', url.host]
        if url.port:
            args += ['-p', str(url.port)]
        if url.username:
            args += ['-U', url.username]
        if url.database:
            args += ['-d', url.database]
        args += self.extra_args

        env = dict(os.environ)
        if url.password:
            env['PGPASSWORD'] = str(url.password)
        sslmode = url.query.get('sslmode')
        if sslmode:
            env['PGSSLMODE'] = sslmode if isinstance(sslmode, str) else sslmode[0]
        return args, env

    def export(self) -> bytes:
        args, env = self.build_command()
        logger.info(f"Running {self.binary} (timeout {self.timeout_seconds}s)")

        try:
            result = self.runner(args, capture_output=True, env=env,
                                 timeout=self.timeout_seconds, check=False)
        except subprocess.TimeoutExpired as e:
            raise DumpError(f"{self.binary} timed out after {self.timeout_seconds}s") from e
        except OSError as e:
            raise DumpError(f"Could not start {self.binary}: {e}") from e

        stderr = (result.stderr or b"").decode('utf-8', errors='replace').strip()

        if result.returncode != 0:
            raise DumpError(f"{self.binary} exited with code {result.returncode}",
                            details=stderr or None)

        if stderr:
            if STDERR_FAILURE_RE.search(stderr):
                raise DumpError(f"{self.binary} reported an error", details=stderr)
            logger.warning(f"{self.binary} warnings: {stderr}")

        data = result.stdout or b""
        if not data.strip():
            raise DumpError(f"{self.binary} produced no output")
        if len(data) > self.max_output_bytes:
            raise DumpError(
                f"{self.binary} output exceeded {self.max_output_bytes} bytes ({len(data)})"
            )
        return data


def format_sql_value(value) -> str:
    """Render a Python value as a SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, float):
        if value != value or value in (float('inf'), float('-inf')):
            return f"'{value}'"
        return repr(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return f"'{isoformat_utc(value)}'"
        return f"'{value.isoformat()}'"
    if isinstance(value, (date, time)):
        return f"'{value.isoformat()}'"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "'\\x" + bytes(value).hex() + "'"
    if isinstance(value, (dict, list, tuple)):
        value = json.dumps(value, default=str)
    elif isinstance(value, UUID):
        value = str(value)
    text = str(value).replace("'", "''")
    if '\n' in text or '\r' in text:
        # Escape string literal so every INSERT stays on one line
        text = text.replace('\\', '\\\\').replace('\n', '\\n').replace('\r', '\\r')
        return "E'" + text + "'"
    return "'" + text + "'"


class OrmDumpExporter(SnapshotExporter):
    """Logical export through SQLAlchemy reflection.

    Tables are written in foreign-key dependency order, one INSERT per row,
    inside a single transaction. Each table gets a ``-- Table:`` marker so
    empty tables still show up in the inventory.
    """

    method = DumpMethod.LOGICAL
    description = "logical export"

    def __init__(self, engine=None, connection_string: Optional[str] = None,
                 clock: Callable[[], datetime] = utc_now):
        self._engine = engine
        self.connection_string = connection_string
        self.clock = clock

    @property
    def engine(self):
        if self._engine is None:
            if not self.connection_string:
                raise DumpError("No database connection configured")
            self._engine = create_engine(self.connection_string)
        return self._engine

    def export(self) -> bytes:
        engine = self.engine
        is_postgres = engine.dialect.name == 'postgresql'
        quote = engine.dialect.identifier_preparer.quote

        metadata = MetaData()
        try:
            metadata.reflect(bind=engine)
        except Exception as e:
            raise DumpError(f"Could not read database schema: {e}") from e

        tables = metadata.sorted_tables
        lines: List[str] = [
            "-- Logical database backup",
            f"-- Generated: {isoformat_utc(self.clock())}",
            "-- Method: logical",
            f"-- Tables: {len(tables)}",
            "",
            "BEGIN;",
        ]
        if is_postgres:
            lines += [
                "SET CONSTRAINTS ALL DEFERRED;",
                "SET session_replication_role = 'replica';",
            ]
        lines.append("")

        total_records = 0
        try:
            with engine.connect() as conn:
                for table in tables:
                    columns = [c.name for c in table.columns]
                    column_list = ", ".join(quote(c) for c in columns)
                    lines.append(f"-- Table: {table.name}")
                    count = 0
                    for row in conn.execute(select(table)):
                        values = ", ".join(format_sql_value(row._mapping[c]) for c in columns)
                        lines.append(
                            f"INSERT INTO {quote(table.name)} ({column_list}) "
                            f"VALUES ({values}) ON CONFLICT DO NOTHING;"
                        )
                        count += 1
                    logger.debug(f"  {table.name}: {count} records")
                    total_records += count
                    lines.append("")
        except Exception as e:
            raise DumpError(f"Logical export failed: {e}") from e

        if is_postgres:
            lines.append("SET session_replication_role = 'origin';")
        lines += [
            "COMMIT;",
            "",
            f"-- Total records backed up: {total_records}",
            f"-- Total tables backed up: {len(tables)}",
            "",
        ]
        logger.info(f"Logical export: {total_records} records from {len(tables)} tables")
        return "\n".join(lines).encode('utf-8')


class DumpStrategyChain:
    """Try each exporter in order; the first that succeeds wins."""

    # Progress milestones reported while producing the snapshot
    FIRST_ATTEMPT_PROGRESS = 20
    FALLBACK_PROGRESS = 30
    DONE_PROGRESS = 60

    def __init__(self, exporters: Sequence[SnapshotExporter]):
        if not exporters:
            raise ValueError("DumpStrategyChain needs at least one exporter")
        self.exporters = list(exporters)

    def produce_snapshot(self, progress: Optional[ProgressCallback] = None) -> DumpResult:
        report = progress or (lambda percent, step: None)
        reasons: List[str] = []

        for index, exporter in enumerate(self.exporters):
            if index == 0:
                report(self.FIRST_ATTEMPT_PROGRESS, f"Creating snapshot with {exporter.description}")
            else:
                report(self.FALLBACK_PROGRESS, f"Falling back to {exporter.description}")

            try:
                data = exporter.export()
            except DumpError as e:
                reason = f"{exporter.method.value}: {e.message}"
                if e.details:
                    reason += f" ({e.details})"
                logger.warning(f"{exporter.description} failed: {reason}")
                reasons.append(reason)
                continue

            logger.info(f"✓ Snapshot created with {exporter.description} ({len(data)} bytes)")
            report(self.DONE_PROGRESS, "Snapshot created")
            return DumpResult(data=data, method=exporter.method, fallback_reasons=reasons)

        raise DumpError("All dump methods failed", details="; ".join(reasons))


def build_dump_chain(dump_config, connection_string: str, engine=None,
                     runner=subprocess.run, which=shutil.which) -> DumpStrategyChain:
    """Native first, logical fallback, each enabled by configuration."""
    exporters: List[SnapshotExporter] = []
    if dump_config.native_enabled:
        exporters.append(NativeDumpExporter(
            connection_string,
            binary=dump_config.native_binary,
            timeout_seconds=dump_config.native_timeout_seconds,
            max_output_bytes=dump_config.max_output_bytes,
            extra_args=dump_config.native_extra_args,
            runner=runner,
            which=which,
        ))
    if dump_config.logical_enabled:
        exporters.append(OrmDumpExporter(engine=engine, connection_string=connection_string))
    return DumpStrategyChain(exporters)
