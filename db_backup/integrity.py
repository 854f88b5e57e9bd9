"""Snapshot verification.

Parses both snapshot formats (pg_dump plain SQL with COPY blocks, and the
logical INSERT format) into a table inventory with record counts, checks the
structure for truncation and destructive statements, and optionally compares
counts against the live database.
"""

import hashlib
import logging
import re
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import func, inspect, select, table

from db_backup.artifacts import IntegrityReport, TableReport, utc_now

logger = logging.getLogger(__name__)

NATIVE_HEADER = "-- PostgreSQL database dump"
NATIVE_TRAILER = "-- PostgreSQL database dump complete"

_NAME = r'((?:"[^"]+"|[\w$]+)(?:\.(?:"[^"]+"|[\w$]+))?)'
CREATE_TABLE_RE = re.compile(
    r'^CREATE\s+(?:UNLOGGED\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?' + _NAME, re.IGNORECASE
)
COPY_RE = re.compile(r'^COPY\s+' + _NAME + r'\s*(?:\([^)]*\))?\s+FROM\s+stdin;', re.IGNORECASE)
INSERT_RE = re.compile(r'^INSERT\s+INTO\s+' + _NAME, re.IGNORECASE)
MARKER_RE = re.compile(r'^--\s*Table:\s*' + _NAME)
FOOTER_RE = re.compile(r'^--\s*Total records backed up:\s*(\d+)', re.IGNORECASE)
DESTRUCTIVE_RE = re.compile(
    r'^(DROP\s+(?:TABLE|DATABASE|SCHEMA)\b|TRUNCATE\b|DELETE\s+FROM\b)', re.IGNORECASE
)
DOLLAR_TAG_RE = re.compile(r'\$(?:[A-Za-z_]\w*)?\$')
STRING_LITERAL_RE = re.compile(r"'(?:[^']|'')*'")


def normalize_table_name(name: str) -> str:
    """Strip quoting and schema qualification."""
    return name.replace('"', '').split('.')[-1]


def _dollar_quote_state(line: str, open_tag: Optional[str]) -> Optional[str]:
    """Dollar-quote tag still open at the end of ``line`` (None when closed)."""
    if open_tag is None:
        line = STRING_LITERAL_RE.sub('', line)
    for match in DOLLAR_TAG_RE.finditer(line):
        tag = match.group(0)
        if open_tag is None:
            open_tag = tag
        elif tag == open_tag:
            open_tag = None
    return open_tag


class ParsedSnapshot:
    """Structural facts extracted from snapshot text in one pass."""

    def __init__(self):
        self.tables: "OrderedDict[str, int]" = OrderedDict()
        self.is_native = False
        self.has_begin = False
        self.has_commit = False
        self.has_native_trailer = False
        self.footer_total: Optional[int] = None
        self.unterminated_copy: Optional[str] = None
        self.suspicious: List[str] = []

    @property
    def record_count(self) -> int:
        return sum(self.tables.values())

    def _register(self, raw_name: str) -> str:
        name = normalize_table_name(raw_name)
        self.tables.setdefault(name, 0)
        return name

    @classmethod
    def parse(cls, text: str) -> "ParsedSnapshot":
        parsed = cls()
        parsed.is_native = NATIVE_HEADER in text
        copy_table = None
        # Function, trigger and rule bodies are data, not statements
        dollar_tag = None

        for raw_line in text.splitlines():
            if copy_table is not None:
                if raw_line == '\\.':
                    copy_table = None
                else:
                    parsed.tables[copy_table] += 1
                continue

            if dollar_tag is not None:
                dollar_tag = _dollar_quote_state(raw_line, dollar_tag)
                continue

            line = raw_line.strip()
            if not line:
                continue

            upper = line.upper()
            if upper == 'BEGIN;':
                parsed.has_begin = True
            elif upper == 'COMMIT;':
                parsed.has_commit = True
            elif line.startswith(NATIVE_TRAILER):
                parsed.has_native_trailer = True

            match = INSERT_RE.match(line)
            if match:
                parsed.tables[parsed._register(match.group(1))] += 1
                continue

            match = COPY_RE.match(line)
            if match:
                copy_table = parsed._register(match.group(1))
                continue

            match = CREATE_TABLE_RE.match(line) or MARKER_RE.match(line)
            if match:
                parsed._register(match.group(1))
                continue

            match = FOOTER_RE.match(line)
            if match:
                parsed.footer_total = int(match.group(1))
                continue

            if DESTRUCTIVE_RE.match(line):
                parsed.suspicious.append(line[:80])

            if not line.startswith('--'):
                dollar_tag = _dollar_quote_state(line, None)

        parsed.unterminated_copy = copy_table
        return parsed


class IntegrityVerifier:
    """Decide whether a snapshot is trustworthy enough to upload."""

    def __init__(self, engine=None, essential_tables: Sequence[str] = (),
                 tolerance_ratio: float = 0.5, tolerance_rows: int = 10,
                 clock: Callable[[], datetime] = utc_now):
        self.engine = engine
        self.essential_tables = list(essential_tables)
        self.tolerance_ratio = tolerance_ratio
        self.tolerance_rows = tolerance_rows
        self.clock = clock

    def verify(self, data: bytes, simplified: bool = True) -> IntegrityReport:
        """Checksum, inventory and structural checks; full mode adds live counts."""
        checksum = hashlib.sha256(data).hexdigest()
        report = IntegrityReport(
            is_valid=False,
            checksum=checksum,
            size_bytes=len(data),
            record_count=0,
            created_at=self.clock(),
            simplified=simplified,
        )
        errors = report.validation_errors

        if not data.strip():
            errors.append("Snapshot is empty")
            return report

        try:
            text = data.decode('utf-8')
        except UnicodeDecodeError as e:
            errors.append(f"Snapshot is not valid UTF-8 text: {e}")
            return report

        parsed = ParsedSnapshot.parse(text)
        report.tables = [TableReport(name=n, record_count=c) for n, c in parsed.tables.items()]
        report.record_count = parsed.record_count

        errors.extend(self._structure_errors(parsed))

        if not parsed.tables:
            errors.append("No tables found in snapshot")

        for name in self.essential_tables:
            if name not in parsed.tables:
                errors.append(f"Essential table missing: {name}")

        for statement in parsed.suspicious:
            errors.append(f"Suspicious statement found: {statement}")

        if not simplified:
            self._compare_with_database(report)

        report.is_valid = not errors and all(t.is_valid for t in report.tables)

        if report.is_valid:
            logger.info(
                f"✓ Snapshot verified: {report.tables_count} tables, "
                f"{report.record_count} records, sha256 {checksum[:12]}"
            )
        else:
            logger.error(f"Snapshot failed verification: {'; '.join(errors)}")
        return report

    @staticmethod
    def _structure_errors(parsed: ParsedSnapshot) -> List[str]:
        errors = []
        if parsed.unterminated_copy:
            errors.append(
                f"Snapshot is truncated: COPY data for {parsed.unterminated_copy} never ends"
            )
        if parsed.is_native:
            if not parsed.has_native_trailer:
                errors.append("Snapshot is truncated: pg_dump completion marker missing")
            return errors

        if not parsed.has_begin or not parsed.has_commit:
            errors.append("Invalid structure: missing BEGIN; or COMMIT;")
        if parsed.footer_total is None:
            errors.append("Snapshot is truncated: record count footer missing")
        elif parsed.footer_total != parsed.record_count:
            errors.append(
                f"Record count mismatch: footer says {parsed.footer_total}, "
                f"found {parsed.record_count}"
            )
        return errors

    def current_counts(self, names: Sequence[str]) -> Dict[str, int]:
        """Row counts for the named tables that exist in the source database."""
        existing = set(inspect(self.engine).get_table_names())
        counts = {}
        with self.engine.connect() as conn:
            for name in names:
                if name in existing:
                    counts[name] = conn.execute(
                        select(func.count()).select_from(table(name))
                    ).scalar_one()
        return counts

    def _compare_with_database(self, report: IntegrityReport):
        if self.engine is None:
            report.warnings.append("Full validation requested without a database connection; skipped")
            return

        try:
            counts = self.current_counts([t.name for t in report.tables])
        except Exception as e:
            message = f"Could not compare record counts with the database: {e}"
            logger.warning(message)
            report.warnings.append(message)
            return

        for table_report in report.tables:
            current = counts.get(table_report.name)
            if current is None:
                continue
            table_report.expected_count = current
            if current == 0:
                continue

            difference = abs(current - table_report.record_count)
            if difference / current > self.tolerance_ratio and difference > self.tolerance_rows:
                table_report.is_valid = False
                report.validation_errors.append(
                    f"Table {table_report.name}: snapshot has {table_report.record_count} "
                    f"records, database has {current}"
                )
