"""
Resumable SQL dump of the site database.

Tables are dumped one at a time into a temp file. The slice budget is
checked after each table; pausing persists the table cursor and the
number of bytes written so the next slice continues exactly there.
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import time
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, timezone
from decimal import Decimal
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import MetaData, Table, create_engine, func, inspect, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateTable

from .config import ExportConfig
from .errors import DatabaseUnavailableError, FailureCeilingExceededError, OutputUnavailableError
from .types import SessionCheckpoint
from .utils import format_bytes, remove_file

logger = logging.getLogger(__name__)

COMPLETION_MARKER = "-- Export completed"
TABLE_STRUCTURE_PREFIX = "-- Table structure for table "
INSERT_PREFIX = b"INSERT INTO "
GZIP_LEVEL = 6
TAIL_BYTES = 2048

MYSQL_DIALECTS = ("mysql", "mariadb")

NUMERIC_TYPE_PREFIXES = (
    "int",
    "tinyint",
    "smallint",
    "mediumint",
    "bigint",
    "float",
    "double",
    "decimal",
    "numeric",
    "bit",
    "real",
    "serial",
)

_MYSQL_ESCAPES = {
    "\\": "\\\\",
    "\0": "\\0",
    "\n": "\\n",
    "\r": "\\r",
    "'": "\\'",
    '"': '\\"',
    "\x1a": "\\Z",
}


def collation_rewrites(version: Optional[Sequence[int]]) -> List[Tuple[str, str]]:
    """
    Collation replacements that make a dump load on a server of ``version``.

    Servers before 5.5.3 have no utf8mb4 at all; 5.5 lacks the 5.2.0
    collations; everything newer gets the 8.0 default collation replaced
    by the most widely supported utf8mb4 collation.
    """
    if not version:
        return []
    v = tuple(int(part) for part in version[:3])
    if v < (5, 5, 3):
        return [
            ("utf8mb4_0900_ai_ci", "utf8_unicode_ci"),
            ("utf8mb4_unicode_520_ci", "utf8_unicode_ci"),
            ("utf8mb4", "utf8"),
        ]
    if v < (5, 6):
        return [
            ("utf8mb4_0900_ai_ci", "utf8mb4_unicode_ci"),
            ("utf8mb4_unicode_520_ci", "utf8mb4_unicode_ci"),
        ]
    return [("utf8mb4_0900_ai_ci", "utf8mb4_unicode_520_ci")]


def rewrite_collations(sql: str, version: Optional[Sequence[int]]) -> str:
    for old, new in collation_rewrites(version):
        sql = sql.replace(old, new)
    return sql


def dump_is_complete(path: str) -> bool:
    """Check whether the dump at ``path`` ends with the completion marker."""
    if not os.path.exists(path) or os.path.getsize(path) == 0:
        return False
    if path.endswith(".gz"):
        tail = b""
        try:
            with gzip.open(path, "rb") as f:
                for chunk in iter(lambda: f.read(1024 * 1024), b""):
                    tail = (tail + chunk)[-TAIL_BYTES:]
        except (EOFError, OSError):
            # Truncated or corrupt stream
            return False
    else:
        with open(path, "rb") as f:
            f.seek(max(0, os.path.getsize(path) - TAIL_BYTES))
            tail = f.read()
    return COMPLETION_MARKER.encode() in tail


def is_numeric_type(type_name: str) -> bool:
    return type_name.strip().lower().startswith(NUMERIC_TYPE_PREFIXES)


@dataclass
class DumpResult:
    """Outcome of one dump slice."""
    completed: bool
    tables_done: int = 0
    rows_exported: int = 0
    bytes_written: int = 0
    output_path: Optional[str] = None
    elapsed: float = 0.0


class DatabaseDumper:
    """Dump every table of the configured database as SQL statements."""

    def __init__(
        self,
        config: ExportConfig,
        engine: Optional[Engine] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if engine is None and not config.database_url:
            raise DatabaseUnavailableError("No database URL configured")
        self.config = config
        self.engine = engine or create_engine(config.database_url, pool_pre_ping=True)
        self.clock = clock
        self.logger = logging.getLogger(f"{__name__}.DatabaseDumper")

    @property
    def is_mysql(self) -> bool:
        return self.engine.dialect.name in MYSQL_DIALECTS

    def dump(self, checkpoint: SessionCheckpoint, temp_path: str, output_path: str) -> DumpResult:
        """
        Dump tables until all are done or the slice budget runs out.

        Args:
            checkpoint: Session checkpoint; updated in place
            temp_path: Working file the statements are appended to
            output_path: Final plain-text dump path; ``.gz`` is appended when compressed

        Returns:
            DumpResult with ``completed`` False when the slice paused

        Raises:
            DatabaseUnavailableError: If the database cannot be reached
            OutputUnavailableError: If the dump file cannot be written
        """
        started = self.clock()
        result = DumpResult(completed=False)

        existing = self._adopt_finished_dump(checkpoint, temp_path, output_path)
        if existing is not None:
            result.completed = True
            result.output_path = existing
            result.rows_exported = checkpoint.rows_exported
            return result

        try:
            with self.engine.connect() as conn:
                self._prepare_connection(conn)
                if checkpoint.db_temp_path is None:
                    self._start_dump(conn, checkpoint, temp_path)

                out = self._open_temp(checkpoint)
                try:
                    while checkpoint.table_cursor < len(checkpoint.tables):
                        table_name = checkpoint.tables[checkpoint.table_cursor]
                        rows = self._dump_table(conn, out, table_name, checkpoint)
                        checkpoint.table_rows[table_name] = rows
                        checkpoint.rows_exported += rows
                        checkpoint.table_cursor += 1
                        out.flush()
                        checkpoint.db_bytes_written = out.tell()
                        result.tables_done += 1
                        result.rows_exported += rows

                        if checkpoint.table_cursor >= len(checkpoint.tables):
                            break
                        if result.tables_done >= self.config.db_tables_per_slice:
                            break
                        if self.clock() - started >= self.config.db_time_budget:
                            break

                    if checkpoint.table_cursor >= len(checkpoint.tables):
                        self._write_lines(out, self._footer())
                        out.flush()
                        checkpoint.db_bytes_written = out.tell()
                        result.completed = True
                    os.fsync(out.fileno())
                finally:
                    out.close()
        except SQLAlchemyError as e:
            raise DatabaseUnavailableError("Database query failed during export", technical=str(e))

        result.bytes_written = checkpoint.db_bytes_written
        if result.completed:
            result.output_path = self._finalize(checkpoint, output_path)

        result.elapsed = self.clock() - started
        self.logger.info(
            f"Database slice {'complete' if result.completed else 'paused'}: "
            f"{checkpoint.table_cursor}/{checkpoint.total_tables} tables, "
            f"{checkpoint.rows_exported} rows, {format_bytes(checkpoint.db_bytes_written)} "
            f"in {result.elapsed:.2f}s"
        )
        return result

    def _prepare_connection(self, conn: Connection) -> None:
        if self.is_mysql:
            charset = self.config.db_charset
            conn.execute(text(f"SET NAMES {charset}"))
            conn.execute(text("SET SESSION sql_mode = ''"))

    def _adopt_finished_dump(self, checkpoint: SessionCheckpoint, temp_path: str, output_path: str) -> Optional[str]:
        """
        Find a complete artifact written by an earlier slice.

        A worker can die after the artifact was moved into place but before
        the checkpoint recording it was saved. The artifact is then adopted
        and the table and row counts are rebuilt from its contents.
        """
        candidates = [output_path + ".gz", output_path]
        if checkpoint.database_artifact:
            candidates.insert(0, os.path.join(os.path.dirname(output_path), checkpoint.database_artifact))

        found = next((path for path in candidates if dump_is_complete(path)), None)
        if found is None:
            return None

        name = os.path.basename(found)
        if checkpoint.database_artifact == name:
            self.logger.info(f"Database dump already complete: {found}")
        else:
            self.logger.warning(f"Adopting finished database dump {found} left by an interrupted slice")
            self._recount(found, checkpoint)
            checkpoint.database_artifact = name
            checkpoint.dialect = checkpoint.dialect or self.engine.dialect.name

        for stale in {checkpoint.db_temp_path, temp_path}:
            if stale and remove_file(stale):
                self.logger.info(f"Removed leftover dump file {stale}")
        return found

    def _recount(self, path: str, checkpoint: SessionCheckpoint) -> None:
        """Rebuild the per-table row counts of ``checkpoint`` from a finished dump."""
        table_rows: Dict[str, int] = {}
        current = None
        prefix = TABLE_STRUCTURE_PREFIX.encode()
        opener = gzip.open if path.endswith(".gz") else open
        with opener(path, "rb") as f:
            for line in f:
                if line.startswith(prefix):
                    current = _unquote_identifier(line[len(prefix):].decode("utf-8", "surrogateescape").strip())
                    table_rows[current] = 0
                elif current is not None and line.startswith(INSERT_PREFIX):
                    table_rows[current] += 1

        checkpoint.tables = list(table_rows)
        checkpoint.total_tables = len(table_rows)
        checkpoint.table_cursor = len(table_rows)
        checkpoint.table_rows = table_rows
        checkpoint.rows_exported = sum(table_rows.values())

    def _start_dump(self, conn: Connection, checkpoint: SessionCheckpoint, temp_path: str) -> None:
        """List tables once, record server facts and write the dump header."""
        checkpoint.tables = sorted(inspect(conn).get_table_names())
        checkpoint.total_tables = len(checkpoint.tables)
        checkpoint.table_cursor = 0
        checkpoint.rows_exported = 0
        checkpoint.table_rows = {}
        checkpoint.dialect = conn.dialect.name
        version = conn.dialect.server_version_info
        checkpoint.server_version = list(version) if version else None

        try:
            with open(temp_path, "wb") as out:
                self._write_lines(out, self._header())
                checkpoint.db_bytes_written = out.tell()
        except OSError as e:
            raise OutputUnavailableError(f"Cannot create dump file {temp_path}", technical=str(e))
        checkpoint.db_temp_path = temp_path
        self.logger.info(f"Dumping {checkpoint.total_tables} tables ({checkpoint.dialect})")

    def _open_temp(self, checkpoint: SessionCheckpoint) -> BinaryIO:
        path = checkpoint.db_temp_path
        try:
            out = open(path, "r+b")
        except OSError as e:
            raise OutputUnavailableError(f"Cannot open dump file {path}", technical=str(e))

        length = os.fstat(out.fileno()).st_size
        if length < checkpoint.db_bytes_written:
            out.close()
            raise OutputUnavailableError(
                f"Dump file {path} is {length} bytes but {checkpoint.db_bytes_written} were recorded"
            )
        if length > checkpoint.db_bytes_written:
            # Statements of a table that never finished
            self.logger.warning(f"Discarding {length - checkpoint.db_bytes_written} bytes of an unfinished table")
            out.truncate(checkpoint.db_bytes_written)
        out.seek(checkpoint.db_bytes_written)
        return out

    def _dump_table(self, conn: Connection, out: BinaryIO, table_name: str, checkpoint: SessionCheckpoint) -> int:
        """Write schema and data of one table; return the number of rows written."""
        quoted = self.quote(table_name)
        create_sql = self._create_statement(conn, table_name)
        if self.is_mysql:
            create_sql = rewrite_collations(create_sql, checkpoint.server_version)

        self._write_lines(out, [
            "",
            "-- --------------------------------------------------------",
            f"{TABLE_STRUCTURE_PREFIX}{quoted}",
            "-- --------------------------------------------------------",
            "",
            f"DROP TABLE IF EXISTS {quoted};",
            create_sql.rstrip().rstrip(";") + ";",
            "",
        ])

        table = Table(table_name, MetaData(), autoload_with=conn)
        columns = list(table.columns)
        numeric = [is_numeric_type(str(column.type)) for column in columns]
        order_by = list(table.primary_key.columns) or columns

        total_rows = conn.execute(select(func.count()).select_from(table)).scalar() or 0
        self._write_lines(out, [
            "-- --------------------------------------------------------",
            f"-- Dumping data for table {quoted} ({total_rows} rows)",
            "-- --------------------------------------------------------",
            "",
        ])

        batch_size = self.config.db_batch_size
        tx_size = self.config.db_transaction_size
        inserts = 0
        offset = 0
        while True:
            stmt = select(table).order_by(*order_by).limit(batch_size).offset(offset)
            try:
                rows = conn.execute(stmt).fetchall()
            except SQLAlchemyError as e:
                conn.rollback()
                checkpoint.db_batches_failed += 1
                self.logger.warning(f"Skipping rows {offset}-{offset + batch_size} of {table_name}: {e}")
                if checkpoint.db_batches_failed > self.config.db_max_failed_batches:
                    raise FailureCeilingExceededError(
                        f"{checkpoint.db_batches_failed} row batches failed "
                        f"(limit {self.config.db_max_failed_batches}); database export is unreliable"
                    )
                offset += batch_size
                if offset >= total_rows:
                    break
                continue

            if not rows:
                break
            for row in rows:
                if inserts % tx_size == 0:
                    out.write(b"START TRANSACTION;\n")
                values = ",".join(self.format_value(value, num) for value, num in zip(row, numeric))
                out.write(f"INSERT INTO {quoted} VALUES ({values});\n".encode("utf-8", "surrogateescape"))
                inserts += 1
                if inserts % tx_size == 0:
                    out.write(b"COMMIT;\n")
            offset += len(rows)
            if len(rows) < batch_size:
                break

        if inserts % tx_size:
            out.write(b"COMMIT;\n")
        out.write(b"\n")

        self.logger.info(f"Dumped table {table_name}: {inserts} rows")
        return inserts

    def _create_statement(self, conn: Connection, table_name: str) -> str:
        dialect = conn.dialect.name
        if dialect in MYSQL_DIALECTS:
            row = conn.execute(text(f"SHOW CREATE TABLE {self.quote(table_name)}")).first()
            return row[1]
        if dialect == "sqlite":
            ddl = conn.execute(
                text("SELECT sql FROM sqlite_master WHERE type = 'table' AND name = :name"),
                {"name": table_name},
            ).scalar()
            if ddl:
                return ddl
        table = Table(table_name, MetaData(), autoload_with=conn)
        return str(CreateTable(table).compile(dialect=conn.dialect)).strip()

    def quote(self, identifier: str) -> str:
        return self.engine.dialect.identifier_preparer.quote_identifier(identifier)

    def format_value(self, value: Any, numeric: bool) -> str:
        """Render one column value as an SQL literal."""
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return "1" if value else "0"
        if numeric and isinstance(value, (int, float, Decimal)):
            return str(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            raw = bytes(value)
            if not raw:
                return "''"
            return f"0x{raw.hex()}" if self.is_mysql else f"X'{raw.hex()}'"
        if isinstance(value, datetime):
            value = value.strftime("%Y-%m-%d %H:%M:%S") + (f".{value.microsecond:06d}" if value.microsecond else "")
        elif isinstance(value, (date, dt_time)):
            value = value.isoformat()
        elif isinstance(value, timedelta):
            value = _format_interval(value)
        return "'" + self.escape(str(value)) + "'"

    def escape(self, value: str) -> str:
        if self.is_mysql:
            return "".join(_MYSQL_ESCAPES.get(ch, ch) for ch in value)
        return value.replace("'", "''")

    def _header(self) -> List[str]:
        charset = self.config.db_charset
        url = self.engine.url
        return [
            "-- Site Database Export",
            f"-- Date: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')} GMT",
            f"-- Host: {url.host or 'localhost'}",
            f"-- Database: {url.database or ''}",
            f"-- Export Charset: {charset}",
            "",
            "/*!40101 SET @OLD_CHARACTER_SET_CLIENT=@@CHARACTER_SET_CLIENT */;",
            "/*!40101 SET @OLD_CHARACTER_SET_RESULTS=@@CHARACTER_SET_RESULTS */;",
            "/*!40101 SET @OLD_COLLATION_CONNECTION=@@COLLATION_CONNECTION */;",
            f"/*!40101 SET NAMES {charset} */;",
            "/*!40103 SET @OLD_TIME_ZONE=@@TIME_ZONE */;",
            "/*!40103 SET TIME_ZONE='+00:00' */;",
            "/*!40014 SET @OLD_UNIQUE_CHECKS=@@UNIQUE_CHECKS, UNIQUE_CHECKS=0 */;",
            "/*!40014 SET @OLD_FOREIGN_KEY_CHECKS=@@FOREIGN_KEY_CHECKS, FOREIGN_KEY_CHECKS=0 */;",
            "/*!40101 SET @OLD_SQL_MODE=@@SQL_MODE, SQL_MODE='NO_AUTO_VALUE_ON_ZERO' */;",
            "/*!40111 SET @OLD_SQL_NOTES=@@SQL_NOTES, SQL_NOTES=0 */;",
            "",
            'SET SQL_MODE = "NO_AUTO_VALUE_ON_ZERO";',
            "SET AUTOCOMMIT = 0;",
            "START TRANSACTION;",
            "",
        ]

    def _footer(self) -> List[str]:
        return [
            f"{COMPLETION_MARKER} on {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')} GMT",
            "",
            "/*!40111 SET SQL_NOTES=@OLD_SQL_NOTES */;",
            "/*!40103 SET TIME_ZONE=@OLD_TIME_ZONE */;",
            "/*!40101 SET SQL_MODE=@OLD_SQL_MODE */;",
            "/*!40014 SET FOREIGN_KEY_CHECKS=@OLD_FOREIGN_KEY_CHECKS */;",
            "/*!40014 SET UNIQUE_CHECKS=@OLD_UNIQUE_CHECKS */;",
            "/*!40101 SET CHARACTER_SET_CLIENT=@OLD_CHARACTER_SET_CLIENT */;",
            "/*!40101 SET CHARACTER_SET_RESULTS=@OLD_CHARACTER_SET_RESULTS */;",
            "/*!40101 SET COLLATION_CONNECTION=@OLD_COLLATION_CONNECTION */;",
        ]

    @staticmethod
    def _write_lines(out: BinaryIO, lines: List[str]) -> None:
        out.write("".join(line + "\n" for line in lines).encode("utf-8", "surrogateescape"))

    def _finalize(self, checkpoint: SessionCheckpoint, output_path: str) -> str:
        """Compress or move the finished temp dump into its artifact path."""
        temp_path = checkpoint.db_temp_path
        try:
            if self.config.compress_dump:
                final_path = output_path + ".gz"
                # The artifact name only ever holds a whole stream
                part_path = final_path + ".part"
                with open(temp_path, "rb") as src, gzip.open(part_path, "wb", compresslevel=GZIP_LEVEL) as dst:
                    shutil.copyfileobj(src, dst, 1024 * 1024)
                os.replace(part_path, final_path)
                remove_file(temp_path)
            else:
                final_path = output_path
                os.replace(temp_path, final_path)
        except OSError as e:
            raise OutputUnavailableError(f"Cannot write database artifact {output_path}", technical=str(e))

        checkpoint.database_artifact = os.path.basename(final_path)
        self.logger.info(f"Database dump written to {final_path} ({format_bytes(os.path.getsize(final_path))})")
        return final_path

    def dispose(self) -> None:
        self.engine.dispose()


def _unquote_identifier(quoted: str) -> str:
    if len(quoted) >= 2 and quoted[0] == quoted[-1] and quoted[0] in "`\"":
        mark = quoted[0]
        return quoted[1:-1].replace(mark * 2, mark)
    return quoted


def _format_interval(value: timedelta) -> str:
    total = int(value.total_seconds())
    sign = "-" if total < 0 else ""
    total = abs(total)
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{sign}{hours:02d}:{minutes:02d}:{seconds:02d}"
