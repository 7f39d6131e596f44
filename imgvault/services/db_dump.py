"""
Database export/import strategies for backups.

Two dialects share one capability surface:

- MySQL: shells out to mysqldump / mysql through a CommandRunner, so tests
  can substitute a fake that records arguments.
- SQLite: exports schema and rows of an explicit table allow-list itself, and
  replays the export inside a single transaction with foreign keys off.
"""

import logging
import os
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator, List, Optional, Sequence

from sqlalchemy.engine import Engine

from imgvault.config import Settings
from imgvault.services.errors import (
    DatabaseExportError,
    DatabaseImportError,
    DatabaseToolError,
    UnsupportedDatabaseError,
)

logger = logging.getLogger(__name__)

# Application tables captured by a SQLite backup
BACKUP_TABLES = (
    "users",
    "roles",
    "albums",
    "images",
    "system_settings",
    "refresh_token_blacklist",
    "image_albums",
    "storages",
    "password_reset_codes",
)

# Bookkeeping tables a backup must never carry
TASK_TABLES = ("backup_tasks", "restore_tasks")


# ============ Command execution ============


@dataclass
class CommandResult:
    returncode: int
    stdout: bytes
    stderr: bytes


class CommandRunner:
    """Runs external database tools. Replaced by a fake in tests."""

    def run(
        self,
        args: Sequence[str],
        input: Optional[bytes] = None,
        env: Optional[dict] = None,
    ) -> CommandResult:
        merged_env = {**os.environ, **(env or {})}
        proc = subprocess.run(
            list(args),
            input=input,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=merged_env,
        )
        return CommandResult(proc.returncode, proc.stdout, proc.stderr)


# ============ Strategies ============


class DatabaseDumper(ABC):
    """Export the live database to SQL text and replace it from SQL text."""

    dialect: str

    @abstractmethod
    def export_to(self, fp: IO[bytes]) -> None:
        """Write a full SQL export to a binary file object."""

    @abstractmethod
    def import_from(self, sql_path: Path) -> None:
        """Replace the live database state with the export at sql_path."""


class MySQLDumper(DatabaseDumper):
    dialect = "mysql"

    def __init__(self, settings: Settings, runner: Optional[CommandRunner] = None):
        self.settings = settings
        self.runner = runner or CommandRunner()

    def _connection_args(self) -> List[str]:
        s = self.settings
        return [
            f"--user={s.mysql_user}",
            f"--host={s.mysql_host}",
            f"--port={s.mysql_port}",
        ]

    def _env(self) -> dict:
        # Keeps the password off the command line (and out of ps output)
        return {"MYSQL_PWD": self.settings.mysql_password}

    def dump_args(self) -> List[str]:
        s = self.settings
        return [
            s.mysqldump_path,
            *self._connection_args(),
            "--databases",
            "--single-transaction",
            "--routines",
            "--triggers",
            "--events",
            *[f"--ignore-table={s.mysql_database}.{t}" for t in TASK_TABLES],
            *s.mysqldump_extra_args,
            s.mysql_database,
        ]

    def restore_args(self) -> List[str]:
        return [self.settings.mysql_client_path, *self._connection_args()]

    def _run(self, tool: str, args: List[str], input: Optional[bytes] = None) -> CommandResult:
        try:
            result = self.runner.run(args, input=input, env=self._env())
        except FileNotFoundError:
            raise DatabaseToolError(tool, f"'{args[0]}' not found on PATH")
        except OSError as e:
            raise DatabaseToolError(tool, str(e))

        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        if result.returncode != 0:
            logger.error(f"{tool} exited with {result.returncode}: {stderr}")
            raise DatabaseToolError(tool, stderr or f"exit status {result.returncode}")
        if stderr:
            logger.warning(f"{tool} reported: {stderr}")
        return result

    def export_to(self, fp: IO[bytes]) -> None:
        result = self._run("mysqldump", self.dump_args())
        fp.write(result.stdout)
        logger.info(f"mysqldump exported {len(result.stdout)} bytes")

    def import_from(self, sql_path: Path) -> None:
        sql_path = Path(sql_path)
        if not sql_path.is_file():
            raise DatabaseImportError(f"SQL file does not exist: {sql_path}")
        self._run("mysql", self.restore_args(), input=sql_path.read_bytes())
        logger.info(f"mysql restored {sql_path.name}")


def sql_literal(value) -> str:
    """Render a SQLite value as a SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value != value:
            return "NULL"
        if value in (float("inf"), float("-inf")):
            return "9e999" if value > 0 else "-9e999"
        return repr(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"X'{bytes(value).hex()}'"
    text = str(value)
    if "\x00" in text:
        # sqlite3 refuses statements with an embedded NUL
        return f"CAST(X'{text.encode('utf-8').hex()}' AS TEXT)"
    escaped = text.replace("'", "''")
    return f"'{escaped}'"


def split_sql_statements(sql: str) -> Iterator[str]:
    """Split SQL text on ';' outside quoted strings, identifiers and comments."""
    buf: List[str] = []
    quote: Optional[str] = None
    i = 0
    n = len(sql)
    while i < n:
        ch = sql[i]
        if quote:
            buf.append(ch)
            if ch == quote:
                # A doubled quote is an escaped quote and keeps us inside
                if i + 1 < n and sql[i + 1] == quote:
                    buf.append(sql[i + 1])
                    i += 1
                else:
                    quote = None
        elif ch in ("'", '"', "`"):
            quote = ch
            buf.append(ch)
        elif ch == "-" and sql.startswith("--", i):
            newline = sql.find("\n", i)
            i = n if newline == -1 else newline
            continue
        elif ch == ";":
            statement = "".join(buf).strip()
            if statement:
                yield statement
            buf = []
        else:
            buf.append(ch)
        i += 1

    statement = "".join(buf).strip()
    if statement:
        yield statement


_LEADING_COMMENT = re.compile(r"^(?:\s+|/\*.*?\*/)+", re.DOTALL)

# Statements that would end the restore transaction or reach outside the
# database being restored
FORBIDDEN_RESTORE_KEYWORDS = frozenset({
    "BEGIN", "COMMIT", "END", "ROLLBACK", "SAVEPOINT", "RELEASE",
    "PRAGMA", "ATTACH", "DETACH", "VACUUM",
})


def statement_keyword(statement: str) -> str:
    """First keyword of a statement, upper-cased, ignoring leading comments."""
    match = re.match(r"[A-Za-z_]+", _LEADING_COMMENT.sub("", statement))
    return match.group(0).upper() if match else ""


class SQLiteDumper(DatabaseDumper):
    dialect = "sqlite"

    def __init__(self, engine: Engine, tables: Sequence[str] = BACKUP_TABLES):
        self.engine = engine
        self.tables = tuple(tables)

    def export_to(self, fp: IO[bytes]) -> None:
        def write(text: str) -> None:
            fp.write(text.encode("utf-8"))

        exported = 0
        with self.engine.connect() as conn:
            for table in self.tables:
                row = conn.exec_driver_sql(
                    "SELECT sql FROM sqlite_master WHERE type='table' AND name=?",
                    (table,),
                ).first()
                if row is None or not row[0]:
                    logger.warning(f"Table {table} not found, skipped in export")
                    continue

                write(f"-- Table: {table}\n")
                write(row[0] + ";\n\n")

                indexes = conn.exec_driver_sql(
                    "SELECT sql FROM sqlite_master "
                    "WHERE type='index' AND tbl_name=? AND sql IS NOT NULL",
                    (table,),
                ).all()
                for (index_sql,) in indexes:
                    write(index_sql + ";\n")

                count = 0
                for values in conn.exec_driver_sql(f'SELECT * FROM "{table}"'):
                    rendered = ", ".join(sql_literal(v) for v in values)
                    write(f'INSERT INTO "{table}" VALUES ({rendered});\n')
                    count += 1
                write("\n")
                exported += 1
                logger.debug(f"Exported {count} rows from {table}")

        logger.info(f"SQLite export finished: {exported}/{len(self.tables)} tables")

    def import_from(self, sql_path: Path) -> None:
        sql_path = Path(sql_path)
        if not sql_path.is_file():
            raise DatabaseImportError(f"SQL file does not exist: {sql_path}")
        statements = list(split_sql_statements(sql_path.read_text(encoding="utf-8")))
        for statement in statements:
            keyword = statement_keyword(statement)
            if keyword in FORBIDDEN_RESTORE_KEYWORDS:
                raise DatabaseImportError(
                    f"Statement not allowed in a restore: {keyword}"
                )

        raw = self.engine.raw_connection()
        dbapi_conn = raw.driver_connection
        previous_isolation = dbapi_conn.isolation_level
        # Autocommit at the driver level: transaction boundaries are explicit
        # below so that DROP/CREATE take part in the rollback.
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys = OFF")
            try:
                cursor.execute("BEGIN IMMEDIATE")
            except Exception as e:
                raise DatabaseImportError(f"Cannot start restore transaction: {e}")
            try:
                for table in self.tables:
                    cursor.execute(f'DROP TABLE IF EXISTS "{table}"')
                replayed = 0
                for statement in statements:
                    cursor.execute(statement)
                    if not dbapi_conn.in_transaction:
                        raise DatabaseImportError(
                            "Restore transaction ended early, changes may be partially applied"
                        )
                    replayed += 1
                cursor.execute("COMMIT")
            except Exception as e:
                # Some errors end the transaction on their own
                if dbapi_conn.in_transaction:
                    cursor.execute("ROLLBACK")
                logger.error(f"SQLite restore rolled back: {e}")
                raise DatabaseImportError(f"Execute SQL failed, restore rolled back: {e}")
            logger.info(f"SQLite restore committed {replayed} statements")
        finally:
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.close()
            dbapi_conn.isolation_level = previous_isolation
            raw.close()


def get_dumper(
    settings: Settings,
    engine: Engine,
    runner: Optional[CommandRunner] = None,
) -> DatabaseDumper:
    """Pick the strategy for the configured database type."""
    if settings.database_type == "mysql":
        return MySQLDumper(settings, runner)
    if settings.database_type == "sqlite":
        return SQLiteDumper(engine)
    raise UnsupportedDatabaseError(settings.database_type)


def export_database(dumper: DatabaseDumper, fp: IO[bytes]) -> None:
    """Run an export, normalising unexpected failures."""
    try:
        dumper.export_to(fp)
    except (DatabaseToolError, DatabaseExportError):
        raise
    except Exception as e:
        raise DatabaseExportError(f"Backup database failed: {e}")
