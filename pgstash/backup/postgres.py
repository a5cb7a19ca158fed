"""
PostgreSQL source handling for backup operations.

Covers:
- Preflight: reset the backup location and check the client tools
- Enumeration: list the databases to back up with psql
- Export: dump each database with pg_dump, skipping the ones that fail
"""

import logging
import os
import shutil
import sys
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from pgstash.config import PostgresConfig
from pgstash.utils.process import (
    CommandError,
    CommandRunner,
    CommandTimeout,
    ExecutableNotFoundError
)
from .errors import EnumerationError, ExportError, PreflightError


logger = logging.getLogger(__name__)

REQUIRED_BINARIES = ('psql', 'pg_dump')

# Maintenance databases that never hold user data
SYSTEM_DATABASES = ('postgres', 'defaultdb')

BACKUP_LOCATION_MODE = 0o750


@dataclass(frozen=True)
class ExportResult:
    """Outcome of exporting every enumerated database."""
    total_databases: int
    exported_databases: int
    location: str
    failed_databases: Tuple[str, ...] = ()

    def __post_init__(self):
        if not 0 <= self.exported_databases <= self.total_databases:
            raise ValueError(
                f"exported_databases ({self.exported_databases}) must be between 0 "
                f"and total_databases ({self.total_databases})"
            )


def run_preflight(backup_location: str, binaries: Iterable[str], runner: CommandRunner):
    """
    Prepare the backup location and verify required executables.

    Any existing content at backup_location is removed, then the directory is
    recreated empty.

    Args:
        backup_location: Working directory owned by this run
        binaries: Executable names that must be in PATH
        runner: CommandRunner used to resolve executables

    Raises:
        PreflightError: If the directory cannot be reset or a binary is missing
    """
    try:
        if os.path.lexists(backup_location):
            if os.path.isdir(backup_location) and not os.path.islink(backup_location):
                shutil.rmtree(backup_location)
            else:
                os.remove(backup_location)
    except OSError as e:
        raise PreflightError(f"Failed to remove backup location {backup_location}: {e}") from e

    try:
        os.makedirs(backup_location, mode=BACKUP_LOCATION_MODE)
    except OSError as e:
        raise PreflightError(f"Failed to create backup location {backup_location}: {e}") from e

    for binary in binaries:
        try:
            path = runner.look_path(binary)
        except ExecutableNotFoundError as e:
            raise PreflightError(str(e)) from e
        logger.debug(f"Found {binary} at {path}")


def parse_database_list(output: str) -> List[str]:
    """
    Parse line-delimited psql output into database names.

    Surrounding whitespace is stripped, blank lines dropped and duplicates
    removed, keeping the server's order.
    """
    databases = []
    seen = set()

    for line in output.splitlines():
        name = line.strip()
        if not name or name in seen:
            continue
        seen.add(name)
        databases.append(name)

    return databases


def dump_filename(database: str) -> str:
    """
    Build the dump file name for a database.

    Format: {database}.sql with characters outside [A-Za-z0-9._-] replaced by _
    """
    safe_name = "".join(
        c if c.isascii() and (c.isalnum() or c in ('-', '_', '.')) else '_'
        for c in database
    )
    # Never produce a hidden file or a path component like '..'
    if safe_name.startswith('.'):
        safe_name = '_' + safe_name[1:]
    return f"{safe_name}.sql"


def unique_dump_filename(database: str, used: Set[str]) -> str:
    """
    Dump file name for a database, distinct from every name in used.

    Names that sanitize to one already taken in this run get a -1, -2, ...
    suffix. The chosen name is added to used.
    """
    name = dump_filename(database)
    if name in used:
        stem = name[:-len(".sql")]
        counter = 1
        while f"{stem}-{counter}.sql" in used:
            counter += 1
        name = f"{stem}-{counter}.sql"
    used.add(name)
    return name


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class PostgresExporter:
    """
    Dumps every non-template, non-system database of one server.

    Each database is dumped to its own plain SQL file inside the backup
    location. A database whose dump fails is logged and skipped.
    """

    def __init__(
        self,
        config: PostgresConfig,
        runner: CommandRunner,
        backup_location: str,
        excluded_databases: Iterable[str] = SYSTEM_DATABASES
    ):
        """
        Initialize the exporter.

        Args:
            config: PostgreSQL connection settings
            runner: CommandRunner used for psql and pg_dump
            backup_location: Directory dump files are written to
            excluded_databases: Database names never dumped
        """
        self.config = config
        self.runner = runner
        self.backup_location = backup_location

        excluded = list(excluded_databases)
        for name in config.exclude_databases:
            if name not in excluded:
                excluded.append(name)
        self.excluded_databases = tuple(excluded)

    def env_vars(self) -> Dict[str, str]:
        """Connection settings for libpq-based tools."""
        env = {
            'PGUSER': self.config.user,
            'PGPASSWORD': self.config.password,
            'PGHOST': self.config.host,
            'PGPORT': str(self.config.port),
        }
        if self.config.sslmode:
            env['PGSSLMODE'] = self.config.sslmode
        return env

    def database_query(self) -> str:
        query = "SELECT datname FROM pg_database WHERE datistemplate = false"
        if self.excluded_databases:
            names = ",".join(_quote_literal(name) for name in self.excluded_databases)
            query += f" AND datname NOT IN ({names})"
        return query + ";"

    def list_databases(self) -> List[str]:
        """
        Query the server for the databases to back up.

        Returns:
            Database names in server order (may be empty)

        Raises:
            EnumerationError: If psql fails
        """
        args = ['psql', '-At', '-c', self.database_query()]

        try:
            output = self.runner.output(
                args,
                env=self.env_vars(),
                cwd=self.backup_location,
                stderr=sys.stderr
            )
        except CommandError as e:
            raise EnumerationError(f"Error getting list of databases: {e}") from e

        databases = parse_database_list(output)
        logger.debug(f"Databases to be dumped: {databases} (location: {self.backup_location})")
        return databases

    def export(self, cancellation_check: Optional[Callable[[], None]] = None) -> ExportResult:
        """
        Dump every database to the backup location.

        Args:
            cancellation_check: Optional function called before each dump;
                it raises to abort the remaining dumps

        Returns:
            ExportResult with total, exported and failed databases

        Raises:
            EnumerationError: If the database list cannot be read
            ExportError: If pg_dump cannot be started at all
        """
        databases = self.list_databases()

        exported = 0
        failed = []
        used_filenames = set()

        for database in databases:
            if cancellation_check:
                cancellation_check()

            filename = unique_dump_filename(database, used_filenames)
            if self.dump_database(database, filename):
                exported += 1
            else:
                failed.append(database)

        if failed:
            logger.warning(f"Failed to dump {len(failed)} of {len(databases)} databases: {failed}")

        return ExportResult(
            total_databases=len(databases),
            exported_databases=exported,
            location=self.backup_location,
            failed_databases=tuple(failed)
        )

    def dump_database(self, database: str, filename: Optional[str] = None) -> bool:
        """
        Dump a single database to filename (default: dump_filename(database)).

        Returns:
            True if the dump succeeded, False if pg_dump failed or timed out

        Raises:
            ExportError: If pg_dump cannot be started
        """
        logger.info(f"Processing database: {database}")

        out_file = os.path.join(self.backup_location, filename or dump_filename(database))
        args = [
            'pg_dump',
            '--no-owner',
            '--no-acl',
            f'--dbname={database}',
            f'--file={out_file}',
        ]

        try:
            result = self.runner.combined_output(
                args,
                env=self.env_vars(),
                cwd=self.backup_location,
                timeout=self.config.dump_timeout
            )
        except CommandTimeout as e:
            logger.warning(f"Error dumping database {database}: {e}")
            return False
        except CommandError as e:
            raise ExportError(f"Cannot run pg_dump for {database}: {e}") from e

        if not result.ok:
            logger.warning(
                f"Error dumping database {database}: exit status {result.returncode}, "
                f"output: {result.output.strip()}"
            )
            return False

        logger.info(f"Successfully dumped database: {database}")
        return True
