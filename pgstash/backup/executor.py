"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Preflight: reset the backup location, check psql/pg_dump
2. Enumerate and export databases (failed dumps are skipped)
3. Create compressed archive
4. Encrypt archive (if configured)
5. Upload to storage
6. Enforce retention (dump() only)

A failed stage aborts the rest; completed stages are not rolled back.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from pgstash.config import Config
from pgstash.notifiers import NotifiersDisabledError, create_notifier
from pgstash.utils.crypto import CryptoError, PublicKeyEncryptor
from pgstash.utils.process import CommandRunner
from .compression import CompressionError, archive_directory, generate_archive_filename, get_archive_size
from .errors import (
    ArchiveError,
    DumpCancelledError,
    EncryptionError,
    UploadError,
    ZeroExportError
)
from .postgres import REQUIRED_BINARIES, ExportResult, PostgresExporter, run_preflight
from .retention import PurgeResult, RetentionManager
from .storage import BaseStorage, StorageError, create_storage


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DumpResult:
    """Outcome of a successful backup."""
    total_databases: int
    exported_databases: int
    dump_location: str
    archive_location: str
    storage_key: str
    upload_location: str = ''


def deadline_check(timeout_seconds: float, clock: Callable[[], float] = time.monotonic) -> Callable[[], None]:
    """
    Build a cancellation check that fails once timeout_seconds have passed.

    Returns:
        Function raising DumpCancelledError after the deadline
    """
    deadline = clock() + timeout_seconds

    def check():
        if clock() >= deadline:
            raise DumpCancelledError(f"Backup cancelled: deadline of {timeout_seconds}s exceeded")

    return check


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one database server.
    """

    def __init__(
        self,
        config: Config,
        storage: BaseStorage,
        runner: Optional[CommandRunner] = None,
        encryptor: Optional[PublicKeyEncryptor] = None,
        backup_location: Optional[str] = None
    ):
        """
        Initialize backup executor.

        Args:
            config: pgstash configuration
            storage: Initialized storage backend
            runner: CommandRunner for psql/pg_dump (default: new CommandRunner)
            encryptor: Encryptor used when encryption is enabled
                (default: built from the encryption settings)
            backup_location: Working directory (default: from config)
        """
        self.config = config
        self.storage = storage
        self.runner = runner or CommandRunner()
        self.backup_location = backup_location or config.app.backup_location

        if encryptor is None and config.backup.encrypt:
            encryptor = PublicKeyEncryptor(
                key_id=config.encryption.key_id,
                key_server=config.encryption.key_server
            )
        self.encryptor = encryptor

        self.exporter = PostgresExporter(config.postgres, self.runner, self.backup_location)
        self.retention = RetentionManager(storage)

    def _check(self, cancellation_check: Optional[Callable[[], None]]):
        if cancellation_check:
            cancellation_check()

    def export(self, cancellation_check: Optional[Callable[[], None]] = None) -> ExportResult:
        """Run preflight checks, then dump every database."""
        run_preflight(self.backup_location, REQUIRED_BINARIES, self.runner)
        self._check(cancellation_check)
        return self.exporter.export(cancellation_check)

    def create_dump(self, cancellation_check: Optional[Callable[[], None]] = None) -> DumpResult:
        """
        Create a backup and upload it to storage.

        Args:
            cancellation_check: Optional function called between stages and
                between database dumps; it raises to abort the run

        Returns:
            DumpResult describing the uploaded backup

        Raises:
            DumpError: A subclass naming the stage that failed
        """
        self._check(cancellation_check)

        result = self.export(cancellation_check)
        logger.info(
            f"Exported {result.exported_databases} of {result.total_databases} databases "
            f"to {result.location}"
        )

        if result.exported_databases <= 0:
            raise ZeroExportError(result.total_databases)

        self._check(cancellation_check)
        archive_path = self._create_archive(result.location)

        self._check(cancellation_check)
        upload_path = archive_path
        if self.config.backup.encrypt:
            upload_path = self._encrypt(archive_path)

        self._check(cancellation_check)
        logger.info(f"Uploading backup {upload_path} to {self.storage.name()}")
        try:
            key = self.storage.upload(upload_path, cancellation_check)
        except StorageError as e:
            raise UploadError(f"Error uploading backup to {self.storage.name()}: {e}") from e

        logger.info(f"Backup uploaded: {key}")

        return DumpResult(
            total_databases=result.total_databases,
            exported_databases=result.exported_databases,
            dump_location=result.location,
            archive_location=archive_path,
            storage_key=key,
            upload_location=upload_path
        )

    def _create_archive(self, location: str) -> str:
        filename = generate_archive_filename(
            self.config.app.instance_id,
            self.config.backup.compression_format
        )

        try:
            archive_path = archive_directory(location, filename, self.config.backup.compression_format)
            size = get_archive_size(archive_path)
        except CompressionError as e:
            raise ArchiveError(f"Error archiving {location}: {e}") from e

        logger.info(f"Archive created: {os.path.basename(archive_path)} ({size / 1024 / 1024:.2f} MB)")
        return archive_path

    def _encrypt(self, archive_path: str) -> str:
        if self.encryptor is None:
            raise EncryptionError("Encryption is enabled but no encryptor is configured")

        logger.debug(
            f"Fetching public key {self.encryptor.key_id} from {self.encryptor.key_server}"
        )
        try:
            self.encryptor.fetch_public_key()
        except CryptoError as e:
            logger.warning(f"Error downloading public key: {e}")
            raise EncryptionError(str(e)) from e

        logger.debug(f"Encrypting archive file: {archive_path}")
        try:
            encrypted_path = self.encryptor.encrypt_file(archive_path)
        except CryptoError as e:
            logger.warning(f"Error encrypting archive file: {e}")
            raise EncryptionError(str(e)) from e

        logger.debug(f"Encrypted file: {encrypted_path}")
        return encrypted_path

    def list_dumps(self) -> List[str]:
        """
        List backups in storage, most recent first.

        Raises:
            ListError: If storage cannot be listed
        """
        return self.retention.list_backups()

    def purge_dumps(self, retention_count: Optional[int] = None) -> PurgeResult:
        """
        Delete backups beyond the retention count.

        Args:
            retention_count: Override for the configured retention count

        Raises:
            ListError: If storage cannot be listed
            DeleteError: If a backup cannot be deleted
        """
        if retention_count is None:
            retention_count = self.config.backup.retention_count
        return self.retention.purge(retention_count)

    def dump(self, cancellation_check: Optional[Callable[[], None]] = None) -> DumpResult:
        """
        Create a backup, then enforce retention.

        A retention failure is raised even though the new backup is already
        in storage.

        Raises:
            DumpError: If the backup could not be created
            PurgeError: If the backup was created but retention failed
        """
        result = self.create_dump(cancellation_check)
        self.purge_dumps()
        return result


def run_backup(
    config: Config,
    storage: Optional[BaseStorage] = None,
    notifier=None,
    runner: Optional[CommandRunner] = None,
    timeout: Optional[float] = None
) -> DumpResult:
    """
    Run a complete backup with notifications.

    Args:
        config: pgstash configuration
        storage: Storage backend (default: created from config)
        notifier: Notifier store (default: created from config)
        runner: CommandRunner (default: new CommandRunner)
        timeout: Optional deadline in seconds for creating the backup

    Returns:
        DumpResult of the new backup

    Raises:
        StorageError: If storage cannot be initialized
        DumpError: If the backup could not be created
        PurgeError: If the backup was created but retention failed
    """
    if storage is None:
        storage = create_storage(config)
    storage.init()

    if notifier is None:
        notifier = create_notifier(config)

    executor = BackupExecutor(config, storage, runner=runner)
    cancellation_check = deadline_check(timeout) if timeout else None

    try:
        result = executor.create_dump(cancellation_check)
    except Exception as e:
        _notify(notifier.notify_backup_failure, e)
        raise

    _notify(notifier.notify_backup_success, result.exported_databases, result.storage_key)

    try:
        executor.purge_dumps()
    except Exception as e:
        _notify(notifier.notify_backup_delete_failure, e)
        raise

    return result


def _notify(method, *args):
    name = getattr(method, '__name__', 'notification')
    try:
        method(*args)
    except NotifiersDisabledError:
        logger.debug(f"Notifiers disabled; skipping {name}")
    except Exception as e:
        logger.error(f"Failed to send {name}: {e}")
