"""
Unit tests for backup executor (pgstash/backup/executor.py).

Tests BackupExecutor stages, failure mapping and run_backup notifications.
"""

import os
import tarfile
from unittest.mock import MagicMock, patch

import pytest
import requests

from pgstash.backup.compression import CompressionError
from pgstash.backup.errors import (
    ArchiveError,
    DeleteError,
    DumpCancelledError,
    DumpError,
    EncryptionError,
    EnumerationError,
    ListError,
    PreflightError,
    UploadError,
    ZeroExportError
)
from pgstash.backup.executor import BackupExecutor, DumpResult, deadline_check, run_backup
from pgstash.backup.storage import StorageError
from pgstash.notifiers import NotifiersDisabledError
from pgstash.utils.crypto import MAGIC, CryptoError, PublicKeyEncryptor
from pgstash.utils.process import CommandError, ExecutableNotFoundError


OLD_BACKUPS = ('20240101T000000Z', '20240102T000000Z', '20240103T000000Z')


def _seed_backups(mock_s3, timestamps):
    bucket = mock_s3.Bucket('test-bucket')
    for stamp in timestamps:
        bucket.put_object(Key=f'backups/test-instance/{stamp}/old.tar.gz', Body=b'old')


@pytest.fixture
def mock_storage():
    storage = MagicMock()
    storage.name.return_value = 'mock'
    storage.upload.return_value = 'backups/test-instance/20240101T000000Z/backup.tar.gz'
    storage.list.return_value = []
    return storage


class TestCreateDump:
    """Test BackupExecutor.create_dump."""

    def test_successful_dump(self, config, s3_storage, mock_runner):
        """Test one reachable database produces one uploaded backup."""
        executor = BackupExecutor(config, s3_storage, runner=mock_runner)

        result = executor.create_dump()

        assert isinstance(result, DumpResult)
        assert result.total_databases == 1
        assert result.exported_databases == 1
        assert result.dump_location == config.app.backup_location
        assert result.storage_key.startswith('backups/test-instance/')
        assert result.storage_key.endswith('.tar.gz')
        assert s3_storage.list() == [result.storage_key]

    def test_archive_contains_dumps(self, config, s3_storage, mock_runner):
        mock_runner.output.return_value = 'app\nanalytics\n'
        executor = BackupExecutor(config, s3_storage, runner=mock_runner)

        result = executor.create_dump()

        assert os.path.dirname(result.archive_location) == result.dump_location
        with tarfile.open(result.archive_location, 'r:gz') as tar:
            assert sorted(tar.getnames()) == ['analytics.sql', 'app.sql']

    def test_partial_export_still_uploads(self, config, mock_storage, mock_runner, fake_pg_dump):
        mock_runner.output.return_value = 'app\nbroken\n'
        mock_runner.combined_output.side_effect = fake_pg_dump(failing={'broken'})
        executor = BackupExecutor(config, mock_storage, runner=mock_runner)

        result = executor.create_dump()

        assert result.total_databases == 2
        assert result.exported_databases == 1
        mock_storage.upload.assert_called_once()

    def test_zero_exports(self, config, mock_storage, mock_runner, fake_pg_dump):
        """Test that a run exporting nothing uploads nothing."""
        mock_runner.combined_output.side_effect = fake_pg_dump(failing={'db1'})
        executor = BackupExecutor(config, mock_storage, runner=mock_runner)

        with pytest.raises(ZeroExportError) as exc_info:
            executor.create_dump()

        assert exc_info.value.total_databases == 1
        mock_storage.upload.assert_not_called()

    def test_no_databases(self, config, mock_storage, mock_runner):
        mock_runner.output.return_value = ''
        executor = BackupExecutor(config, mock_storage, runner=mock_runner)

        with pytest.raises(ZeroExportError):
            executor.create_dump()

        mock_storage.upload.assert_not_called()

    def test_preflight_failure(self, config, mock_storage, mock_runner):
        mock_runner.look_path.side_effect = ExecutableNotFoundError('pg_dump')
        executor = BackupExecutor(config, mock_storage, runner=mock_runner)

        with pytest.raises(PreflightError, match='pg_dump not found'):
            executor.create_dump()

        mock_runner.output.assert_not_called()

    def test_enumeration_failure(self, config, mock_storage, mock_runner):
        mock_runner.output.side_effect = CommandError(['psql'], 2)
        executor = BackupExecutor(config, mock_storage, runner=mock_runner)

        with pytest.raises(EnumerationError):
            executor.create_dump()

        mock_runner.combined_output.assert_not_called()

    def test_archive_failure(self, config, mock_storage, mock_runner):
        executor = BackupExecutor(config, mock_storage, runner=mock_runner)

        with patch('pgstash.backup.executor.archive_directory', side_effect=CompressionError("disk full")):
            with pytest.raises(ArchiveError, match="disk full"):
                executor.create_dump()

        mock_storage.upload.assert_not_called()

    def test_upload_failure(self, config, mock_storage, mock_runner):
        mock_storage.upload.side_effect = StorageError("AccessDenied")
        executor = BackupExecutor(config, mock_storage, runner=mock_runner)

        with pytest.raises(UploadError, match="AccessDenied"):
            executor.create_dump()

    def test_every_failure_is_a_dump_error(self, config, mock_storage, mock_runner):
        mock_storage.upload.side_effect = StorageError("boom")
        executor = BackupExecutor(config, mock_storage, runner=mock_runner)

        with pytest.raises(DumpError):
            executor.create_dump()

    def test_cancelled_before_start(self, config, mock_storage, mock_runner):
        executor = BackupExecutor(config, mock_storage, runner=mock_runner)

        def cancelled():
            raise DumpCancelledError("cancelled")

        with pytest.raises(DumpCancelledError):
            executor.create_dump(cancelled)

        mock_runner.look_path.assert_not_called()
        mock_storage.upload.assert_not_called()

    def test_cancelled_before_upload(self, config, mock_storage, mock_runner):
        """Test that a deadline passing during export stops the run."""
        executor = BackupExecutor(config, mock_storage, runner=mock_runner)
        calls = []

        def check():
            calls.append(1)
            if len(calls) > 3:
                raise DumpCancelledError("deadline exceeded")

        with pytest.raises(DumpCancelledError):
            executor.create_dump(check)

        mock_storage.upload.assert_not_called()


class TestEncryption:
    """Test the encryption stage."""

    def test_encrypted_upload(self, config, s3_storage, mock_s3, mock_runner, key_server_session):
        config.backup.encrypt = True
        encryptor = PublicKeyEncryptor('backup-key', 'https://keys.example.com', session=key_server_session)
        executor = BackupExecutor(config, s3_storage, runner=mock_runner, encryptor=encryptor)

        result = executor.create_dump()

        assert result.upload_location == result.archive_location + '.enc'
        assert result.storage_key.endswith('.tar.gz.enc')
        body = mock_s3.Object('test-bucket', result.storage_key).get()['Body'].read()
        assert body.startswith(MAGIC)

    def test_key_fetch_failure(self, config, mock_storage, mock_runner, key_server_session):
        """Test that an unreachable key server aborts before upload."""
        config.backup.encrypt = True
        key_server_session.get.side_effect = requests.ConnectionError("refused")
        encryptor = PublicKeyEncryptor('backup-key', 'https://keys.example.com', session=key_server_session)
        executor = BackupExecutor(config, mock_storage, runner=mock_runner, encryptor=encryptor)

        with pytest.raises(EncryptionError, match="refused"):
            executor.create_dump()

        mock_storage.upload.assert_not_called()

    def test_encrypt_failure_never_uploads_plaintext(self, config, mock_storage, mock_runner, key_server_session):
        """Test that a failed encryption aborts without uploading the plain archive."""
        config.backup.encrypt = True
        encryptor = PublicKeyEncryptor('backup-key', 'https://keys.example.com', session=key_server_session)
        executor = BackupExecutor(config, mock_storage, runner=mock_runner, encryptor=encryptor)

        with patch.object(encryptor, 'encrypt_file', side_effect=CryptoError("disk full")):
            with pytest.raises(EncryptionError, match="disk full") as exc_info:
                executor.create_dump()

        assert isinstance(exc_info.value.__cause__, CryptoError)
        mock_storage.upload.assert_not_called()

    def test_missing_encryptor(self, config, mock_storage, mock_runner):
        executor = BackupExecutor(config, mock_storage, runner=mock_runner)
        config.backup.encrypt = True

        with pytest.raises(EncryptionError, match="no encryptor"):
            executor.create_dump()

    def test_encryptor_built_from_config(self, config, mock_storage, mock_runner):
        config.backup.encrypt = True
        config.encryption.key_id = 'backup-key'
        config.encryption.key_server = 'https://keys.example.com'

        executor = BackupExecutor(config, mock_storage, runner=mock_runner)

        assert executor.encryptor.key_url == 'https://keys.example.com/backup-key'


class TestDump:
    """Test BackupExecutor.dump and retention."""

    def test_dump_enforces_retention(self, config, s3_storage, mock_s3, mock_runner):
        """Test three old backups plus a new one leave the two newest."""
        _seed_backups(mock_s3, OLD_BACKUPS)
        executor = BackupExecutor(config, s3_storage, runner=mock_runner)

        result = executor.dump()

        remaining = executor.list_dumps()
        assert len(remaining) == 2
        assert result.storage_key.split('/')[2] == remaining[0]
        assert remaining[1] == '20240103T000000Z'

    def test_dump_purge_failure_keeps_backup(self, config, s3_storage, mock_s3, mock_runner):
        """Test a failed purge is raised while the new backup stays stored."""
        _seed_backups(mock_s3, OLD_BACKUPS[:2])
        executor = BackupExecutor(config, s3_storage, runner=mock_runner)

        with patch.object(s3_storage, 'delete', side_effect=StorageError("denied")):
            with pytest.raises(DeleteError) as exc_info:
                executor.dump()

        assert exc_info.value.key == '20240101T000000Z'
        assert len(executor.list_dumps()) == 3

    def test_purge_retention_override(self, config, s3_storage, mock_s3, mock_runner):
        _seed_backups(mock_s3, OLD_BACKUPS)
        executor = BackupExecutor(config, s3_storage, runner=mock_runner)

        result = executor.purge_dumps(retention_count=1)

        assert result.kept == ('20240103T000000Z',)
        assert result.deleted == ('20240102T000000Z', '20240101T000000Z')


class TestDeadlineCheck:
    """Test deadline_check."""

    def test_raises_after_deadline(self):
        ticks = iter([100.0, 105.0, 110.0])
        check = deadline_check(10, clock=lambda: next(ticks))

        check()
        with pytest.raises(DumpCancelledError, match="deadline"):
            check()


class TestRunBackup:
    """Test run_backup notifications."""

    def test_success_notifies(self, config, s3_storage, mock_runner):
        notifier = MagicMock()

        result = run_backup(config, storage=s3_storage, notifier=notifier, runner=mock_runner)

        notifier.notify_backup_success.assert_called_once_with(1, result.storage_key)
        notifier.notify_backup_failure.assert_not_called()

    def test_failure_notifies_and_raises(self, config, s3_storage, mock_runner):
        mock_runner.output.side_effect = CommandError(['psql'], 2)
        notifier = MagicMock()

        with pytest.raises(EnumerationError) as exc_info:
            run_backup(config, storage=s3_storage, notifier=notifier, runner=mock_runner)

        notifier.notify_backup_failure.assert_called_once_with(exc_info.value)
        notifier.notify_backup_success.assert_not_called()

    def test_purge_failure_notifies(self, config, mock_storage, mock_runner):
        mock_storage.list.side_effect = StorageError("timeout")
        notifier = MagicMock()

        with pytest.raises(ListError) as exc_info:
            run_backup(config, storage=mock_storage, notifier=notifier, runner=mock_runner)

        notifier.notify_backup_success.assert_called_once()
        notifier.notify_backup_delete_failure.assert_called_once_with(exc_info.value)

    def test_disabled_notifiers_do_not_fail_backup(self, config, s3_storage, mock_runner):
        notifier = MagicMock()
        notifier.notify_backup_success.side_effect = NotifiersDisabledError()

        result = run_backup(config, storage=s3_storage, notifier=notifier, runner=mock_runner)

        assert result.exported_databases == 1

    def test_notifier_error_does_not_mask_result(self, config, s3_storage, mock_runner):
        notifier = MagicMock()
        notifier.notify_backup_success.side_effect = RuntimeError("webhook down")

        result = run_backup(config, storage=s3_storage, notifier=notifier, runner=mock_runner)

        assert result.exported_databases == 1

    def test_storage_initialized(self, config, mock_storage, mock_runner):
        run_backup(config, storage=mock_storage, notifier=MagicMock(), runner=mock_runner)

        mock_storage.init.assert_called_once()

    def test_timeout_builds_deadline(self, config, mock_storage, mock_runner):
        with patch('pgstash.backup.executor.deadline_check', return_value=lambda: None) as mock_deadline:
            run_backup(config, storage=mock_storage, notifier=MagicMock(), runner=mock_runner, timeout=30)

        mock_deadline.assert_called_once_with(30)
