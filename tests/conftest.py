"""
Shared pytest fixtures for pgstash tests.

This module provides fixtures for:
- Configuration pointing at temporary directories
- A mock CommandRunner standing in for psql and pg_dump
- Mock fixtures for external services (S3, key server)
- RSA key pairs for encryption tests
"""

from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from pgstash.config import (
    AppConfig,
    BackupConfig,
    Config,
    EncryptionConfig,
    NotifierConfig,
    PostgresConfig,
    StorageConfig
)
from pgstash.backup.storage import S3Storage
from pgstash.utils.process import CommandResult, CommandRunner


def _flag_value(args, flag):
    for arg in args:
        if arg.startswith(flag + '='):
            return arg.split('=', 1)[1]
    return None


def _fake_pg_dump(failing=()):
    def run(args, env=None, cwd=None, timeout=None):
        database = _flag_value(args, '--dbname')
        if database in failing:
            return CommandResult(returncode=1, output=f'pg_dump: error: connection to database "{database}" failed')
        with open(_flag_value(args, '--file'), 'w') as f:
            f.write(f'-- dump of {database}\n')
        return CommandResult(returncode=0, output='')

    return run


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never looks for real ones."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def backup_location(tmp_path):
    """Backup location path inside the test's temporary directory."""
    return str(tmp_path / 'export')


@pytest.fixture
def config(tmp_path, backup_location):
    """
    Configuration for an s3 backend with encryption and notifiers disabled.
    """
    return Config(
        app=AppConfig(instance_id='test-instance', backup_location=backup_location),
        postgres=PostgresConfig(
            host='localhost',
            port='5432',
            user='testuser',
            password='testpass'
        ),
        backup=BackupConfig(retention_count=2, encrypt=False, compression_format='tar.gz'),
        encryption=EncryptionConfig(),
        storage=StorageConfig(
            backend='s3',
            bucket='test-bucket',
            prefix='backups',
            region='us-east-1',
            local_path=str(tmp_path / 'storage')
        ),
        notifiers=NotifierConfig()
    )


@pytest.fixture
def mock_runner():
    """
    Mock CommandRunner with psql returning one database and pg_dump succeeding.
    """
    runner = MagicMock(spec=CommandRunner)
    runner.look_path.side_effect = lambda name: f'/usr/bin/{name}'
    runner.output.return_value = 'db1\n'
    runner.combined_output.side_effect = _fake_pg_dump()
    return runner


@pytest.fixture
def fake_pg_dump():
    """
    Factory for combined_output side effects imitating pg_dump.

    Databases named in failing exit with status 1; the others get a dump file.
    """
    return _fake_pg_dump


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def s3_storage(mock_s3):
    """Initialized S3Storage for the moto bucket."""
    storage = S3Storage(
        bucket_name='test-bucket',
        instance_id='test-instance',
        prefix='backups',
        access_key='testing',
        secret_key='testing'
    )
    storage.init()
    return storage


@pytest.fixture(scope='session')
def rsa_private_key():
    """RSA private key for encryption tests."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope='session')
def public_key_pem(rsa_private_key):
    """PEM encoding of the test public key."""
    return rsa_private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )


@pytest.fixture
def key_server_session(public_key_pem):
    """
    Mock requests session whose GET returns the test public key.
    """
    session = MagicMock()
    response = MagicMock()
    response.content = public_key_pem
    response.raise_for_status.return_value = None
    session.get.return_value = response
    return session


@pytest.fixture
def dump_dir(tmp_path):
    """
    Directory holding two fake dump files.
    """
    directory = tmp_path / 'dumps'
    directory.mkdir()
    (directory / 'app.sql').write_text('-- app dump\n')
    (directory / 'analytics.sql').write_text('-- analytics dump\n')
    return directory
