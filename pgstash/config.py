import os
import socket
import tempfile
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple


COMPRESSION_FORMATS = ('zip', 'tar.gz', 'tar.bz2', 'tar.xz', 'none')
STORAGE_BACKENDS = ('s3', 'local')


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""
    pass


def _get_bool(environ: Mapping[str, str], name: str, default: bool = False) -> bool:
    value = environ.get(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _get_int(environ: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    value = environ.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def _get_list(environ: Mapping[str, str], name: str) -> Tuple[str, ...]:
    value = environ.get(name) or ''
    return tuple(item.strip() for item in value.split(',') if item.strip())


@dataclass
class AppConfig:
    """General settings"""
    instance_id: str = field(default_factory=socket.gethostname)
    backup_location: str = os.path.join(tempfile.gettempdir(), 'pgstash', 'export')
    log_level: str = 'INFO'
    log_dir: Optional[str] = None


@dataclass
class PostgresConfig:
    """Connection settings passed to psql/pg_dump through the environment"""
    host: str = 'localhost'
    port: str = '5432'
    user: str = 'postgres'
    password: str = ''
    sslmode: Optional[str] = None
    exclude_databases: Tuple[str, ...] = ()
    dump_timeout: Optional[int] = None


@dataclass
class BackupConfig:
    """Backup and retention settings"""
    retention_count: int = 30
    encrypt: bool = False
    compression_format: str = 'tar.gz'


@dataclass
class EncryptionConfig:
    """Public key lookup settings"""
    key_id: Optional[str] = None
    key_server: Optional[str] = None


@dataclass
class StorageConfig:
    """Remote storage settings"""
    backend: str = 's3'
    bucket: Optional[str] = None
    prefix: str = ''
    region: str = 'us-east-1'
    endpoint_url: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    local_path: Optional[str] = None


@dataclass
class NotifierConfig:
    """Notification settings"""
    enabled: bool = False
    discord_enabled: bool = False
    discord_webhook: Optional[str] = None


@dataclass
class Config:
    """Complete pgstash configuration"""
    app: AppConfig = field(default_factory=AppConfig)
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    notifiers: NotifierConfig = field(default_factory=NotifierConfig)

    def validate(self) -> 'Config':
        """
        Check the configuration for values the backup run cannot work with.

        Returns:
            The same Config, for chaining

        Raises:
            ConfigError: If any setting is invalid
        """
        if not self.app.instance_id:
            raise ConfigError("Instance ID must not be empty")

        if self.backup.retention_count < 1:
            raise ConfigError(
                f"Retention count must be at least 1, got {self.backup.retention_count}"
            )

        if self.backup.compression_format not in COMPRESSION_FORMATS:
            raise ConfigError(
                f"Invalid compression format: {self.backup.compression_format}. "
                f"Valid options: {list(COMPRESSION_FORMATS)}"
            )

        if self.storage.backend not in STORAGE_BACKENDS:
            raise ConfigError(
                f"Invalid storage backend: {self.storage.backend}. "
                f"Valid options: {list(STORAGE_BACKENDS)}"
            )

        if self.storage.backend == 's3' and not self.storage.bucket:
            raise ConfigError("PGSTASH_S3_BUCKET is required for the s3 storage backend")

        if self.storage.backend == 'local' and not self.storage.local_path:
            raise ConfigError("PGSTASH_LOCAL_STORAGE_PATH is required for the local storage backend")

        if self.backup.encrypt and not (self.encryption.key_id and self.encryption.key_server):
            raise ConfigError(
                "PGSTASH_ENCRYPTION_KEY_ID and PGSTASH_ENCRYPTION_KEY_SERVER are required "
                "when encryption is enabled"
            )

        if self.notifiers.discord_enabled and not self.notifiers.discord_webhook:
            raise ConfigError("PGSTASH_DISCORD_WEBHOOK is required when Discord notifications are enabled")

        return self


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Build configuration from environment variables.

    Args:
        environ: Mapping to read from (default: os.environ)

    Returns:
        Validated Config instance

    Raises:
        ConfigError: If a value cannot be parsed or fails validation
    """
    if environ is None:
        environ = os.environ

    defaults = AppConfig()

    config = Config(
        app=AppConfig(
            instance_id=environ.get('PGSTASH_INSTANCE_ID') or defaults.instance_id,
            backup_location=environ.get('PGSTASH_BACKUP_LOCATION') or defaults.backup_location,
            log_level=(environ.get('PGSTASH_LOG_LEVEL') or 'INFO').upper(),
            log_dir=environ.get('PGSTASH_LOG_DIR') or None,
        ),
        postgres=PostgresConfig(
            host=environ.get('PGSTASH_POSTGRES_HOST') or 'localhost',
            port=environ.get('PGSTASH_POSTGRES_PORT') or '5432',
            user=environ.get('PGSTASH_POSTGRES_USER') or 'postgres',
            password=environ.get('PGSTASH_POSTGRES_PASSWORD') or '',
            sslmode=environ.get('PGSTASH_POSTGRES_SSLMODE') or None,
            exclude_databases=_get_list(environ, 'PGSTASH_POSTGRES_EXCLUDE_DATABASES'),
            dump_timeout=_get_int(environ, 'PGSTASH_POSTGRES_DUMP_TIMEOUT', None),
        ),
        backup=BackupConfig(
            retention_count=_get_int(environ, 'PGSTASH_BACKUP_RETENTION_COUNT', 30),
            encrypt=_get_bool(environ, 'PGSTASH_BACKUP_ENCRYPT'),
            compression_format=environ.get('PGSTASH_BACKUP_COMPRESSION') or 'tar.gz',
        ),
        encryption=EncryptionConfig(
            key_id=environ.get('PGSTASH_ENCRYPTION_KEY_ID') or None,
            key_server=environ.get('PGSTASH_ENCRYPTION_KEY_SERVER') or None,
        ),
        storage=StorageConfig(
            backend=(environ.get('PGSTASH_STORAGE_BACKEND') or 's3').lower(),
            bucket=environ.get('PGSTASH_S3_BUCKET') or None,
            prefix=(environ.get('PGSTASH_S3_PREFIX') or '').strip('/'),
            region=environ.get('PGSTASH_S3_REGION') or 'us-east-1',
            endpoint_url=environ.get('PGSTASH_S3_ENDPOINT') or None,
            access_key=environ.get('PGSTASH_S3_ACCESS_KEY') or None,
            secret_key=environ.get('PGSTASH_S3_SECRET_KEY') or None,
            local_path=environ.get('PGSTASH_LOCAL_STORAGE_PATH') or None,
        ),
        notifiers=NotifierConfig(
            enabled=_get_bool(environ, 'PGSTASH_NOTIFIERS_ENABLED'),
            discord_enabled=_get_bool(environ, 'PGSTASH_DISCORD_ENABLED'),
            discord_webhook=environ.get('PGSTASH_DISCORD_WEBHOOK') or None,
        ),
    )

    return config.validate()
