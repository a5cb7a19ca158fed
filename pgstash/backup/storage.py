"""
Storage backends for backup archives.

Supports:
- S3Storage: AWS S3 or an S3-compatible service
- LocalStorage: a local directory tree

Every backup is stored under a timestamped key:
{prefix}/{instance_id}/{timestamp}/{filename}

The timestamp segment identifies a backup and is what trim_prefix() returns.
"""

import logging
import os
import shutil
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from pgstash.config import Config


logger = logging.getLogger(__name__)

# Fixed width, UTC: lexical order matches chronological order
TIMESTAMP_FORMAT = '%Y%m%dT%H%M%SZ'

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class StorageError(Exception):
    """Raised when a storage backend operation fails."""
    pass


def format_timestamp(moment: Optional[datetime] = None) -> str:
    """Render a moment (default: now) in the storage key timestamp format."""
    if moment is None:
        moment = datetime.now(timezone.utc)
    elif moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """
    Parse a storage key timestamp segment.

    Raises:
        ValueError: If value is not in TIMESTAMP_FORMAT
    """
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def build_key(*parts: str) -> str:
    """Join key segments with '/', skipping empty ones."""
    return '/'.join(part.strip('/') for part in parts if part and part.strip('/'))


class BaseStorage(ABC):
    """
    Interface every storage backend implements.

    Keys returned by list() are full keys; trim_prefix() reduces them to the
    timestamp segment accepted by delete().
    """

    def __init__(self, prefix: str, instance_id: str):
        self.prefix = prefix or ''
        self.instance_id = instance_id

    @property
    def instance_prefix(self) -> str:
        """Key prefix shared by all backups of this instance."""
        return build_key(self.prefix, self.instance_id)

    def build_timestamped_key(self, moment: Optional[datetime] = None) -> str:
        return build_key(self.instance_prefix, format_timestamp(moment))

    @abstractmethod
    def init(self):
        """Prepare the backend (open a session, create directories)."""

    @abstractmethod
    def upload(self, local_path: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """Store a local file and return its full key."""

    @abstractmethod
    def list(self) -> List[str]:
        """Return every key under the instance prefix."""

    @abstractmethod
    def delete(self, key: str):
        """Delete one backup given its trimmed key."""

    @abstractmethod
    def name(self) -> str:
        """Human-readable backend identity."""

    def trim_prefix(self, keys: List[str]) -> List[str]:
        """
        Reduce full keys to their backup timestamp segment.

        Keys outside the instance prefix are dropped. Several objects of one
        backup collapse to a single entry.
        """
        prefix = self.instance_prefix + '/' if self.instance_prefix else ''
        trimmed = []
        seen = set()

        for key in keys:
            if prefix and not key.startswith(prefix):
                continue
            segment = key[len(prefix):].split('/', 1)[0]
            if not segment or segment in seen:
                continue
            seen.add(segment)
            trimmed.append(segment)

        return trimmed


def _s3_failure(action: str, error: Exception) -> StorageError:
    """Translate a boto error into a StorageError naming the S3 error code."""
    if isinstance(error, ClientError):
        code = error.response.get('Error', {}).get('Code', 'Unknown')
        return StorageError(f"S3 {action} failed ({code}): {error}")
    return StorageError(f"S3 {action} failed: {error}")


def _read_chunks(path: str, size: int) -> Iterator[bytes]:
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(size), b''):
            yield chunk


class S3Storage(BaseStorage):
    """
    Backups in an S3 bucket (AWS or any S3-compatible endpoint).

    Objects are written as {prefix}/{instance_id}/{timestamp}/{filename}.
    """

    def __init__(
        self,
        bucket_name: str,
        instance_id: str,
        prefix: str = '',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None
    ):
        """
        Args:
            bucket_name: Target bucket
            instance_id: Instance identifier used in keys
            prefix: Key prefix shared by all instances
            access_key: Access key ID (default: boto3 credential chain)
            secret_key: Secret access key
            region: Bucket region
            endpoint_url: Endpoint of an S3-compatible service
        """
        super().__init__(prefix, instance_id)
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url
        self._access_key = access_key
        self._secret_key = secret_key
        self.s3_client = None

    def init(self):
        """
        Create the boto3 client.

        Raises:
            StorageError: If the client cannot be created
        """
        try:
            self.s3_client = boto3.client(
                's3',
                region_name=self.region,
                endpoint_url=self.endpoint_url,
                aws_access_key_id=self._access_key,
                aws_secret_access_key=self._secret_key
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _client(self):
        if self.s3_client is None:
            raise StorageError("S3 storage not initialized. Call init() first.")
        return self.s3_client

    def name(self) -> str:
        return f"s3 ({self.bucket_name})"

    def upload(self, local_path: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Upload a file under a new timestamped key.

        Files above MULTIPART_THRESHOLD go through a multipart upload, checking
        cancellation_check before every part.

        Returns:
            Full key of the stored object

        Raises:
            StorageError: If the file is missing or the upload fails
        """
        client = self._client()

        if not os.path.isfile(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        key = build_key(self.build_timestamped_key(), os.path.basename(local_path))
        logger.debug(f"Uploading {local_path} to s3://{self.bucket_name}/{key}")

        try:
            if os.path.getsize(local_path) > MULTIPART_THRESHOLD:
                self._multipart_upload(client, local_path, key, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                with open(local_path, 'rb') as body:
                    client.put_object(Bucket=self.bucket_name, Key=key, Body=body)
        except (ClientError, BotoCoreError) as e:
            raise _s3_failure('upload', e)
        except OSError as e:
            raise StorageError(f"Failed to read {local_path}: {e}")

        return key

    def _multipart_upload(self, client, local_path: str, key: str, cancellation_check: Optional[Callable[[], None]]):
        """
        Upload in MULTIPART_CHUNK_SIZE parts. Any failure, cancellation
        included, aborts the multipart upload before propagating.
        """
        upload_id = client.create_multipart_upload(Bucket=self.bucket_name, Key=key)['UploadId']

        try:
            parts = []
            for number, chunk in enumerate(_read_chunks(local_path, MULTIPART_CHUNK_SIZE), start=1):
                if cancellation_check:
                    cancellation_check()
                etag = client.upload_part(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id,
                    PartNumber=number,
                    Body=chunk
                )['ETag']
                parts.append({'ETag': etag, 'PartNumber': number})

            client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except BaseException:
            try:
                client.abort_multipart_upload(Bucket=self.bucket_name, Key=key, UploadId=upload_id)
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def _iter_keys(self, client, prefix: str) -> Iterator[str]:
        paginator = client.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
            for obj in page.get('Contents', []):
                yield obj['Key']

    def list(self) -> List[str]:
        """
        Every object key under the instance prefix.

        Raises:
            StorageError: If listing fails
        """
        client = self._client()

        try:
            return list(self._iter_keys(client, self.instance_prefix + '/'))
        except (ClientError, BotoCoreError) as e:
            raise _s3_failure('list', e)

    def delete(self, key: str):
        """
        Delete every object of the backup identified by a trimmed key.

        Raises:
            StorageError: If any object cannot be deleted
        """
        client = self._client()
        backup_prefix = build_key(self.instance_prefix, key) + '/'

        try:
            keys = list(self._iter_keys(client, backup_prefix))
            # delete_objects accepts at most 1000 keys per request
            for start in range(0, len(keys), 1000):
                batch = [{'Key': k} for k in keys[start:start + 1000]]
                response = client.delete_objects(
                    Bucket=self.bucket_name,
                    Delete={'Objects': batch, 'Quiet': True}
                )
                for failure in response.get('Errors', []):
                    raise StorageError(
                        f"S3 delete failed for {failure.get('Key')} "
                        f"({failure.get('Code')}): {failure.get('Message')}"
                    )
        except (ClientError, BotoCoreError) as e:
            raise _s3_failure('delete', e)


class LocalStorage(BaseStorage):
    """
    Backups in a directory tree, laid out like the S3 keys:
    {base_path}/{prefix}/{instance_id}/{timestamp}/{filename}
    """

    def __init__(self, base_path: str, instance_id: str, prefix: str = ''):
        super().__init__(prefix, instance_id)
        self.base_path = Path(base_path)

    def init(self):
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory {self.base_path}: {e}")

    def name(self) -> str:
        return f"local ({self.base_path})"

    def upload(self, local_path: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Copy a file under a new timestamped key.

        Returns:
            Key of the stored file, relative to base_path

        Raises:
            StorageError: If the file is missing or cannot be copied
        """
        if not os.path.isfile(local_path):
            raise StorageError(f"Source file not found: {local_path}")

        if cancellation_check:
            cancellation_check()

        key = build_key(self.build_timestamped_key(), os.path.basename(local_path))
        target = self.base_path / key

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, target)
        except OSError as e:
            raise StorageError(f"Failed to store {local_path} at {target}: {e}")

        return key

    def list(self) -> List[str]:
        root = self.base_path / self.instance_prefix
        if not root.is_dir():
            return []

        try:
            return sorted(
                item.relative_to(self.base_path).as_posix()
                for item in root.rglob('*')
                if item.is_file()
            )
        except OSError as e:
            raise StorageError(f"Failed to list {root}: {e}")

    def delete(self, key: str):
        target = self.base_path / self.instance_prefix / key

        try:
            if target.is_dir():
                shutil.rmtree(target)
            elif target.exists():
                target.unlink()
        except OSError as e:
            raise StorageError(f"Failed to delete local backup {target}: {e}")


def create_storage(config: Config) -> BaseStorage:
    """
    Build the storage backend selected by config.storage.backend.

    Raises:
        ValueError: If the backend is unknown
    """
    settings = config.storage
    instance_id = config.app.instance_id

    if settings.backend == 's3':
        return S3Storage(
            bucket_name=settings.bucket,
            instance_id=instance_id,
            prefix=settings.prefix,
            access_key=settings.access_key,
            secret_key=settings.secret_key,
            region=settings.region,
            endpoint_url=settings.endpoint_url
        )
    if settings.backend == 'local':
        return LocalStorage(settings.local_path, instance_id, prefix=settings.prefix)
    raise ValueError(f"Invalid storage backend: {settings.backend}")
