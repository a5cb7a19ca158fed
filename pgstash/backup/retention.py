"""
Retention policy enforcement for backups.

Backups are ordered by the timestamp embedded in their storage key; the
newest retention_count backups are kept and the rest are deleted.
"""

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from .errors import DeleteError, ListError
from .storage import BaseStorage, StorageError, parse_timestamp


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurgeResult:
    """Backups kept and deleted by one purge."""
    kept: Tuple[str, ...] = ()
    deleted: Tuple[str, ...] = ()


def sort_newest_first(keys: Sequence[str]) -> List[str]:
    """
    Sort trimmed storage keys by embedded timestamp, most recent first.

    Keys that are not valid timestamps are dropped with a warning, so they
    are never selected for deletion.
    """
    dated = []

    for key in keys:
        try:
            dated.append((parse_timestamp(key), key))
        except ValueError:
            logger.warning(f"Ignoring storage key without a valid timestamp: {key}")

    dated.sort(key=lambda item: item[0], reverse=True)
    return [key for _, key in dated]


def split_retention(keys: Sequence[str], retention_count: int) -> Tuple[List[str], List[str]]:
    """
    Split newest-first keys into (kept, surplus).

    Raises:
        ValueError: If retention_count is negative
    """
    if retention_count < 0:
        raise ValueError(f"Retention count must not be negative, got {retention_count}")

    return list(keys[:retention_count]), list(keys[retention_count:])


class RetentionManager:
    """
    Lists the backups of one instance and deletes the surplus.
    """

    def __init__(self, storage: BaseStorage):
        """
        Initialize retention manager.

        Args:
            storage: Initialized storage backend
        """
        self.storage = storage

    def list_backups(self) -> List[str]:
        """
        List backups in storage, most recent first.

        Returns:
            Trimmed keys; empty if there are no backups

        Raises:
            ListError: If the storage backend cannot be listed
        """
        try:
            keys = self.storage.list()
        except StorageError as e:
            raise ListError(f"Error listing backups in {self.storage.name()}: {e}") from e

        if not keys:
            logger.info("No backups found")
            return []

        keys = sort_newest_first(self.storage.trim_prefix(keys))
        logger.debug(f"Found backups: {keys}")
        return keys

    def purge(self, retention_count: int) -> PurgeResult:
        """
        Delete backups beyond the newest retention_count.

        Deletion stops at the first failure. Backups deleted before it stay
        deleted; the remaining surplus is left in place.

        Returns:
            PurgeResult with kept and deleted keys

        Raises:
            ListError: If backups cannot be listed
            DeleteError: If a backup cannot be deleted
        """
        keys = self.list_backups()
        kept, surplus = split_retention(keys, retention_count)

        if not surplus:
            logger.info("No backups to delete")
            return PurgeResult(kept=tuple(kept))

        logger.info(f"Found {len(surplus)} backups to delete (retention: {retention_count})")

        deleted = []
        for key in surplus:
            logger.info(f"Deleting backup: {key}")
            try:
                self.storage.delete(key)
            except StorageError as e:
                logger.error(f"Error deleting backup {key}: {e}")
                raise DeleteError(key, e) from e
            deleted.append(key)

        logger.info("Deletion completed successfully")
        return PurgeResult(kept=tuple(kept), deleted=tuple(deleted))
