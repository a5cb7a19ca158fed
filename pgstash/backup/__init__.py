"""
Backup module for pgstash.

This module handles the core backup functionality including:
- Preflight checks, database enumeration and export (pg_dump)
- Compression
- Storage (S3 and local)
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, DumpResult, run_backup
from .postgres import PostgresExporter, ExportResult
from .compression import archive_directory
from .storage import S3Storage, LocalStorage, create_storage
from .retention import RetentionManager, PurgeResult

__all__ = [
    'BackupExecutor',
    'DumpResult',
    'run_backup',
    'PostgresExporter',
    'ExportResult',
    'archive_directory',
    'S3Storage',
    'LocalStorage',
    'create_storage',
    'RetentionManager',
    'PurgeResult'
]
