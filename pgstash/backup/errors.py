"""
Error taxonomy for the backup pipeline.

DumpError subclasses mean no new backup reached storage. PurgeError
subclasses mean retention enforcement did not finish; a backup created in
the same run (if any) is still in storage.
"""


class BackupError(Exception):
    """Base class for backup pipeline failures."""
    pass


class DumpError(BackupError):
    """Raised when creating a backup fails."""
    pass


class PreflightError(DumpError):
    """Raised when the environment is not ready for a backup."""
    pass


class EnumerationError(DumpError):
    """Raised when the list of databases cannot be determined."""
    pass


class ExportError(DumpError):
    """Raised when the dump tool cannot be invoked at all."""
    pass


class ZeroExportError(DumpError):
    """Raised when no database was exported."""

    def __init__(self, total_databases: int = 0):
        super().__init__(
            f"No databases were exported ({total_databases} found)"
        )
        self.total_databases = total_databases


class ArchiveError(DumpError):
    """Raised when the export directory cannot be archived."""
    pass


class EncryptionError(DumpError):
    """Raised when the archive cannot be encrypted."""
    pass


class UploadError(DumpError):
    """Raised when the backup cannot be uploaded."""
    pass


class DumpCancelledError(DumpError):
    """Raised when a backup run is cancelled or exceeds its deadline."""
    pass


class PurgeError(BackupError):
    """Raised when retention enforcement fails."""
    pass


class ListError(PurgeError):
    """Raised when existing backups cannot be listed."""
    pass


class DeleteError(PurgeError):
    """Raised when a surplus backup cannot be deleted."""

    def __init__(self, key: str, reason: Exception = None):
        message = f"Error deleting backup {key}"
        if reason is not None:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.key = key
