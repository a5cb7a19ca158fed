"""
Archiving of exported dumps.

The export directory is packed into one archive before upload. Formats:
- zip: deflate-compressed zip
- tar.gz / tar.bz2 / tar.xz: compressed tarball
- none: plain tarball
"""

import os
import tarfile
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Iterable, List


class CompressionError(Exception):
    """Raised when the dumps cannot be archived."""
    pass


EXTENSIONS = {
    'zip': 'zip',
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
    'none': 'tar'
}

TAR_MODES = {
    'tar.gz': 'w:gz',
    'tar.bz2': 'w:bz2',
    'tar.xz': 'w:xz',
    'none': 'w'
}


def create_archive(
    source_paths: List[str],
    output_path: str,
    compression_format: str = 'tar.gz'
) -> str:
    """
    Pack files and directories into a single archive.

    Members are stored under their basename.

    Args:
        source_paths: Files or directories to pack
        output_path: Archive path without extension
        compression_format: One of EXTENSIONS

    Returns:
        Path of the archive, extension included

    Raises:
        CompressionError: If there is nothing to pack or writing fails
        ValueError: If compression_format is unknown
    """
    if compression_format not in EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(EXTENSIONS)}"
        )

    if not source_paths:
        raise CompressionError("No source paths provided")

    archive_path = f"{output_path}.{EXTENSIONS[compression_format]}"
    sources = [Path(p) for p in source_paths]

    try:
        if compression_format == 'zip':
            _write_zip(sources, archive_path)
        else:
            _write_tar(sources, archive_path, TAR_MODES[compression_format])
    except (CompressionError, OSError, tarfile.TarError, zipfile.BadZipFile) as e:
        _discard(archive_path)
        if isinstance(e, CompressionError):
            raise
        raise CompressionError(f"Failed to create archive {archive_path}: {e}")

    return archive_path


def archive_directory(directory: str, archive_name: str, compression_format: str = 'tar.gz') -> str:
    """
    Archive every entry of a directory into an archive placed in it.

    The entry list is taken before the archive file exists, so the archive
    never contains itself.

    Raises:
        CompressionError: If the directory is missing or empty, or archiving fails
    """
    root = Path(directory)
    if not root.is_dir():
        raise CompressionError(f"Directory does not exist: {directory}")

    entries = sorted(str(entry) for entry in root.iterdir())
    if not entries:
        raise CompressionError(f"Nothing to archive in {directory}")

    target = root / strip_archive_extension(archive_name)
    return create_archive(entries, str(target), compression_format)


def _discard(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def _walk_files(directory: Path) -> Iterable[Path]:
    return (item for item in sorted(directory.rglob('*')) if item.is_file())


def _write_zip(sources: List[Path], archive_path: str):
    with zipfile.ZipFile(archive_path, 'w', compression=zipfile.ZIP_DEFLATED) as archive:
        for source in sources:
            if source.is_dir():
                # Keep the directory name as the top-level folder
                for item in _walk_files(source):
                    archive.write(item, item.relative_to(source.parent).as_posix())
            elif source.is_file():
                archive.write(source, source.name)
            else:
                raise CompressionError(f"Path does not exist: {source}")


def _write_tar(sources: List[Path], archive_path: str, mode: str):
    with tarfile.open(archive_path, mode) as archive:
        for source in sources:
            if not source.exists():
                raise CompressionError(f"Path does not exist: {source}")
            archive.add(str(source), arcname=source.name)


def generate_archive_filename(instance_id: str, compression_format: str) -> str:
    """
    Name of the archive for a run: {instance_id}-{YYYYMMDD_HHMMSS}.{ext}

    Characters other than letters, digits, '-' and '_' in the instance id
    become '_'.
    """
    stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    safe_id = ''.join(c if c.isalnum() or c in '-_' else '_' for c in instance_id)
    return f"{safe_id}-{stamp}.{EXTENSIONS.get(compression_format, 'tar.gz')}"


def strip_archive_extension(filename: str) -> str:
    """Drop a known archive extension (.tar.gz, .zip, ...) from filename."""
    # Longest first so '.tar.gz' wins over '.tar'
    for extension in sorted(set(EXTENSIONS.values()), key=len, reverse=True):
        suffix = '.' + extension
        if filename.endswith(suffix):
            return filename[:-len(suffix)]
    return filename


def get_archive_size(archive_path: str) -> int:
    """
    Size of the archive in bytes.

    Raises:
        CompressionError: If the archive is missing or unreadable
    """
    try:
        return os.stat(archive_path).st_size
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
