"""
Compression handlers for snapshot archives.

Supports multiple formats:
- zip: Standard zip compression (default)
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar

Archives are named {project}_{YYYYMMDD_HHMMSS}.{ext}; a second build landing
in the same second gets a numeric suffix: {project}_{YYYYMMDD_HHMMSS}_{n}.{ext}.
"""

import os
import re
import tarfile
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple


TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'

FORMAT_EXTENSIONS = {
    'zip': 'zip',
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
}

_TAR_MODES = {
    'tar.gz': 'w:gz',
    'tar.bz2': 'w:bz2',
    'tar.xz': 'w:xz',
}


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


def create_archive(staging_dir: str, archive_path: str, compression_format: str = 'zip') -> str:
    """
    Compress the contents of a staging directory into a single archive.

    Member names are relative to staging_dir. Empty directories are stored as
    directory entries so they survive a restore.

    Args:
        staging_dir: Directory whose contents should be archived
        archive_path: Full output path (including extension)
        compression_format: Format to use ('zip', 'tar.gz', 'tar.bz2', 'tar.xz')

    Returns:
        archive_path

    Raises:
        CompressionError: If archive creation fails (the partial archive is removed)
        ValueError: If compression_format is invalid
    """
    if compression_format not in FORMAT_EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(FORMAT_EXTENSIONS.keys())}"
        )

    staging = Path(staging_dir)
    if not staging.is_dir():
        raise CompressionError(f"Staging directory does not exist: {staging_dir}")

    try:
        if compression_format == 'zip':
            _create_zip(staging, archive_path)
        else:
            _create_tar(staging, archive_path, compression_format)
        _fsync_file(archive_path)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                pass
        raise CompressionError(f"Failed to create archive: {e}") from e


def _create_zip(staging: Path, archive_path: str):
    """
    Create a ZIP archive from the staging tree.

    Args:
        staging: Staging directory
        archive_path: Output archive path
    """
    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for item in sorted(staging.rglob('*')):
            arcname = item.relative_to(staging).as_posix()
            if item.is_dir():
                if not any(item.iterdir()):
                    zipf.write(item, arcname + '/')
            else:
                zipf.write(item, arcname)


def _create_tar(staging: Path, archive_path: str, compression_format: str):
    """
    Create a TAR archive with the requested compression.

    Args:
        staging: Staging directory
        archive_path: Output archive path
        compression_format: 'tar.gz', 'tar.bz2' or 'tar.xz'
    """
    mode = _TAR_MODES[compression_format]

    with tarfile.open(archive_path, mode) as tar:
        for item in sorted(staging.iterdir()):
            tar.add(item, arcname=item.name, recursive=True)


def _fsync_file(path: str):
    with open(path, 'rb') as f:
        os.fsync(f.fileno())


def format_timestamp(moment: Optional[datetime] = None) -> str:
    """Format a UTC timestamp at second resolution for archive names."""
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


def generate_archive_filename(project_name: str, compression_format: str = 'zip',
                              timestamp: Optional[str] = None, sequence: int = 0) -> str:
    """
    Generate a standardized archive filename.

    Format: {project_name}_{YYYYMMDD_HHMMSS}[_{sequence}].{ext}

    Args:
        project_name: Name of the project
        compression_format: Compression format
        timestamp: Pre-formatted timestamp (defaults to now, UTC)
        sequence: Collision counter; 0 means no suffix

    Returns:
        Filename (without path)
    """
    timestamp = timestamp or format_timestamp()
    extension = FORMAT_EXTENSIONS.get(compression_format, 'zip')
    stem = f"{project_name}_{timestamp}"
    if sequence:
        stem += f"_{sequence}"
    return f"{stem}.{extension}"


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles multi-part extensions like .tar.gz, .tar.bz2, .tar.xz

    Args:
        filename: Archive filename with extension

    Returns:
        Filename without extension
    """
    for extension in sorted(FORMAT_EXTENSIONS.values(), key=len, reverse=True):
        suffix = f".{extension}"
        if filename.endswith(suffix):
            return filename[:-len(suffix)]
    # Fallback to standard splitext
    return os.path.splitext(filename)[0]


def parse_archive_filename(project_name: str, filename: str) -> Optional[Tuple[datetime, int, str]]:
    """
    Parse an archive filename belonging to a project.

    Args:
        project_name: Project the archive must belong to
        filename: Candidate archive filename

    Returns:
        (timestamp, sequence, compression_format) or None if the name does not
        follow the archive naming convention for this project
    """
    pattern = re.compile(
        rf"^{re.escape(project_name)}_(\d{{8}}_\d{{6}})(?:_(\d+))?\.(zip|tar\.gz|tar\.bz2|tar\.xz)$"
    )
    match = pattern.match(filename)
    if not match:
        return None

    try:
        timestamp = datetime.strptime(match.group(1), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None

    sequence = int(match.group(2)) if match.group(2) else 0
    extension = match.group(3)
    compression_format = next(k for k, v in FORMAT_EXTENSIONS.items() if v == extension)
    return timestamp, sequence, compression_format


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Args:
        archive_path: Path to the archive file

    Returns:
        File size in bytes

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
