"""
Snapshot manifests.

A manifest is a JSON sidecar written next to an archive once the archive is
complete. Its presence is what commits a snapshot: archives without a valid
manifest are treated as incomplete by retention and restore.
"""

import hashlib
import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

from .compression import strip_archive_extension


MANIFEST_SUFFIX = '.manifest'
MANIFEST_VERSION = 1

_REQUIRED_FIELDS = {'version', 'project', 'created_at', 'source_path', 'file_count', 'archive'}


class ManifestError(Exception):
    """Raised when a manifest file cannot be parsed due to invalid format."""

    def __init__(self, file_path: str, reason: str):
        super().__init__(f'Failed to parse manifest "{file_path}": {reason}')
        self.file_path = file_path
        self.reason = reason


@dataclass
class BackupManifest:
    """Sidecar metadata committing a snapshot archive."""

    project: str
    created_at: datetime
    source_path: str
    file_count: int
    archive: str
    """Archive file name (no directory), e.g. myproj_20240115_120000.zip."""
    directory_count: int = 0
    total_bytes: int = 0
    archive_size: Optional[int] = None
    checksum: Optional[str] = None
    """Hex SHA-256 of the archive, if computed."""
    compression_format: str = 'zip'
    patterns: Dict[str, List[str]] = field(default_factory=lambda: {'include': [], 'exclude': []})
    version: int = MANIFEST_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'project': self.project,
            'created_at': self.created_at.isoformat(),
            'source_path': self.source_path,
            'file_count': self.file_count,
            'directory_count': self.directory_count,
            'total_bytes': self.total_bytes,
            'archive': self.archive,
            'archive_size': self.archive_size,
            'checksum': self.checksum,
            'compression_format': self.compression_format,
            'patterns': self.patterns,
        }


def manifest_path_for(archive_path) -> Path:
    """Return the manifest path sharing the archive's stem."""
    archive_path = Path(archive_path)
    return archive_path.with_name(strip_archive_extension(archive_path.name) + MANIFEST_SUFFIX)


def sha256_for_path(path) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b''):
            digest.update(chunk)
    return digest.hexdigest()


def write_manifest(path, manifest: BackupManifest) -> None:
    """
    Write a manifest atomically.

    The content goes to a temporary file in the same directory, is fsynced, and
    is then renamed over the final path, so readers either see no manifest or a
    complete one.

    Raises:
        OSError: If the file could not be written
    """
    path = Path(path)
    fd, temp_path = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf8') as handle:
            json.dump(manifest.to_dict(), handle, indent=4, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.remove(temp_path)
        except OSError:
            pass
        raise


def read_manifest(path) -> BackupManifest:
    """
    Read a manifest from file.

    Raises:
        OSError: If the file could not be read
        ManifestError: If the file is not a valid manifest
    """

    def parse_error(reason: str) -> NoReturn:
        raise ManifestError(str(path), reason)

    try:
        with open(path, 'r', encoding='utf8') as handle:
            data = json.load(handle)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ManifestError(str(path), str(e)) from e

    if not isinstance(data, dict):
        parse_error('Expected an object')

    missing = _REQUIRED_FIELDS - set(data.keys())
    if missing:
        parse_error(f'Missing fields {sorted(missing)}')

    if data['version'] != MANIFEST_VERSION:
        parse_error(f'Unsupported version {data["version"]!r}')

    try:
        created_at = datetime.fromisoformat(data['created_at'])
    except (TypeError, ValueError) as e:
        raise ManifestError(str(path), 'Field "created_at" must be an ISO-8601 date string') from e

    for name in ('project', 'source_path', 'archive'):
        if not isinstance(data[name], str) or not data[name]:
            parse_error(f'Field "{name}" must be a non-empty string')

    for name in ('file_count', 'directory_count', 'total_bytes'):
        value = data.get(name, 0)
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            parse_error(f'Field "{name}" must be a non-negative integer')

    archive_size = data.get('archive_size')
    if archive_size is not None and (not isinstance(archive_size, int) or archive_size < 0):
        parse_error('Field "archive_size" must be a non-negative integer')

    checksum = data.get('checksum')
    if checksum is not None and not isinstance(checksum, str):
        parse_error('Field "checksum" must be a string')

    patterns = data.get('patterns') or {'include': [], 'exclude': []}
    if not isinstance(patterns, dict):
        parse_error('Field "patterns" must be an object')

    return BackupManifest(
        project=data['project'],
        created_at=created_at,
        source_path=data['source_path'],
        file_count=data['file_count'],
        archive=data['archive'],
        directory_count=data.get('directory_count', 0),
        total_bytes=data.get('total_bytes', 0),
        archive_size=archive_size,
        checksum=checksum,
        compression_format=data.get('compression_format', 'zip'),
        patterns={
            'include': list(patterns.get('include', [])),
            'exclude': list(patterns.get('exclude', [])),
        },
        version=data['version'],
    )
