"""
Snapshot verification and extraction.

Only complete snapshots (archive plus valid manifest) are offered for restore.
"""

import logging
import tarfile
import zipfile
from pathlib import Path

from projsnap.errors import RestoreError
from .compression import parse_archive_filename
from .manifest import MANIFEST_SUFFIX, ManifestError, manifest_path_for, read_manifest, sha256_for_path
from .retention import SnapshotInfo, list_snapshots


logger = logging.getLogger(__name__)


def verify_snapshot(info: SnapshotInfo) -> None:
    """
    Check an archive against its manifest.

    Raises:
        RestoreError: If the archive is missing or its size or checksum differ
    """
    manifest = info.manifest
    try:
        size = info.archive_path.stat().st_size
    except FileNotFoundError:
        raise RestoreError(f"Archive missing: {info.archive_path}")

    if manifest.archive_size is not None and size != manifest.archive_size:
        raise RestoreError(
            f"Size mismatch for {info.archive_path.name}: manifest {manifest.archive_size}, actual {size}"
        )
    if manifest.checksum is not None and sha256_for_path(info.archive_path) != manifest.checksum:
        raise RestoreError(f"Checksum mismatch for {info.archive_path.name}")


def _load_info(archive_path: Path) -> SnapshotInfo:
    manifest_path = manifest_path_for(archive_path)
    try:
        manifest = read_manifest(manifest_path)
    except FileNotFoundError:
        raise RestoreError(f"Refusing to restore incomplete snapshot (no manifest): {archive_path.name}")
    except (OSError, ManifestError) as e:
        raise RestoreError(f"Refusing to restore {archive_path.name}: {e}") from e

    parsed = parse_archive_filename(manifest.project, archive_path.name)
    if parsed is None or manifest.archive != archive_path.name:
        raise RestoreError(f"Manifest {manifest_path.name} does not describe {archive_path.name}")

    return SnapshotInfo(
        snapshot_id=manifest_path.name[:-len(MANIFEST_SUFFIX)],
        archive_path=archive_path,
        manifest_path=manifest_path,
        created_at=manifest.created_at,
        sequence=parsed[1],
        manifest=manifest,
    )


def _safe_target(destination: Path, member_name: str) -> Path:
    target = (destination / member_name).resolve()
    root = destination.resolve()
    if target != root and root not in target.parents:
        raise RestoreError(f"Archive member escapes destination: {member_name}")
    return target


def restore_snapshot(archive_path, destination, verify: bool = True) -> int:
    """
    Extract a complete snapshot into a destination directory.

    Args:
        archive_path: Path to the snapshot archive
        destination: Directory to extract into (created if missing)
        verify: Check size and checksum against the manifest first

    Returns:
        Number of files extracted

    Raises:
        RestoreError: If the snapshot is incomplete, corrupt or unsafe
    """
    archive_path = Path(archive_path)
    destination = Path(destination)
    info = _load_info(archive_path)

    if verify:
        verify_snapshot(info)

    try:
        destination.mkdir(parents=True, exist_ok=True)
        if info.manifest.compression_format == 'zip':
            count = _extract_zip(archive_path, destination)
        else:
            count = _extract_tar(archive_path, destination)
    except (OSError, zipfile.BadZipFile, tarfile.TarError) as e:
        raise RestoreError(f"Failed to extract {archive_path.name}: {e}") from e

    logger.info(f"Restored {count} files from {archive_path.name} into {destination}")
    return count


def _extract_zip(archive_path: Path, destination: Path) -> int:
    count = 0
    with zipfile.ZipFile(archive_path, 'r') as zipf:
        members = zipf.infolist()
        for member in members:
            _safe_target(destination, member.filename)
        for member in members:
            zipf.extract(member, destination)
            if not member.is_dir():
                count += 1
    return count


def _extract_tar(archive_path: Path, destination: Path) -> int:
    count = 0
    with tarfile.open(archive_path, 'r:*') as tar:
        members = tar.getmembers()
        for member in members:
            _safe_target(destination, member.name)
            if member.issym() or member.islnk():
                raise RestoreError(f"Refusing to extract link member: {member.name}")
        for member in members:
            tar.extract(member, destination)
            if member.isfile():
                count += 1
    return count


def restore_latest(project_name: str, destination_dir, target, verify: bool = True) -> int:
    """
    Restore the most recent complete snapshot of a project.

    Raises:
        RestoreError: If the project has no complete snapshot
    """
    snapshots = list_snapshots(project_name, destination_dir)
    if not snapshots:
        raise RestoreError(f"No complete snapshots of {project_name} in {destination_dir}")
    return restore_snapshot(snapshots[0].archive_path, target, verify=verify)
