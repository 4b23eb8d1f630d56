"""
Retention policy enforcement for snapshots.

Keeps the N most recent complete snapshots of a project and deletes the rest.
Only archives with a valid manifest count as snapshots; anything else in the
destination directory (in-progress builds, foreign files) is left alone.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from projsnap.errors import InvalidConfiguration, PruneFailure
from .compression import parse_archive_filename, strip_archive_extension
from .manifest import MANIFEST_SUFFIX, BackupManifest, ManifestError, read_manifest


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotInfo:
    """A complete snapshot found by listing a destination directory."""

    snapshot_id: str
    archive_path: Path
    manifest_path: Path
    created_at: datetime
    sequence: int
    manifest: BackupManifest

    @property
    def sort_key(self):
        return (self.created_at, self.sequence, self.archive_path.name)


def validate_keep(keep) -> int:
    """
    Validate a retention count.

    Raises:
        InvalidConfiguration: If keep is not a positive integer
    """
    if isinstance(keep, bool) or not isinstance(keep, int) or keep <= 0:
        raise InvalidConfiguration(f"Retention keep must be a positive integer, got {keep!r}")
    return keep


def _load_snapshot(project_name: str, archive_path: Path) -> Optional[SnapshotInfo]:
    """Return SnapshotInfo if archive_path has a valid matching manifest, else None."""
    parsed = parse_archive_filename(project_name, archive_path.name)
    if parsed is None:
        return None
    _, sequence, _ = parsed

    stem = strip_archive_extension(archive_path.name)
    manifest_path = archive_path.with_name(stem + MANIFEST_SUFFIX)
    try:
        manifest = read_manifest(manifest_path)
    except FileNotFoundError:
        logger.debug(f"Archive without manifest (incomplete): {archive_path.name}")
        return None
    except (OSError, ManifestError) as e:
        logger.warning(f"Ignoring archive with unreadable manifest {archive_path.name}: {e}")
        return None

    if manifest.archive != archive_path.name or manifest.project != project_name:
        logger.warning(f"Manifest {manifest_path.name} does not describe {archive_path.name}, ignoring")
        return None

    return SnapshotInfo(
        snapshot_id=stem,
        archive_path=archive_path,
        manifest_path=manifest_path,
        created_at=manifest.created_at,
        sequence=sequence,
        manifest=manifest,
    )


def list_snapshots(project_name: str, destination_dir) -> List[SnapshotInfo]:
    """
    List complete snapshots of a project, newest first.

    Args:
        project_name: Project whose archives to list
        destination_dir: Directory holding archives and manifests

    Returns:
        SnapshotInfo list sorted by (created_at, sequence, name) descending

    Raises:
        OSError: If the directory cannot be listed
    """
    destination = Path(destination_dir)
    if not destination.exists():
        return []

    snapshots = []
    for entry in destination.iterdir():
        if entry.name.startswith('.') or not entry.is_file():
            continue
        info = _load_snapshot(project_name, entry)
        if info is not None:
            snapshots.append(info)

    snapshots.sort(key=lambda s: s.sort_key, reverse=True)
    return snapshots


class RetentionManager:
    """
    Manages retention policy enforcement for one project's destination directory.
    """

    def __init__(self, project_name: str, destination_dir, keep: int):
        """
        Initialize retention manager.

        Args:
            project_name: Project whose snapshots are pruned
            destination_dir: Directory holding archives and manifests
            keep: Number of most recent complete snapshots to keep

        Raises:
            InvalidConfiguration: If keep is not a positive integer
        """
        self.project_name = project_name
        self.destination_dir = Path(destination_dir)
        self.keep = validate_keep(keep)
        self.logs = []
        self.failures: List[PruneFailure] = []
        self.kept: List[str] = []

    def prune(self) -> List[str]:
        """
        Delete every complete snapshot beyond the `keep` most recent.

        Each snapshot's archive is deleted before its manifest. If the archive
        cannot be deleted the snapshot stays complete and is retried on the
        next pass. If the manifest cannot be deleted afterwards the discrepancy
        is logged and the orphaned manifest is cleaned up on a later pass.

        Returns:
            Ids of deleted snapshots, newest first

        Raises:
            PruneFailure: If the destination directory cannot be listed
        """
        try:
            snapshots = list_snapshots(self.project_name, self.destination_dir)
        except OSError as e:
            raise PruneFailure(f"Failed to list snapshots in {self.destination_dir}: {e}",
                               str(self.destination_dir)) from e

        retained = snapshots[:self.keep]
        excess = snapshots[self.keep:]
        self.kept = [s.snapshot_id for s in retained]

        deleted = []
        for snapshot in excess:
            if self._delete_snapshot(snapshot):
                deleted.append(snapshot.snapshot_id)

        self._remove_orphaned_manifests()

        self._log(
            f"Retention for {self.project_name}: {len(snapshots)} complete, "
            f"kept {len(retained)}, deleted {len(deleted)}, failures {len(self.failures)}"
        )
        return deleted

    def _delete_snapshot(self, snapshot: SnapshotInfo) -> bool:
        try:
            snapshot.archive_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self._record_failure(f"Failed to delete archive {snapshot.archive_path.name}: {e}",
                                 snapshot.archive_path)
            return False

        try:
            snapshot.manifest_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self._record_failure(
                f"Archive {snapshot.archive_path.name} deleted but manifest "
                f"{snapshot.manifest_path.name} could not be removed: {e}",
                snapshot.manifest_path,
            )

        self._log(f"Deleted snapshot {snapshot.snapshot_id}")
        return True

    def _remove_orphaned_manifests(self):
        """Remove this project's manifests whose archive no longer exists."""
        if not self.destination_dir.exists():
            return
        try:
            entries = list(self.destination_dir.iterdir())
        except OSError as e:
            self._record_failure(f"Failed to scan for orphaned manifests: {e}", self.destination_dir)
            return

        for entry in entries:
            if not entry.name.endswith(MANIFEST_SUFFIX) or entry.name.startswith('.'):
                continue
            stem = entry.name[:-len(MANIFEST_SUFFIX)]
            if parse_archive_filename(self.project_name, f"{stem}.zip") is None:
                continue
            if any(sibling.name.startswith(stem + '.') and sibling.name != entry.name
                   for sibling in entries):
                continue
            try:
                entry.unlink()
                self._log(f"Removed orphaned manifest {entry.name}")
            except FileNotFoundError:
                pass
            except OSError as e:
                self._record_failure(f"Failed to remove orphaned manifest {entry.name}: {e}", entry)

    def _record_failure(self, message: str, path):
        failure = PruneFailure(message, str(path))
        self.failures.append(failure)
        self.logs.append(f"[{datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}] {message}")
        logger.error(message)

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def prune_snapshots(project_name: str, destination_dir, keep: int) -> List[str]:
    """
    Enforce retention for a project.

    Args:
        project_name: Project whose snapshots are pruned
        destination_dir: Directory holding archives and manifests
        keep: Number of most recent complete snapshots to keep

    Returns:
        Ids of deleted snapshots, newest first

    Raises:
        InvalidConfiguration: If keep <= 0
        PruneFailure: If the destination directory cannot be listed
    """
    manager = RetentionManager(project_name, destination_dir, keep)
    return manager.prune()
