"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Validate configuration (before touching the filesystem)
2. Acquire the per-project build lock
3. Build the snapshot (stage, compress, commit manifest)
4. Upload to the remote sink (if configured)
5. Enforce retention
6. Release the build lock (always)
"""

import logging
import posixpath
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from projsnap.errors import BuildFailed, BuildInProgress, LockTimeout, NotOwner, PruneFailure
from projsnap.utils.locking import LockManager, LockRecord
from .builder import Snapshot, build_snapshot
from .compression import parse_archive_filename
from .retention import RetentionManager, list_snapshots
from .storage import ManagedSink, RemoteSink, StorageError, remote_key_for


logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Orchestrates one backup run for a project.
    """

    def __init__(self, config, remote_sink: Optional[RemoteSink] = None,
                 lock_manager: Optional[LockManager] = None):
        """
        Initialize backup executor.

        Args:
            config: BackupConfig for the project
            remote_sink: Optional sink receiving a copy of the new archive
            lock_manager: Lock manager to use (defaults to one on config.effective_lock_dir)
        """
        self.config = config
        self.remote_sink = remote_sink
        self.lock_manager = lock_manager or LockManager(
            config.effective_lock_dir,
            stale_after=config.stale_after
        )
        self.snapshot: Optional[Snapshot] = None
        self.deleted: List[str] = []
        self.remote_key: Optional[str] = None
        self.prune_failures: List[PruneFailure] = []
        self.logs = []

    def execute(self) -> Snapshot:
        """
        Execute the backup run.

        Returns:
            The new Snapshot

        Raises:
            InvalidConfiguration: If the configuration is invalid
            BuildInProgress: If another build of the project holds the lock
            BuildFailed: If the snapshot could not be built or the lock directory
                cannot be used; no pruning happens
        """
        self.config.validate()
        self._log(f"Starting backup of {self.config.project_name} from {self.config.source_root}")

        record = self._acquire_build_lock()
        try:
            self._execute_workflow()
        except Exception as e:
            self._log(f"Backup failed: {e}", level=logging.ERROR)
            raise
        finally:
            self._release_build_lock(record)

        self._log(f"Backup completed successfully: {self.snapshot.snapshot_id}")
        return self.snapshot

    def _execute_workflow(self):
        """Execute the main backup workflow steps while holding the build lock."""
        config = self.config

        # Step 1: Build snapshot
        self._log("Building snapshot")
        self.snapshot = build_snapshot(
            config.source_root,
            config.patterns,
            config.destination_dir,
            config.project_name,
            compression_format=config.compression_format,
            temp_dir=config.temp_dir,
            skip_paths=[config.effective_lock_dir],
            checksum=config.checksum,
        )
        self._log(
            f"Snapshot created: {self.snapshot.snapshot_id} "
            f"({self.snapshot.entry_count} entries, {self.snapshot.archive_size / 1024 / 1024:.2f} MB)"
        )

        # Step 2: Upload to remote sink
        if self.remote_sink is not None:
            self._upload()
        else:
            self._log("Remote sink not configured, skipping upload")

        # Step 3: Enforce retention
        self._prune()

    def _acquire_build_lock(self) -> LockRecord:
        try:
            return self.lock_manager.acquire(
                self.config.build_resource_id,
                timeout=self.config.lock_timeout,
                stale_after=self.config.stale_after,
            )
        except LockTimeout as e:
            self._log(f"Build lock busy: {e}", level=logging.WARNING)
            raise BuildInProgress(
                f"Another build of {self.config.project_name} is in progress"
                + (f" (held by {e.holder})" if e.holder else "")
            ) from e
        except OSError as e:
            self._log(f"Cannot use lock directory {self.lock_manager.lock_dir}: {e}", level=logging.ERROR)
            raise BuildFailed(f"Cannot use lock directory {self.lock_manager.lock_dir}: {e}") from e

    def _release_build_lock(self, record: LockRecord):
        try:
            self.lock_manager.release(record)
        except NotOwner as e:
            # Our lock was reclaimed as stale while we were building
            self._log(f"Build lock was no longer ours on release: {e}", level=logging.WARNING)
        except OSError as e:
            self._log(f"Failed to release build lock, it will go stale: {e}", level=logging.ERROR)

    def _upload(self):
        key = remote_key_for(self.config.project_name, self.snapshot.archive_path, self.snapshot.created_at)
        self._log(f"Uploading to remote sink: {key}")
        try:
            self.remote_key = self.remote_sink.upload(self.snapshot.archive_path, key)
            self._log(f"Uploaded: {self.remote_key}")
        except StorageError as e:
            self._log(f"Remote upload failed, keeping local snapshot: {e}", level=logging.ERROR)

    def _prune(self):
        manager = RetentionManager(self.config.project_name, self.config.destination_dir, self.config.keep)
        try:
            self.deleted = manager.prune()
        except PruneFailure as e:
            self.prune_failures.append(e)
            self._log(f"Retention enforcement failed: {e}", level=logging.ERROR)
            return
        self.prune_failures.extend(manager.failures)
        if self.deleted:
            self._log(f"Retention removed {len(self.deleted)} snapshot(s): {', '.join(self.deleted)}")

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def run_backup(config, remote_sink: Optional[RemoteSink] = None,
               lock_manager: Optional[LockManager] = None) -> Snapshot:
    """
    Run one backup of a project.

    Args:
        config: BackupConfig for the project
        remote_sink: Optional sink receiving a copy of the new archive
        lock_manager: Optional shared lock manager

    Returns:
        The new Snapshot
    """
    executor = BackupExecutor(config, remote_sink=remote_sink, lock_manager=lock_manager)
    return executor.execute()


@contextmanager
def _maintenance_lock(config, lock_manager: Optional[LockManager] = None) -> Iterator[LockRecord]:
    """Hold the project's build lock around work that must not race a build."""
    lock_manager = lock_manager or LockManager(config.effective_lock_dir, stale_after=config.stale_after)

    try:
        record = lock_manager.acquire(config.build_resource_id, timeout=config.lock_timeout,
                                      stale_after=config.stale_after)
    except LockTimeout as e:
        raise BuildInProgress(f"Another build of {config.project_name} is in progress") from e
    except OSError as e:
        raise PruneFailure(f"Cannot use lock directory {lock_manager.lock_dir}: {e}", str(lock_manager.lock_dir)) from e

    try:
        yield record
    finally:
        try:
            lock_manager.release(record)
        except NotOwner as e:
            logger.warning(f"Build lock was no longer ours on release: {e}")
        except OSError as e:
            logger.error(f"Failed to release build lock, it will go stale: {e}")


def run_prune(config, lock_manager: Optional[LockManager] = None) -> List[str]:
    """
    Enforce retention outside a backup run, holding the project's build lock.

    Raises:
        InvalidConfiguration: If keep is invalid
        BuildInProgress: If a build of the project holds the lock
        PruneFailure: If the destination directory cannot be listed
            or the lock directory cannot be used
    """
    manager = RetentionManager(config.project_name, config.destination_dir, config.keep)

    with _maintenance_lock(config, lock_manager):
        return manager.prune()


def prune_remote(config, remote_sink: ManagedSink, lock_manager: Optional[LockManager] = None) -> List[str]:
    """
    Delete mirrored archives of a project that no longer have a complete local snapshot.

    Brings the mirror in line with local retention. Objects whose names are not
    archives of this project are left alone.

    Args:
        config: BackupConfig for the project
        remote_sink: Sink supporting list_objects and delete
        lock_manager: Lock manager to use (defaults to one on config.effective_lock_dir)

    Returns:
        Deleted remote keys

    Raises:
        BuildInProgress: If a build of the project holds the lock
        PruneFailure: If there are no complete local snapshots to compare against
        StorageError: If listing or deleting remote objects fails
    """
    with _maintenance_lock(config, lock_manager):
        try:
            local = {s.archive_path.name for s in list_snapshots(config.project_name, config.destination_dir)}
        except OSError as e:
            raise PruneFailure(f"Cannot list {config.destination_dir}: {e}", str(config.destination_dir)) from e
        if not local:
            raise PruneFailure(
                f"No complete local snapshots of {config.project_name}; refusing to empty the remote mirror",
                str(config.destination_dir)
            )

        deleted = []
        for obj in remote_sink.list_objects(f"{config.project_name}/"):
            key = obj['Key']
            name = posixpath.basename(key)
            if name in local or parse_archive_filename(config.project_name, name) is None:
                continue

            remote_sink.delete(key)
            logger.info(f"Deleted remote archive without local snapshot: {key}")
            deleted.append(key)

        return deleted
