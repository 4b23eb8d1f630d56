"""
Unit tests for backup executor (projsnap/backup/executor.py).

Tests BackupExecutor for orchestrating complete backup workflows.
"""

import dataclasses
import threading
import time
import zipfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from freezegun import freeze_time

from projsnap.errors import BuildFailed, BuildInProgress, InvalidConfiguration, NotOwner, PruneFailure
from projsnap.backup.executor import BackupExecutor, prune_remote, run_backup, run_prune
from projsnap.backup.retention import list_snapshots
from projsnap.backup.storage import LocalStorage, S3Storage, StorageError
from projsnap.utils.locking import LockManager


class TestBackupExecutor:
    """Test BackupExecutor class."""

    def test_executor_initialization(self, backup_config):
        """Test BackupExecutor initializes correctly."""
        executor = BackupExecutor(backup_config)

        assert executor.config == backup_config
        assert executor.snapshot is None
        assert executor.deleted == []
        assert executor.remote_key is None
        assert executor.logs == []
        assert executor.lock_manager.lock_dir == backup_config.effective_lock_dir

    def test_executor_successful_backup(self, backup_config):
        """Test a successful run builds, prunes and releases the lock."""
        executor = BackupExecutor(backup_config)

        snapshot = executor.execute()

        assert Path(snapshot.archive_path).exists()
        assert Path(snapshot.manifest_path).exists()
        assert executor.lock_manager.read(backup_config.build_resource_id) is None
        assert any('Backup completed successfully' in line for line in executor.logs)

    def test_lock_dir_not_archived(self, backup_config):
        """Test a lock directory inside the source tree is never staged."""
        lock_dir = backup_config.source_root / '.locks'
        config = dataclasses.replace(backup_config, lock_dir=lock_dir)

        snapshot = run_backup(config)

        with zipfile.ZipFile(snapshot.archive_path) as zipf:
            assert not any(n.startswith('.locks') for n in zipf.namelist())

    def test_retention_applied_after_build(self, backup_config):
        """Test each run prunes down to keep snapshots."""
        config = dataclasses.replace(backup_config, keep=2)

        with freeze_time("2024-01-15 12:00:00"):
            for _ in range(4):
                run_backup(config)

        snapshots = list_snapshots('proj', config.destination_dir)
        assert [s.snapshot_id for s in snapshots] == ['proj_20240115_120000_3', 'proj_20240115_120000_2']

    def test_executor_records_deleted(self, backup_config):
        """Test the executor exposes the ids retention deleted."""
        config = dataclasses.replace(backup_config, keep=1)

        with freeze_time("2024-01-15 12:00:00"):
            run_backup(config)
            executor = BackupExecutor(config)
            executor.execute()

        assert executor.deleted == ['proj_20240115_120000']

    def test_invalid_config_before_any_mutation(self, backup_config):
        """Test an invalid configuration fails before the lock or destination exist."""
        destination = backup_config.destination_dir / 'new'
        config = dataclasses.replace(backup_config, keep=0, destination_dir=destination)

        with pytest.raises(InvalidConfiguration):
            run_backup(config)

        assert not destination.exists()

    def test_build_in_progress(self, backup_config):
        """Test a held build lock raises BuildInProgress."""
        manager = LockManager(backup_config.effective_lock_dir)
        held = manager.acquire(backup_config.build_resource_id, holder='other-build')

        with pytest.raises(BuildInProgress, match="other-build"):
            run_backup(backup_config)

        assert list_snapshots('proj', backup_config.destination_dir) == []
        assert manager.read(backup_config.build_resource_id).lock_id == held.lock_id
        manager.release(held)

    def test_concurrent_runs_one_wins(self, backup_config):
        """Test two concurrent runs for the same project never build at once."""
        results = []
        errors = []
        gate = threading.Event()

        from projsnap.backup import executor as executor_module
        original_build = executor_module.build_snapshot

        def slow_build(*args, **kwargs):
            gate.set()
            time.sleep(0.5)
            return original_build(*args, **kwargs)

        def run():
            try:
                results.append(run_backup(backup_config))
            except BuildInProgress as e:
                errors.append(e)

        with patch('projsnap.backup.executor.build_snapshot', side_effect=slow_build):
            first = threading.Thread(target=run)
            first.start()
            gate.wait(timeout=5)
            second = threading.Thread(target=run)
            second.start()
            first.join(timeout=30)
            second.join(timeout=30)

        assert len(results) == 1
        assert len(errors) == 1

    def test_lock_released_on_build_failure(self, backup_config):
        """Test the build lock is released and nothing pruned when the build fails."""
        with patch('projsnap.backup.executor.build_snapshot', side_effect=BuildFailed("disk full")), \
                patch('projsnap.backup.executor.RetentionManager') as mock_retention:
            executor = BackupExecutor(backup_config)
            with pytest.raises(BuildFailed):
                executor.execute()

        mock_retention.assert_not_called()
        assert executor.lock_manager.read(backup_config.build_resource_id) is None
        assert any('Backup failed' in line for line in executor.logs)

    def test_unusable_lock_dir_raises_build_failed(self, backup_config, tmp_path):
        """Test a lock directory that cannot be created fails the build cleanly."""
        blocker = tmp_path / 'not-a-dir'
        blocker.write_text('file')
        config = dataclasses.replace(backup_config, lock_dir=blocker / 'locks')

        with pytest.raises(BuildFailed, match="lock directory"):
            run_backup(config)

        assert list_snapshots('proj', config.destination_dir) == []

    def test_not_owner_on_release_is_logged(self, backup_config):
        """Test losing the lock during the run does not fail a finished backup."""
        lock_manager = MagicMock(wraps=LockManager(backup_config.effective_lock_dir))
        lock_manager.release.side_effect = NotOwner('build:proj', 'me', 'someone-else')

        snapshot = run_backup(backup_config, lock_manager=lock_manager)

        assert snapshot is not None
        lock_manager.release.assert_called_once()


class TestRemoteUpload:
    """Test the optional remote upload step."""

    def test_upload_to_sink(self, backup_config, tmp_path):
        """Test the archive is copied to the remote sink under the dated key."""
        sink = LocalStorage(str(tmp_path / 'mirror'))
        executor = BackupExecutor(backup_config, remote_sink=sink)

        with freeze_time("2024-01-15 12:00:00"):
            executor.execute()

        assert executor.remote_key == 'proj/2024/01/proj_20240115_120000.zip'
        assert (tmp_path / 'mirror' / 'proj' / '2024' / '01' / 'proj_20240115_120000.zip').exists()

    def test_upload_failure_keeps_local_snapshot(self, backup_config):
        """Test an upload failure is logged and the local snapshot kept."""
        sink = MagicMock()
        sink.upload.side_effect = StorageError("network down")
        executor = BackupExecutor(backup_config, remote_sink=sink)

        snapshot = executor.execute()

        assert Path(snapshot.archive_path).exists()
        assert executor.remote_key is None
        assert any('Remote upload failed' in line for line in executor.logs)

    def test_no_sink_skips_upload(self, backup_config):
        """Test runs without a sink log the skip."""
        executor = BackupExecutor(backup_config)
        executor.execute()

        assert any('skipping upload' in line for line in executor.logs)


class TestRetentionFailures:
    """Test retention failures do not fail the backup."""

    def test_prune_failure_logged(self, backup_config):
        """Test a PruneFailure is recorded and the new snapshot survives."""
        with patch('projsnap.backup.executor.RetentionManager') as mock_retention:
            mock_retention.return_value.prune.side_effect = PruneFailure("cannot list", "/x")
            executor = BackupExecutor(backup_config)
            snapshot = executor.execute()

        assert Path(snapshot.archive_path).exists()
        assert len(executor.prune_failures) == 1
        assert executor.lock_manager.read(backup_config.build_resource_id) is None


class TestRunPrune:
    """Test pruning outside a backup run."""

    def test_run_prune(self, backup_config):
        """Test run_prune enforces retention under the build lock."""
        config = dataclasses.replace(backup_config, keep=1)
        with freeze_time("2024-01-15 12:00:00"):
            run_backup(dataclasses.replace(config, keep=5))
            run_backup(dataclasses.replace(config, keep=5))

        deleted = run_prune(config)

        assert deleted == ['proj_20240115_120000']
        assert LockManager(config.effective_lock_dir).read(config.build_resource_id) is None

    def test_run_prune_blocked_by_build(self, backup_config):
        """Test run_prune refuses while a build holds the lock."""
        manager = LockManager(backup_config.effective_lock_dir)
        held = manager.acquire(backup_config.build_resource_id, holder='builder')

        with pytest.raises(BuildInProgress):
            run_prune(backup_config)

        manager.release(held)

    def test_run_prune_unusable_lock_dir(self, backup_config, tmp_path):
        """Test run_prune reports an unusable lock directory as PruneFailure."""
        blocker = tmp_path / 'not-a-dir'
        blocker.write_text('file')
        config = dataclasses.replace(backup_config, lock_dir=blocker / 'locks')

        with pytest.raises(PruneFailure, match="lock directory"):
            run_prune(config)


class TestPruneRemote:
    """Test bringing the remote mirror in line with local retention."""

    def _mirrored_runs(self, config, sink, runs=2):
        keys = []
        with freeze_time("2024-01-15 12:00:00"):
            for _ in range(runs):
                executor = BackupExecutor(dataclasses.replace(config, keep=5), remote_sink=sink)
                executor.execute()
                keys.append(executor.remote_key)
        return keys

    def test_prune_remote_follows_local_retention(self, backup_config, tmp_path):
        """Test mirrored archives pruned locally are deleted from the mirror."""
        sink = LocalStorage(str(tmp_path / 'mirror'))
        config = dataclasses.replace(backup_config, keep=1)
        older, newer = self._mirrored_runs(config, sink)
        run_prune(config)

        deleted = prune_remote(config, sink)

        assert deleted == [older]
        assert [o['Key'] for o in sink.list_objects('proj/')] == [newer]
        assert LockManager(config.effective_lock_dir).read(config.build_resource_id) is None

    def test_prune_remote_keeps_foreign_objects(self, backup_config, tmp_path):
        """Test objects that are not archives of the project are left alone."""
        sink = LocalStorage(str(tmp_path / 'mirror'))
        notes = tmp_path / 'notes.txt'
        notes.write_text('keep me')
        sink.upload(str(notes), 'proj/notes.txt')
        self._mirrored_runs(backup_config, sink, runs=1)

        assert prune_remote(backup_config, sink) == []
        assert 'proj/notes.txt' in [o['Key'] for o in sink.list_objects('proj/')]

    def test_prune_remote_refuses_without_local_snapshots(self, backup_config, tmp_path):
        """Test an empty destination never empties the mirror."""
        sink = LocalStorage(str(tmp_path / 'mirror'))
        other_dest = dataclasses.replace(backup_config, destination_dir=tmp_path / 'empty')
        self._mirrored_runs(backup_config, sink, runs=1)

        with pytest.raises(PruneFailure, match="refusing"):
            prune_remote(other_dest, sink)

        assert len(sink.list_objects('proj/')) == 1

    def test_prune_remote_blocked_by_build(self, backup_config, tmp_path):
        """Test prune_remote refuses while a build holds the lock."""
        sink = MagicMock()
        manager = LockManager(backup_config.effective_lock_dir)
        held = manager.acquire(backup_config.build_resource_id, holder='builder')

        with pytest.raises(BuildInProgress):
            prune_remote(backup_config, sink)

        sink.list_objects.assert_not_called()
        manager.release(held)

    def test_prune_remote_s3(self, backup_config, mock_s3):
        """Test pruning an S3 mirror."""
        sink = S3Storage(bucket_name='test-bucket', access_key='k', secret_key='s')
        config = dataclasses.replace(backup_config, keep=1)
        older, newer = self._mirrored_runs(config, sink)
        run_prune(config)

        assert prune_remote(config, sink) == [older]
        assert [o['Key'] for o in sink.list_objects('proj/')] == [newer]
