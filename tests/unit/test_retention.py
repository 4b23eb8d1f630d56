"""
Unit tests for retention policy management (projsnap/backup/retention.py).

Tests RetentionManager for keeping the N most recent complete snapshots.
"""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from projsnap.errors import InvalidConfiguration, PruneFailure
from projsnap.backup.retention import (
    RetentionManager,
    list_snapshots,
    prune_snapshots,
    validate_keep
)


def _at(hour, minute=0, second=0):
    return datetime(2024, 1, 15, hour, minute, second, tzinfo=timezone.utc)


class TestValidateKeep:
    """Test retention count validation."""

    @pytest.mark.parametrize("keep", [0, -1, 1.5, "3", None, True])
    def test_invalid_keep(self, keep):
        """Test non-positive or non-integer counts are rejected."""
        with pytest.raises(InvalidConfiguration):
            validate_keep(keep)

    def test_valid_keep(self):
        """Test positive integers pass through."""
        assert validate_keep(1) == 1

    def test_manager_rejects_invalid_keep(self, backup_dir):
        """Test RetentionManager validates keep before touching anything."""
        with pytest.raises(InvalidConfiguration):
            RetentionManager('proj', backup_dir, 0)


class TestListSnapshots:
    """Test listing complete snapshots."""

    def test_newest_first(self, backup_dir, make_snapshot):
        """Test snapshots are sorted newest first."""
        make_snapshot(backup_dir, 'proj', _at(10))
        make_snapshot(backup_dir, 'proj', _at(12))
        make_snapshot(backup_dir, 'proj', _at(11))

        ids = [s.snapshot_id for s in list_snapshots('proj', backup_dir)]

        assert ids == ['proj_20240115_120000', 'proj_20240115_110000', 'proj_20240115_100000']

    def test_sequence_breaks_ties(self, backup_dir, make_snapshot):
        """Test same-second snapshots are ordered by their suffix."""
        make_snapshot(backup_dir, 'proj', _at(12))
        make_snapshot(backup_dir, 'proj', _at(12), sequence=2)
        make_snapshot(backup_dir, 'proj', _at(12), sequence=1)

        ids = [s.snapshot_id for s in list_snapshots('proj', backup_dir)]

        assert ids == ['proj_20240115_120000_2', 'proj_20240115_120000_1', 'proj_20240115_120000']

    def test_archive_without_manifest_ignored(self, backup_dir, make_snapshot):
        """Test an archive without manifest is not a snapshot."""
        make_snapshot(backup_dir, 'proj', _at(10))
        make_snapshot(backup_dir, 'proj', _at(11), manifest=False)

        ids = [s.snapshot_id for s in list_snapshots('proj', backup_dir)]

        assert ids == ['proj_20240115_100000']

    def test_corrupt_manifest_ignored(self, backup_dir, make_snapshot):
        """Test an archive whose manifest is unreadable is not a snapshot."""
        archive = make_snapshot(backup_dir, 'proj', _at(10))
        archive.with_name('proj_20240115_100000.manifest').write_text('{broken')

        assert list_snapshots('proj', backup_dir) == []

    def test_other_projects_ignored(self, backup_dir, make_snapshot):
        """Test archives of other projects are not listed."""
        make_snapshot(backup_dir, 'proj', _at(10))
        make_snapshot(backup_dir, 'other', _at(11))
        make_snapshot(backup_dir, 'proj_extra', _at(12))

        ids = [s.snapshot_id for s in list_snapshots('proj', backup_dir)]

        assert ids == ['proj_20240115_100000']

    def test_foreign_files_ignored(self, backup_dir, make_snapshot):
        """Test unrelated files and in-progress partials are ignored."""
        make_snapshot(backup_dir, 'proj', _at(10))
        (backup_dir / 'notes.txt').write_text('hi')
        (backup_dir / '.proj_20240115_110000.zip.partial').write_bytes(b'x')
        (backup_dir / 'subdir').mkdir()

        assert len(list_snapshots('proj', backup_dir)) == 1

    def test_missing_directory(self, tmp_path):
        """Test a destination that does not exist has no snapshots."""
        assert list_snapshots('proj', tmp_path / 'missing') == []


class TestRetentionManager:
    """Test RetentionManager.prune."""

    def test_keep_two_of_five(self, backup_dir, make_snapshot):
        """Test the three oldest of five snapshots are deleted."""
        for hour in (8, 9, 10, 11, 12):
            make_snapshot(backup_dir, 'proj', _at(hour))

        manager = RetentionManager('proj', backup_dir, 2)
        deleted = manager.prune()

        assert deleted == ['proj_20240115_100000', 'proj_20240115_090000', 'proj_20240115_080000']
        assert manager.kept == ['proj_20240115_120000', 'proj_20240115_110000']
        assert sorted(p.name for p in backup_dir.iterdir()) == [
            'proj_20240115_110000.manifest',
            'proj_20240115_110000.zip',
            'proj_20240115_120000.manifest',
            'proj_20240115_120000.zip',
        ]

    def test_fewer_than_keep(self, backup_dir, make_snapshot):
        """Test nothing is deleted when there are at most keep snapshots."""
        make_snapshot(backup_dir, 'proj', _at(10))
        make_snapshot(backup_dir, 'proj', _at(11))

        assert prune_snapshots('proj', backup_dir, 5) == []
        assert len(list(backup_dir.iterdir())) == 4

    def test_incomplete_archive_never_deleted(self, backup_dir, make_snapshot):
        """Test an old archive without manifest survives pruning."""
        incomplete = make_snapshot(backup_dir, 'proj', _at(1), manifest=False)
        for hour in (10, 11, 12):
            make_snapshot(backup_dir, 'proj', _at(hour))

        deleted = prune_snapshots('proj', backup_dir, 1)

        assert deleted == ['proj_20240115_110000', 'proj_20240115_100000']
        assert incomplete.exists()

    def test_incomplete_archive_not_counted(self, backup_dir, make_snapshot):
        """Test incomplete archives do not take a retention slot."""
        make_snapshot(backup_dir, 'proj', _at(12), manifest=False)
        make_snapshot(backup_dir, 'proj', _at(10))
        make_snapshot(backup_dir, 'proj', _at(11))

        assert prune_snapshots('proj', backup_dir, 2) == []

    def test_other_projects_untouched(self, backup_dir, make_snapshot):
        """Test pruning one project never deletes another's snapshots."""
        other = make_snapshot(backup_dir, 'other', _at(1))
        for hour in (10, 11):
            make_snapshot(backup_dir, 'proj', _at(hour))

        prune_snapshots('proj', backup_dir, 1)

        assert other.exists()

    def test_idempotent(self, backup_dir, make_snapshot):
        """Test a second prune deletes nothing."""
        for hour in (8, 9, 10):
            make_snapshot(backup_dir, 'proj', _at(hour))

        first = prune_snapshots('proj', backup_dir, 1)
        second = prune_snapshots('proj', backup_dir, 1)

        assert len(first) == 2
        assert second == []

    def test_missing_directory(self, tmp_path):
        """Test pruning a destination that does not exist is a no-op."""
        assert prune_snapshots('proj', tmp_path / 'missing', 3) == []

    def test_archive_delete_failure_keeps_snapshot_complete(self, backup_dir, make_snapshot):
        """Test a failed archive deletion leaves archive and manifest in place."""
        for hour in (10, 11):
            make_snapshot(backup_dir, 'proj', _at(hour))
        original_unlink = Path.unlink

        def failing_unlink(self, *args, **kwargs):
            if self.name == 'proj_20240115_100000.zip':
                raise PermissionError("locked")
            return original_unlink(self, *args, **kwargs)

        manager = RetentionManager('proj', backup_dir, 1)
        with patch.object(Path, 'unlink', failing_unlink):
            deleted = manager.prune()

        assert deleted == []
        assert len(manager.failures) == 1
        assert isinstance(manager.failures[0], PruneFailure)
        assert manager.failures[0].path.endswith('proj_20240115_100000.zip')
        assert (backup_dir / 'proj_20240115_100000.manifest').exists()

    def test_manifest_delete_failure_logged_and_cleaned_later(self, backup_dir, make_snapshot):
        """Test an orphaned manifest is reported, then removed on the next pass."""
        for hour in (10, 11):
            make_snapshot(backup_dir, 'proj', _at(hour))
        original_unlink = Path.unlink

        def failing_unlink(self, *args, **kwargs):
            if self.name == 'proj_20240115_100000.manifest':
                raise PermissionError("locked")
            return original_unlink(self, *args, **kwargs)

        manager = RetentionManager('proj', backup_dir, 1)
        with patch.object(Path, 'unlink', failing_unlink):
            deleted = manager.prune()

        assert deleted == ['proj_20240115_100000']
        assert manager.failures
        assert (backup_dir / 'proj_20240115_100000.manifest').exists()
        assert not (backup_dir / 'proj_20240115_100000.zip').exists()

        # Next pass removes the orphan
        prune_snapshots('proj', backup_dir, 1)
        assert not (backup_dir / 'proj_20240115_100000.manifest').exists()

    def test_listing_failure_raises(self, backup_dir):
        """Test an unreadable destination raises PruneFailure."""
        with patch('projsnap.backup.retention.list_snapshots', side_effect=PermissionError("denied")):
            with pytest.raises(PruneFailure, match="denied"):
                prune_snapshots('proj', backup_dir, 1)

    def test_logs_recorded(self, backup_dir, make_snapshot):
        """Test the manager keeps a timestamped log of its actions."""
        for hour in (10, 11):
            make_snapshot(backup_dir, 'proj', _at(hour))

        manager = RetentionManager('proj', backup_dir, 1)
        manager.prune()

        assert any('Deleted snapshot proj_20240115_100000' in line for line in manager.logs)
        assert all(line.startswith('[') for line in manager.logs)
