"""
Unit tests for snapshot verification and restore (projsnap/backup/restore.py).
"""

import tarfile
import zipfile
from pathlib import Path

import pytest

from projsnap.errors import RestoreError
from projsnap.backup.builder import build_snapshot
from projsnap.backup.manifest import manifest_path_for
from projsnap.backup.patterns import PatternSet
from projsnap.backup.restore import restore_latest, restore_snapshot, verify_snapshot
from projsnap.backup.retention import list_snapshots


@pytest.fixture
def snapshot(project_tree, backup_dir):
    return build_snapshot(project_tree, PatternSet.with_defaults(), backup_dir, 'proj')


class TestVerifySnapshot:
    """Test verify_snapshot function."""

    def test_verify_intact(self, snapshot, backup_dir):
        """Test an untouched snapshot verifies."""
        info = list_snapshots('proj', backup_dir)[0]

        verify_snapshot(info)

    def test_verify_detects_corruption(self, snapshot, backup_dir):
        """Test a modified archive fails verification."""
        info = list_snapshots('proj', backup_dir)[0]
        data = bytearray(Path(snapshot.archive_path).read_bytes())
        data[10] ^= 0xFF
        Path(snapshot.archive_path).write_bytes(bytes(data))

        with pytest.raises(RestoreError, match="Checksum mismatch"):
            verify_snapshot(info)

    def test_verify_detects_truncation(self, snapshot, backup_dir):
        """Test a truncated archive fails on size."""
        info = list_snapshots('proj', backup_dir)[0]
        Path(snapshot.archive_path).write_bytes(b'short')

        with pytest.raises(RestoreError, match="Size mismatch"):
            verify_snapshot(info)

    def test_verify_missing_archive(self, snapshot, backup_dir):
        """Test an archive deleted after listing fails verification."""
        info = list_snapshots('proj', backup_dir)[0]
        Path(snapshot.archive_path).unlink()

        with pytest.raises(RestoreError, match="Archive missing"):
            verify_snapshot(info)


class TestRestoreSnapshot:
    """Test restore_snapshot function."""

    def test_restore_round_trip(self, snapshot, project_tree, tmp_path):
        """Test restored files match the source."""
        target = tmp_path / 'restored'

        count = restore_snapshot(snapshot.archive_path, target)

        assert count == snapshot.file_count
        assert (target / 'src' / 'app.py').read_text() == (project_tree / 'src' / 'app.py').read_text()
        assert (target / 'docs' / 'empty').is_dir()
        assert not (target / '.git').exists()

    def test_restore_tar(self, project_tree, backup_dir, tmp_path):
        """Test tar.gz snapshots restore too."""
        snapshot = build_snapshot(project_tree, PatternSet.with_defaults(), backup_dir, 'proj',
                                  compression_format='tar.gz')

        count = restore_snapshot(snapshot.archive_path, tmp_path / 'restored')

        assert count == snapshot.file_count
        assert (tmp_path / 'restored' / 'build' / 'output.bin').read_bytes() == b'\x01' * 128

    def test_restore_refuses_incomplete(self, snapshot, tmp_path):
        """Test an archive without manifest is not restored."""
        manifest_path_for(snapshot.archive_path).unlink()

        with pytest.raises(RestoreError, match="incomplete"):
            restore_snapshot(snapshot.archive_path, tmp_path / 'restored')

        assert not (tmp_path / 'restored').exists()

    def test_restore_refuses_corrupt_archive(self, snapshot, tmp_path):
        """Test a corrupt archive is rejected before extraction."""
        Path(snapshot.archive_path).write_bytes(b'garbage')

        with pytest.raises(RestoreError):
            restore_snapshot(snapshot.archive_path, tmp_path / 'restored')

    def test_restore_without_verify_reports_bad_zip(self, snapshot, tmp_path):
        """Test extraction errors surface as RestoreError."""
        Path(snapshot.archive_path).write_bytes(b'garbage')

        with pytest.raises(RestoreError, match="Failed to extract"):
            restore_snapshot(snapshot.archive_path, tmp_path / 'restored', verify=False)

    def test_restore_blocks_path_escape(self, snapshot, tmp_path):
        """Test members escaping the destination are rejected."""
        with zipfile.ZipFile(snapshot.archive_path, 'w') as zipf:
            zipf.writestr('../evil.txt', 'pwned')

        with pytest.raises(RestoreError, match="escapes"):
            restore_snapshot(snapshot.archive_path, tmp_path / 'restored', verify=False)

        assert not (tmp_path / 'evil.txt').exists()

    def test_restore_blocks_tar_links(self, project_tree, backup_dir, tmp_path):
        """Test link members in tar archives are rejected."""
        snapshot = build_snapshot(project_tree, PatternSet.with_defaults(), backup_dir, 'proj',
                                  compression_format='tar.gz')
        with tarfile.open(snapshot.archive_path, 'w:gz') as tar:
            info = tarfile.TarInfo('link')
            info.type = tarfile.SYMTYPE
            info.linkname = '/etc/passwd'
            tar.addfile(info)

        with pytest.raises(RestoreError, match="link"):
            restore_snapshot(snapshot.archive_path, tmp_path / 'restored', verify=False)


class TestRestoreLatest:
    """Test restore_latest function."""

    def test_restore_latest(self, snapshot, backup_dir, tmp_path):
        """Test the newest complete snapshot is restored."""
        count = restore_latest('proj', backup_dir, tmp_path / 'restored')

        assert count == snapshot.file_count

    def test_restore_latest_none(self, backup_dir, tmp_path):
        """Test restoring with no snapshots raises RestoreError."""
        with pytest.raises(RestoreError, match="No complete snapshots"):
            restore_latest('proj', backup_dir, tmp_path / 'restored')
