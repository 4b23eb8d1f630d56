"""
Shared pytest fixtures for projsnap tests.

This module provides fixtures for:
- A small project tree with files that default excludes should drop
- Backup configurations and lock managers on temporary directories
- Mock fixtures for external services (S3, APScheduler)
- Helpers for writing snapshots by hand
"""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from projsnap.config import BackupConfig
from projsnap.backup.manifest import BackupManifest, write_manifest
from projsnap.backup.patterns import PatternSet
from projsnap.utils.locking import LockManager


@pytest.fixture
def project_tree(tmp_path):
    """
    Create a project source tree.

    Creates:
    - README.md
    - src/app.py
    - src/util/helpers.py
    - src/__pycache__/app.cpython-311.pyc (excluded by defaults)
    - .git/HEAD (excluded by defaults)
    - build/output.bin
    - docs/empty/ (empty directory)
    """
    root = tmp_path / 'project'
    (root / 'src' / 'util').mkdir(parents=True)
    (root / 'src' / '__pycache__').mkdir()
    (root / '.git').mkdir()
    (root / 'build').mkdir()
    (root / 'docs' / 'empty').mkdir(parents=True)

    (root / 'README.md').write_text('# Project\n')
    (root / 'src' / 'app.py').write_text('print("hello")\n')
    (root / 'src' / 'util' / 'helpers.py').write_text('def helper():\n    return 1\n')
    (root / 'src' / '__pycache__' / 'app.cpython-311.pyc').write_bytes(b'\x00compiled')
    (root / '.git' / 'HEAD').write_text('ref: refs/heads/main\n')
    (root / 'build' / 'output.bin').write_bytes(b'\x01' * 128)

    return root


@pytest.fixture
def backup_dir(tmp_path):
    """Destination directory for snapshots."""
    path = tmp_path / 'backups'
    path.mkdir()
    return path


@pytest.fixture
def backup_config(project_tree, backup_dir):
    """
    BackupConfig for project_tree with default excludes, keep=3.
    """
    return BackupConfig(
        source_root=project_tree,
        destination_dir=backup_dir,
        project_name='proj',
        patterns=PatternSet.with_defaults(),
        keep=3,
        lock_timeout=0.0,
        stale_after=3600.0,
    )


@pytest.fixture
def lock_manager(tmp_path):
    """LockManager on a private lock directory with fast polling."""
    return LockManager(tmp_path / 'locks', stale_after=3600.0, poll_interval=0.01, max_poll_interval=0.05)


@pytest.fixture
def make_snapshot():
    """
    Factory writing a fake complete snapshot (archive + manifest) by hand.

    Usage: make_snapshot(directory, 'proj', datetime(...), sequence=0, manifest=True)
    """

    def _make(directory: Path, project: str, created_at: datetime, sequence: int = 0,
              manifest: bool = True, extension: str = 'zip') -> Path:
        stem = f"{project}_{created_at.strftime('%Y%m%d_%H%M%S')}"
        if sequence:
            stem += f"_{sequence}"
        archive = Path(directory) / f"{stem}.{extension}"
        archive.write_bytes(b'archive ' + stem.encode())

        if manifest:
            write_manifest(Path(directory) / f"{stem}.manifest", BackupManifest(
                project=project,
                created_at=created_at.replace(tzinfo=created_at.tzinfo or timezone.utc),
                source_path='/src',
                file_count=1,
                archive=archive.name,
                archive_size=archive.stat().st_size,
            ))
        return archive

    return _make


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    import projsnap.scheduler as scheduler_module

    scheduler_module.stop_scheduler()
    with patch('projsnap.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance

    scheduler_module.scheduler = None
    scheduler_module._registered.clear()
