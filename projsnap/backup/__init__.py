"""
Backup module for projsnap.

This module handles the core backup functionality including:
- Include/exclude pattern matching
- Snapshot building (staging, compression, manifests)
- Remote sinks (S3 and local mirror)
- Execution orchestration
- Retention policy enforcement
- Verification and restore
"""

from .patterns import PatternRule, PatternSet, is_excluded, matches
from .builder import Snapshot, SnapshotBuilder, build_snapshot
from .compression import create_archive
from .storage import S3Storage, LocalStorage, remote_key_for
from .retention import RetentionManager, SnapshotInfo, list_snapshots, prune_snapshots
from .executor import BackupExecutor, prune_remote, run_backup, run_prune
from .restore import restore_snapshot, verify_snapshot

__all__ = [
    'PatternRule',
    'PatternSet',
    'is_excluded',
    'matches',
    'Snapshot',
    'SnapshotBuilder',
    'build_snapshot',
    'create_archive',
    'S3Storage',
    'LocalStorage',
    'remote_key_for',
    'RetentionManager',
    'SnapshotInfo',
    'list_snapshots',
    'prune_snapshots',
    'BackupExecutor',
    'run_backup',
    'run_prune',
    'prune_remote',
    'restore_snapshot',
    'verify_snapshot'
]
