"""Shared utilities: cross-process file locking."""

from .locking import LockManager, LockRecord, process_holder

__all__ = [
    'LockManager',
    'LockRecord',
    'process_holder'
]
