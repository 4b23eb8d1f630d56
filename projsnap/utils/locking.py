"""
Cooperative file locking across processes.

Each logical resource (usually a file path or "build:<project>") is guarded by
a marker file in a lock directory. Exclusivity comes from atomic
create-if-absent (O_CREAT | O_EXCL); the protected resource itself is never
touched. Contenders poll with bounded exponential backoff until their timeout.

A marker whose holder exceeded the staleness threshold may be reclaimed.
Removing a marker, whether by release or reclaim, happens under a short-lived
guard file ({marker}.guard, also created with O_EXCL): the remover re-reads
the marker and deletes it only if it is still the acquisition it checked.
Markers are never moved, so the resource is never briefly unlocked while its
rightful holder still has it. Creators back off while a guard exists, and a
guard abandoned by a crashed process is removed after GUARD_STALE_AFTER.
"""

import atexit
import hashlib
import json
import logging
import os
import re
import socket
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from projsnap.errors import LockTimeout, NotOwner


logger = logging.getLogger(__name__)

MARKER_SUFFIX = '.lock'
GUARD_SUFFIX = '.guard'

# Seconds
GUARD_STALE_AFTER = 5.0
GUARD_POLL_INTERVAL = 0.005


@dataclass(frozen=True)
class LockRecord:
    """An exclusive claim on a resource, as written in its marker."""

    resource_id: str
    holder: str
    lock_id: str
    acquired_at: float
    """Wall-clock seconds since the epoch."""
    stale_after: Optional[float] = None
    marker_path: Optional[str] = None
    pid: Optional[int] = None
    hostname: Optional[str] = None

    @property
    def acquired_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.acquired_at, tz=timezone.utc)

    def to_dict(self) -> dict:
        return {
            'resource_id': self.resource_id,
            'holder': self.holder,
            'lock_id': self.lock_id,
            'acquired_at': self.acquired_at,
            'stale_after': self.stale_after,
            'pid': self.pid,
            'hostname': self.hostname,
        }

    @classmethod
    def from_dict(cls, data: dict, marker_path: Optional[str] = None) -> 'LockRecord':
        return cls(
            resource_id=str(data['resource_id']),
            holder=str(data['holder']),
            lock_id=str(data['lock_id']),
            acquired_at=float(data['acquired_at']),
            stale_after=float(data['stale_after']) if data.get('stale_after') is not None else None,
            marker_path=marker_path,
            pid=data.get('pid'),
            hostname=data.get('hostname'),
        )

    def same_acquisition(self, other: Optional['LockRecord']) -> bool:
        return other is not None and self.holder == other.holder and self.lock_id == other.lock_id


# Process-wide holder identity and the locks this process currently holds.
_identity_lock = threading.Lock()
_holder_token = None
_holder_pid = None
_held: Dict[str, tuple] = {}


def process_holder() -> str:
    """
    Return the holder token identifying this process.

    Format: {hostname}:{pid}:{random}. A new token is generated after fork.
    """
    global _holder_token, _holder_pid

    with _identity_lock:
        pid = os.getpid()
        if _holder_token is None or _holder_pid != pid:
            _holder_token = f"{socket.gethostname()}:{pid}:{uuid.uuid4().hex[:12]}"
            _holder_pid = pid
            _held.clear()
        return _holder_token


def _track(manager: 'LockManager', record: LockRecord):
    with _identity_lock:
        _held[record.lock_id] = (manager, record)


def _untrack(record: LockRecord):
    with _identity_lock:
        _held.pop(record.lock_id, None)


def held_locks() -> List[LockRecord]:
    """Locks acquired by this process and not yet released."""
    with _identity_lock:
        return [record for _, record in _held.values()]


def release_all_held() -> int:
    """
    Release every lock this process still holds.

    Registered with atexit so that a normally exiting process never leaves
    markers behind.

    Returns:
        Number of locks released
    """
    with _identity_lock:
        if _holder_pid != os.getpid():
            return 0
        entries = list(_held.values())

    released = 0
    for manager, record in entries:
        try:
            manager.release(record)
            released += 1
        except NotOwner as e:
            logger.warning(f"Lock {record.resource_id} was no longer ours at exit: {e}")
        except OSError as e:
            logger.error(f"Failed to release lock {record.resource_id} at exit: {e}")
    return released


atexit.register(release_all_held)


class LockManager:
    """
    Exclusive, timeout-bounded, process-identified locks on named resources.
    """

    def __init__(self, lock_dir, stale_after: Optional[float] = None,
                 poll_interval: float = 0.05, max_poll_interval: float = 1.0):
        """
        Initialize lock manager.

        Args:
            lock_dir: Directory holding marker files (created on first acquire)
            stale_after: Default staleness threshold in seconds (None = never stale)
            poll_interval: Initial sleep between acquisition attempts
            max_poll_interval: Upper bound for the backoff sleep
        """
        self.lock_dir = Path(lock_dir)
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self.max_poll_interval = max_poll_interval

    def marker_path(self, resource_id: str) -> Path:
        """Map a resource id to its marker file (readable prefix + hash)."""
        safe = re.sub(r'[^A-Za-z0-9._-]+', '_', resource_id).strip('._')[:64] or 'resource'
        digest = hashlib.sha1(resource_id.encode('utf8')).hexdigest()[:12]
        return self.lock_dir / f"{safe}-{digest}{MARKER_SUFFIX}"

    def acquire(self, resource_id: str, holder: Optional[str] = None, timeout: float = 0.0,
                stale_after: Optional[float] = None) -> LockRecord:
        """
        Acquire an exclusive lock, polling until timeout.

        Args:
            resource_id: Logical resource to lock
            holder: Holder identity (defaults to process_holder())
            timeout: Seconds to keep retrying; 0 means a single attempt
            stale_after: Staleness threshold recorded in the marker
                (defaults to the manager's threshold). When judging an existing
                marker, the threshold its holder recorded takes precedence, so a
                shorter caller threshold does not shorten someone else's lock.

        Returns:
            LockRecord for the new acquisition

        Raises:
            LockTimeout: If the lock is still held when timeout elapses
            OSError: If the lock directory cannot be created or written
        """
        holder = holder or process_holder()
        if stale_after is None:
            stale_after = self.stale_after

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        marker = self.marker_path(resource_id)
        deadline = time.monotonic() + max(timeout, 0.0)
        interval = self.poll_interval

        while True:
            record = self._try_create(marker, resource_id, holder, stale_after)
            if record is not None:
                _track(self, record)
                logger.debug(f"Acquired lock {resource_id} as {holder}")
                return record

            current = self._read_marker(marker)
            if current is not None:
                threshold = current.stale_after if current.stale_after is not None else stale_after
                if self.is_stale(current, threshold=threshold) and self._reclaim(marker, current):
                    # Retry immediately; another contender may still win the create
                    continue
            elif not self._guard_busy(marker):
                # Released between our create attempt and the read
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockTimeout(resource_id, timeout, current.holder if current else None)

            time.sleep(min(interval, remaining))
            interval = min(interval * 2, self.max_poll_interval)

    def release(self, record: LockRecord) -> None:
        """
        Release a lock previously returned by acquire.

        Raises:
            NotOwner: If the marker is gone or belongs to another acquisition;
                the marker is left untouched in that case
        """
        marker = Path(record.marker_path) if record.marker_path else self.marker_path(record.resource_id)

        with self._guarded(marker):
            current = self._read_marker(marker)
            owned = record.same_acquisition(current)
            if owned:
                marker.unlink()

        _untrack(record)
        if not owned:
            raise NotOwner(record.resource_id, record.holder, current.holder if current else None)
        logger.debug(f"Released lock {record.resource_id} held by {record.holder}")

    def is_stale(self, record: LockRecord, now: Optional[float] = None,
                 threshold: Optional[float] = None) -> bool:
        """
        Check whether a lock has outlived its staleness threshold.

        Args:
            record: Lock to check
            now: Wall-clock time (defaults to time.time())
            threshold: Seconds after acquisition at which the lock becomes stale
                (defaults to the record's own threshold, then the manager's)

        Returns:
            True when now - acquired_at >= threshold
        """
        if threshold is None:
            threshold = record.stale_after if record.stale_after is not None else self.stale_after
        if threshold is None:
            return False
        now = time.time() if now is None else now
        return now - record.acquired_at >= threshold

    def read(self, resource_id: str) -> Optional[LockRecord]:
        """Return the current lock on a resource, or None if unlocked."""
        return self._read_marker(self.marker_path(resource_id))

    def list_locks(self) -> List[LockRecord]:
        """Return all readable markers in the lock directory."""
        if not self.lock_dir.exists():
            return []
        records = []
        for marker in sorted(self.lock_dir.glob(f"*{MARKER_SUFFIX}")):
            record = self._read_marker(marker)
            if record is not None:
                records.append(record)
        return records

    @contextmanager
    def lock(self, resource_id: str, holder: Optional[str] = None, timeout: float = 0.0,
             stale_after: Optional[float] = None) -> Iterator[LockRecord]:
        """Context manager that acquires a lock and always releases it."""
        record = self.acquire(resource_id, holder=holder, timeout=timeout, stale_after=stale_after)
        try:
            yield record
        finally:
            self.release(record)

    def _try_create(self, marker: Path, resource_id: str, holder: str,
                    stale_after: Optional[float]) -> Optional[LockRecord]:
        record = LockRecord(
            resource_id=resource_id,
            holder=holder,
            lock_id=uuid.uuid4().hex,
            acquired_at=time.time(),
            stale_after=stale_after,
            marker_path=str(marker),
            pid=os.getpid(),
            hostname=socket.gethostname(),
        )
        if self._guard_busy(marker):
            return None

        try:
            fd = os.open(str(marker), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return None

        try:
            with os.fdopen(fd, 'w', encoding='utf8') as handle:
                json.dump(record.to_dict(), handle)
                handle.flush()
                os.fsync(handle.fileno())
        except BaseException:
            marker.unlink()
            raise
        return record

    def _read_marker(self, marker: Path) -> Optional[LockRecord]:
        try:
            with open(marker, 'r', encoding='utf8') as handle:
                data = json.load(handle)
            return LockRecord.from_dict(data, marker_path=str(marker))
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError) as e:
            # Marker is being written, or is corrupt
            logger.debug(f"Unreadable lock marker {marker}: {e}")
            return self._unreadable_record(marker)

    def _unreadable_record(self, marker: Path) -> Optional[LockRecord]:
        """
        Describe an unreadable marker by its mtime so it can still go stale.

        A marker is unreadable for a moment while its creator writes it; a
        marker that stays unreadable past the threshold is reclaimable.
        """
        try:
            mtime = marker.stat().st_mtime
        except FileNotFoundError:
            return None
        return LockRecord(
            resource_id='',
            holder='<unreadable>',
            lock_id=f"mtime:{mtime}",
            acquired_at=mtime,
            stale_after=None,
            marker_path=str(marker),
        )

    def _guard_path(self, marker: Path) -> Path:
        return marker.with_name(f"{marker.name}{GUARD_SUFFIX}")

    def _guard_busy(self, marker: Path) -> bool:
        """
        Check for a live guard on a marker, removing an abandoned one.

        Returns:
            True while another manager is checking or removing the marker
        """
        guard = self._guard_path(marker)
        try:
            mtime = guard.stat().st_mtime
        except FileNotFoundError:
            return False
        if time.time() - mtime < GUARD_STALE_AFTER:
            return True

        logger.warning(f"Removing abandoned lock guard {guard}")
        try:
            guard.unlink()
        except FileNotFoundError:
            logger.debug(f"Abandoned lock guard {guard} already removed")
        return False

    @contextmanager
    def _guarded(self, marker: Path) -> Iterator[None]:
        """
        Hold the marker's guard while reading, checking and removing it.

        Releasers and reclaimers take the guard, so a marker is only ever
        removed by the manager that just verified its owner.
        """
        guard = self._guard_path(marker)
        while True:
            try:
                fd = os.open(str(guard), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                break
            except FileExistsError:
                if self._guard_busy(marker):
                    time.sleep(GUARD_POLL_INTERVAL)
        os.close(fd)

        try:
            yield
        finally:
            try:
                guard.unlink()
            except FileNotFoundError:
                logger.warning(f"Lock guard {guard} was removed while held")

    def _reclaim(self, marker: Path, stale: LockRecord) -> bool:
        """
        Remove a stale marker if it still belongs to the same stale acquisition.

        Returns:
            True if the marker is gone (removed here or released meanwhile)
        """
        with self._guarded(marker):
            current = self._read_marker(marker)
            if current is None:
                return True
            if not stale.same_acquisition(current):
                return False
            marker.unlink()

        logger.warning(
            f"Reclaimed stale lock on {stale.resource_id or marker.name} "
            f"held by {stale.holder} since {stale.acquired_at:.0f}"
        )
        return True
