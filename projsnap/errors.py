"""
Exception hierarchy shared by the backup pipeline and the lock manager.

Configuration and lock errors are raised straight to the caller; nothing in
this package retries them internally.
"""


class ProjsnapError(Exception):
    """Base class for all projsnap errors."""
    pass


class InvalidConfiguration(ProjsnapError):
    """Raised when configuration is invalid, before any filesystem mutation."""
    pass


class InvalidPattern(InvalidConfiguration):
    """Raised when a glob pattern cannot be compiled into a PatternRule."""
    pass


class LockError(ProjsnapError):
    """Base class for lock manager failures."""
    pass


class LockTimeout(LockError):
    """Raised when a lock could not be acquired before the deadline."""

    def __init__(self, resource_id: str, timeout: float, holder: str = None):
        message = f"Timed out after {timeout:.2f}s waiting for lock on {resource_id}"
        if holder:
            message += f" (held by {holder})"
        super().__init__(message)
        self.resource_id = resource_id
        self.timeout = timeout
        self.holder = holder


class NotOwner(LockError):
    """Raised when releasing a lock whose marker belongs to someone else."""

    def __init__(self, resource_id: str, holder: str, current_holder: str = None):
        if current_holder:
            message = f"Lock on {resource_id} is held by {current_holder}, not {holder}"
        else:
            message = f"Lock on {resource_id} is not held by {holder}"
        super().__init__(message)
        self.resource_id = resource_id
        self.holder = holder
        self.current_holder = current_holder


class BackupError(ProjsnapError):
    """Base class for backup pipeline failures."""
    pass


class BuildInProgress(BackupError):
    """Raised when another build of the same project holds the build lock."""
    pass


class BuildFailed(BackupError):
    """Raised when staging, compression or manifest writing fails."""
    pass


class PruneFailure(BackupError):
    """Raised (or recorded) when retention cleanup cannot complete a deletion."""

    def __init__(self, message: str, path: str = None):
        super().__init__(message)
        self.path = path


class RestoreError(BackupError):
    """Raised when a snapshot cannot be verified or extracted."""
    pass
