import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from projsnap.errors import InvalidConfiguration
from projsnap.backup.compression import FORMAT_EXTENSIONS
from projsnap.backup.patterns import PatternSet
from projsnap.backup.retention import validate_keep


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    try:
        return float(value)
    except ValueError:
        raise InvalidConfiguration(f"{name} must be a number, got {value!r}")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise InvalidConfiguration(f"{name} must be an integer, got {value!r}")


class Config:
    """Base configuration"""

    # Retention
    DEFAULT_KEEP = _env_int('PROJSNAP_KEEP', 5)

    # Locking (seconds)
    LOCK_TIMEOUT = _env_float('PROJSNAP_LOCK_TIMEOUT', 10.0)
    STALE_AFTER = _env_float('PROJSNAP_STALE_AFTER', 6 * 60 * 60)
    LOCK_POLL_INTERVAL = 0.05
    LOCK_MAX_POLL_INTERVAL = 1.0

    # Archives
    COMPRESSION_FORMAT = os.environ.get('PROJSNAP_COMPRESSION') or 'zip'
    CHECKSUM = os.environ.get('PROJSNAP_CHECKSUM', 'true').lower() == 'true'

    # Staging (None = inside the destination directory)
    TEMP_DIR = os.environ.get('PROJSNAP_TEMP_DIR') or None

    # Logging
    DEBUG = False
    LOG_DIR = os.environ.get('PROJSNAP_LOG_DIR') or os.path.join(os.path.expanduser('~'), '.projsnap', 'logs')

    # Remote sink
    S3_BUCKET = os.environ.get('PROJSNAP_S3_BUCKET')
    S3_REGION = os.environ.get('PROJSNAP_S3_REGION') or 'us-east-1'
    S3_ENDPOINT_URL = os.environ.get('PROJSNAP_S3_ENDPOINT_URL')

    # Scheduler
    SCHEDULER_TIMEZONE = os.environ.get('PROJSNAP_SCHEDULER_TIMEZONE') or 'UTC'
    SCHEDULER_MAX_WORKERS = 3


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Keep logs next to the checkout during development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    LOG_DIR = os.path.join(BASE_DIR, 'data', 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(name: Optional[str] = None):
    """
    Select a configuration class.

    Args:
        name: 'development', 'production' or None for PROJSNAP_ENV / default

    Raises:
        InvalidConfiguration: If the name is unknown
    """
    name = name or os.environ.get('PROJSNAP_ENV') or 'default'
    try:
        return config[name]
    except KeyError:
        raise InvalidConfiguration(f"Unknown configuration {name!r}. Valid options: {list(config.keys())}")


@dataclass(frozen=True)
class BackupConfig:
    """Everything one backup run of one project needs."""

    source_root: Path
    destination_dir: Path
    project_name: str
    patterns: PatternSet = field(default_factory=PatternSet.with_defaults)
    keep: int = Config.DEFAULT_KEEP
    lock_timeout: float = Config.LOCK_TIMEOUT
    stale_after: float = Config.STALE_AFTER
    compression_format: str = Config.COMPRESSION_FORMAT
    lock_dir: Optional[Path] = None
    temp_dir: Optional[Path] = None
    checksum: bool = Config.CHECKSUM

    def __post_init__(self):
        object.__setattr__(self, 'source_root', Path(self.source_root))
        object.__setattr__(self, 'destination_dir', Path(self.destination_dir))
        if self.lock_dir is not None:
            object.__setattr__(self, 'lock_dir', Path(self.lock_dir))
        if self.temp_dir is not None:
            object.__setattr__(self, 'temp_dir', Path(self.temp_dir))

    @property
    def effective_lock_dir(self) -> Path:
        return self.lock_dir or (self.destination_dir / '.locks')

    @property
    def build_resource_id(self) -> str:
        return f"build:{self.project_name}"

    def validate(self) -> 'BackupConfig':
        """
        Check the configuration without touching the filesystem.

        Returns:
            self, for chaining

        Raises:
            InvalidConfiguration: On the first problem found
        """
        validate_project_name(self.project_name)
        validate_keep(self.keep)

        if not isinstance(self.patterns, PatternSet):
            raise InvalidConfiguration("patterns must be a PatternSet")
        if self.compression_format not in FORMAT_EXTENSIONS:
            raise InvalidConfiguration(
                f"Invalid compression format: {self.compression_format}. "
                f"Valid options: {list(FORMAT_EXTENSIONS.keys())}"
            )
        if self.lock_timeout < 0:
            raise InvalidConfiguration(f"lock_timeout must be >= 0, got {self.lock_timeout}")
        if self.stale_after <= 0:
            raise InvalidConfiguration(f"stale_after must be > 0, got {self.stale_after}")

        source = self.source_root
        if not source.is_dir():
            raise InvalidConfiguration(f"Source root is not a readable directory: {source}")
        if not os.access(source, os.R_OK | os.X_OK):
            raise InvalidConfiguration(f"Source root is not readable: {source}")

        if os.path.realpath(source) == os.path.realpath(self.destination_dir):
            raise InvalidConfiguration("Destination directory must differ from the source root")
        if self.destination_dir.exists() and not self.destination_dir.is_dir():
            raise InvalidConfiguration(f"Destination is not a directory: {self.destination_dir}")

        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any], defaults=None) -> 'BackupConfig':
        """
        Build a BackupConfig from a plain mapping (e.g. a parsed JSON file).

        Recognized keys: source_root, destination_dir, project_name, include,
        exclude, use_default_excludes, keep, lock_timeout, stale_after,
        compression_format, lock_dir, temp_dir, checksum.

        Args:
            data: Mapping with the keys above
            defaults: Config class supplying defaults (defaults to get_config())

        Raises:
            InvalidConfiguration: If required keys are missing or values are malformed
        """
        defaults = defaults or get_config()
        if not isinstance(data, dict):
            raise InvalidConfiguration("Backup configuration must be an object")

        missing = [k for k in ('source_root', 'destination_dir', 'project_name') if not data.get(k)]
        if missing:
            raise InvalidConfiguration(f"Missing required configuration keys: {missing}")

        include = data.get('include') or []
        exclude = data.get('exclude') or []
        if data.get('use_default_excludes', True):
            patterns = PatternSet.with_defaults(include, exclude)
        else:
            patterns = PatternSet.from_lists(include, exclude)

        try:
            keep = data.get('keep', defaults.DEFAULT_KEEP)
            lock_timeout = float(data.get('lock_timeout', defaults.LOCK_TIMEOUT))
            stale_after = float(data.get('stale_after', defaults.STALE_AFTER))
        except (TypeError, ValueError) as e:
            raise InvalidConfiguration(f"Invalid numeric configuration value: {e}")

        return cls(
            source_root=Path(data['source_root']).expanduser(),
            destination_dir=Path(data['destination_dir']).expanduser(),
            project_name=str(data['project_name']),
            patterns=patterns,
            keep=keep,
            lock_timeout=lock_timeout,
            stale_after=stale_after,
            compression_format=data.get('compression_format', defaults.COMPRESSION_FORMAT),
            lock_dir=Path(data['lock_dir']).expanduser() if data.get('lock_dir') else None,
            temp_dir=Path(data['temp_dir']).expanduser() if data.get('temp_dir') else defaults.TEMP_DIR,
            checksum=bool(data.get('checksum', defaults.CHECKSUM)),
        )


def validate_project_name(name) -> str:
    """
    Project names end up in file names: letters, digits, '.', '-' and '_' only.

    Raises:
        InvalidConfiguration: If the name is empty or contains other characters
    """
    if not isinstance(name, str) or not name:
        raise InvalidConfiguration("Project name must be a non-empty string")
    if name.startswith('.') or not all(c.isalnum() or c in '._-' for c in name):
        raise InvalidConfiguration(
            f"Invalid project name {name!r}: use letters, digits, '.', '-' and '_' (not leading '.')"
        )
    return name
