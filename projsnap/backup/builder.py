"""
Snapshot builder - stages a filtered copy of a project tree and compresses it.

Workflow:
1. Pick a unique archive name from the current UTC second
2. Walk the source tree, copying matching files into a staging directory
3. Compress the staging directory into a temporary archive, then rename it into place
4. Write the manifest (the commit signal)
5. Remove the staging directory

Any failure removes the partial archive and staging directory and raises BuildFailed.
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Set

from projsnap.errors import BuildFailed
from .compression import create_archive, format_timestamp, generate_archive_filename, parse_archive_filename, \
    strip_archive_extension, get_archive_size, CompressionError, FORMAT_EXTENSIONS
from .manifest import MANIFEST_SUFFIX, BackupManifest, manifest_path_for, sha256_for_path, write_manifest
from .patterns import PatternSet, is_excluded, matches


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Snapshot:
    """One completed point-in-time backup: archive plus committed manifest."""

    project_name: str
    created_at: datetime
    source_root: str
    archive_path: str
    manifest_path: str
    file_count: int
    empty_dir_count: int
    total_bytes: int
    archive_size: int
    checksum: Optional[str]
    patterns: PatternSet
    compression_format: str = 'zip'

    @property
    def snapshot_id(self) -> str:
        return strip_archive_extension(os.path.basename(self.archive_path))

    @property
    def entry_count(self) -> int:
        return self.file_count + self.empty_dir_count


@dataclass
class _StageStats:
    file_count: int = 0
    empty_dir_count: int = 0
    total_bytes: int = 0


def _raise_walk_error(error: OSError):
    raise error


class SnapshotBuilder:
    """
    Builds a single snapshot of a source tree into a destination directory.
    """

    def __init__(self, source_root, pattern_set: PatternSet, destination_dir, project_name: str,
                 compression_format: str = 'zip', temp_dir=None, skip_paths: Iterable = (),
                 checksum: bool = True):
        """
        Initialize snapshot builder.

        Args:
            source_root: Root of the tree to back up
            pattern_set: Include/exclude rules evaluated on root-relative paths
            destination_dir: Directory receiving archives and manifests
            project_name: Project name used in archive names
            compression_format: Archive format (see compression.FORMAT_EXTENSIONS)
            temp_dir: Parent for the staging directory (defaults to destination_dir)
            skip_paths: Extra directories never descended into (e.g. the lock directory)
            checksum: Record the archive SHA-256 in the manifest
        """
        self.source_root = Path(source_root)
        self.pattern_set = pattern_set
        self.destination_dir = Path(destination_dir)
        self.project_name = project_name
        self.compression_format = compression_format
        self.temp_dir = Path(temp_dir) if temp_dir else None
        self.skip_paths = list(skip_paths)
        self.checksum = checksum

        self.staging_dir = None
        self.archive_path = None
        self._partial_path = None
        self._manifest_written = False

    def build(self) -> Snapshot:
        """
        Build the snapshot.

        Returns:
            Snapshot describing the committed archive

        Raises:
            BuildFailed: On any I/O or compression failure; nothing is left behind
        """
        if self.compression_format not in FORMAT_EXTENSIONS:
            raise BuildFailed(f"Invalid compression format: {self.compression_format}")

        created_at = datetime.now(timezone.utc).replace(microsecond=0)

        try:
            if not self.source_root.is_dir():
                raise BuildFailed(f"Source root is not a directory: {self.source_root}")
            self.destination_dir.mkdir(parents=True, exist_ok=True)

            archive_name = self._unique_archive_name(created_at)
            self.archive_path = self.destination_dir / archive_name
            logger.info(f"Building snapshot {archive_name} from {self.source_root}")

            staging_parent = self.temp_dir or self.destination_dir
            staging_parent.mkdir(parents=True, exist_ok=True)
            self.staging_dir = Path(tempfile.mkdtemp(prefix=f'.{self.project_name}_staging_',
                                                     dir=str(staging_parent)))

            stats = self._stage()
            logger.info(
                f"Staged {stats.file_count} files, {stats.empty_dir_count} empty directories "
                f"({stats.total_bytes} bytes)"
            )

            self._compress()
            archive_size = get_archive_size(str(self.archive_path))
            checksum = sha256_for_path(self.archive_path) if self.checksum else None

            manifest = BackupManifest(
                project=self.project_name,
                created_at=created_at,
                source_path=str(self.source_root.resolve()),
                file_count=stats.file_count,
                archive=archive_name,
                directory_count=stats.empty_dir_count,
                total_bytes=stats.total_bytes,
                archive_size=archive_size,
                checksum=checksum,
                compression_format=self.compression_format,
                patterns=self.pattern_set.to_dict(),
            )
            manifest_path = manifest_path_for(self.archive_path)
            write_manifest(manifest_path, manifest)
            self._manifest_written = True

        except BuildFailed:
            self._discard_partial()
            raise
        except (OSError, CompressionError) as e:
            self._discard_partial()
            raise BuildFailed(f"Snapshot build for {self.project_name} failed: {e}") from e
        finally:
            self._remove_staging()

        logger.info(f"Snapshot committed: {self.archive_path.name} ({archive_size} bytes)")

        return Snapshot(
            project_name=self.project_name,
            created_at=created_at,
            source_root=str(self.source_root.resolve()),
            archive_path=str(self.archive_path),
            manifest_path=str(manifest_path),
            file_count=stats.file_count,
            empty_dir_count=stats.empty_dir_count,
            total_bytes=stats.total_bytes,
            archive_size=archive_size,
            checksum=checksum,
            patterns=self.pattern_set,
            compression_format=self.compression_format,
        )

    def _unique_archive_name(self, created_at: datetime) -> str:
        """
        Pick {project}_{timestamp}[_{n}] above every sequence already used in that second.

        Archives, manifests and in-progress partials all count, so a later
        build never sorts before an earlier one even after retention deleted it.
        """
        timestamp = format_timestamp(created_at)
        highest = -1
        for entry in os.listdir(self.destination_dir):
            candidate = entry.lstrip('.')
            if candidate.endswith('.partial'):
                candidate = candidate[:-len('.partial')]
            if candidate.endswith(MANIFEST_SUFFIX):
                candidate = candidate[:-len(MANIFEST_SUFFIX)] + '.zip'
            parsed = parse_archive_filename(self.project_name, candidate)
            if parsed is not None and format_timestamp(parsed[0]) == timestamp:
                highest = max(highest, parsed[1])

        return generate_archive_filename(self.project_name, self.compression_format,
                                         timestamp=timestamp, sequence=highest + 1)

    def _skip_set(self) -> Set[str]:
        skip = {os.path.realpath(self.destination_dir)}
        if self.temp_dir:
            skip.add(os.path.realpath(self.temp_dir))
        if self.staging_dir:
            skip.add(os.path.realpath(self.staging_dir))
        skip.update(os.path.realpath(p) for p in self.skip_paths)
        return skip

    def _stage(self) -> _StageStats:
        """
        Copy matching entries into the staging directory.

        Excluded directories are pruned from the walk; since exclusion of a
        directory implies exclusion of everything beneath it, this gives the
        same result as filtering every file.

        Raises:
            OSError: If the tree cannot be read or a file cannot be copied
        """
        stats = _StageStats()
        skip = self._skip_set()
        root = str(self.source_root)

        for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_walk_error, followlinks=False):
            rel_dir = Path(os.path.relpath(dirpath, root)).as_posix()
            rel_dir = '' if rel_dir == '.' else rel_dir
            source_empty = not dirnames and not filenames

            kept = []
            for name in sorted(dirnames):
                full = os.path.join(dirpath, name)
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if os.path.islink(full):
                    logger.debug(f"Skipping symlinked directory: {rel}")
                    continue
                if os.path.realpath(full) in skip:
                    continue
                if is_excluded(rel, self.pattern_set, is_dir=True):
                    continue
                kept.append(name)
            dirnames[:] = kept

            for name in sorted(filenames):
                full = os.path.join(dirpath, name)
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if not matches(rel, self.pattern_set):
                    continue
                if os.path.islink(full) and not os.path.exists(full):
                    logger.warning(f"Skipping dangling symlink: {rel}")
                    continue
                if not os.path.isfile(full):
                    logger.debug(f"Skipping non-regular file: {rel}")
                    continue

                dest = self.staging_dir / rel
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(full, dest)
                stats.file_count += 1
                stats.total_bytes += dest.stat().st_size

            if source_empty and rel_dir and matches(rel_dir, self.pattern_set, is_dir=True):
                (self.staging_dir / rel_dir).mkdir(parents=True, exist_ok=True)
                stats.empty_dir_count += 1

        return stats

    def _compress(self):
        """Write the archive under a dot-prefixed temporary name, then rename it into place."""
        self._partial_path = self.destination_dir / f".{self.archive_path.name}.partial"
        create_archive(str(self.staging_dir), str(self._partial_path), self.compression_format)
        os.replace(self._partial_path, self.archive_path)
        self._partial_path = None

    def _discard_partial(self):
        for path in (self._partial_path, None if self._manifest_written else self.archive_path):
            if path is not None and os.path.exists(path):
                try:
                    os.remove(path)
                    logger.info(f"Removed incomplete archive {path}")
                except OSError as e:
                    logger.error(f"Failed to remove incomplete archive {path}: {e}")

    def _remove_staging(self):
        if self.staging_dir and self.staging_dir.exists():
            try:
                shutil.rmtree(self.staging_dir)
            except OSError as e:
                logger.warning(f"Failed to cleanup staging directory {self.staging_dir}: {e}")
        self.staging_dir = None


def build_snapshot(source_root, pattern_set: PatternSet, destination_dir, project_name: str,
                   **kwargs) -> Snapshot:
    """
    Build a snapshot of source_root into destination_dir.

    See SnapshotBuilder for keyword arguments.

    Raises:
        BuildFailed: If the build fails for any reason
    """
    builder = SnapshotBuilder(source_root, pattern_set, destination_dir, project_name, **kwargs)
    return builder.build()
