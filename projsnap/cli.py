"""
Command line interface for projsnap.

Sub-commands: backup, prune, list, verify, restore, locks, remote, schedule.
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import NoReturn, Optional, Sequence

from projsnap import __version__, configure_logging
from projsnap.config import BackupConfig, get_config
from projsnap.errors import InvalidConfiguration, ProjsnapError, RestoreError
from projsnap.backup.compression import FORMAT_EXTENSIONS
from projsnap.backup.executor import prune_remote, run_backup, run_prune
from projsnap.backup.restore import restore_snapshot, verify_snapshot
from projsnap.backup.retention import list_snapshots
from projsnap.backup.storage import LocalStorage, S3Storage, StorageError
from projsnap.utils.locking import LockManager


__all__ = [
    'script_entrypoint',
    'script_main',
    'api_entrypoint'
]

logger = logging.getLogger(__name__)

# Process exit codes.
EXIT_CODE_SUCCESS = 0
EXIT_CODE_INVALID_ARGUMENTS = 1
EXIT_CODE_GENERAL_ERROR = 2


class CommandArgumentError(Exception):
    """Raised when the command line arguments are invalid."""

    def __init__(self, message: str, usage: str):
        super().__init__(message)
        self.message = message
        self.usage = usage


class ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises instead of exiting the process."""

    def error(self, message: str) -> NoReturn:
        raise CommandArgumentError(f'{self.prog}: error: {message}', self.format_usage())


def script_entrypoint() -> NoReturn:
    """Process-level entrypoint: run with sys.argv and exit with the resulting code."""
    sys.exit(script_main(sys.argv[1:]))


def script_main(arguments: Sequence[str]) -> int:
    """
    Run the CLI and map failures to exit codes.

    Args:
        arguments: Command line arguments without the program name

    Returns:
        Process exit code
    """
    try:
        api_entrypoint(arguments)
        return EXIT_CODE_SUCCESS
    except CommandArgumentError as e:
        print(e.usage, file=sys.stderr)
        print(e.message, file=sys.stderr)
        return EXIT_CODE_INVALID_ARGUMENTS
    except InvalidConfiguration as e:
        print(f'ERROR: {e}', file=sys.stderr)
        return EXIT_CODE_INVALID_ARGUMENTS
    except (ProjsnapError, StorageError) as e:
        print(f'ERROR: {e}', file=sys.stderr)
        return EXIT_CODE_GENERAL_ERROR


def api_entrypoint(arguments: Sequence[str]) -> None:
    """
    Parse arguments and run the selected command.

    Raises:
        CommandArgumentError: If the arguments are invalid
        ProjsnapError: If the command fails
    """
    args = get_argument_parser().parse_args(list(arguments))

    settings = get_config(args.env)
    configure_logging(settings, log_to_file=not args.no_log_file)
    if args.verbose:
        logging.getLogger('projsnap').setLevel(logging.DEBUG)

    args.handler(args, settings)


def get_argument_parser() -> argparse.ArgumentParser:
    """Creates the command line argument parser with one subparser per command."""
    common = ArgumentParser(add_help=False)
    common.add_argument('-c', '--config', type=Path, help='JSON file with the backup configuration')
    common.add_argument('-p', '--project', help='project name')
    common.add_argument('-s', '--source', type=Path, help='project source directory')
    common.add_argument('-d', '--dest', type=Path, help='destination directory for snapshots')
    common.add_argument('--keep', type=int, help='number of snapshots to retain')
    common.add_argument('--lock-timeout', type=float, help='seconds to wait for the build lock')
    common.add_argument('--stale-after', type=float, help='seconds after which a lock is stale')
    common.add_argument('--lock-dir', type=Path, help='directory holding lock markers')

    parser = ArgumentParser('projsnap', description='Project snapshot backups with retention.')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--env', choices=['development', 'production'], help='configuration profile')
    parser.add_argument('-v', '--verbose', action='store_true', help='debug logging')
    parser.add_argument('--no-log-file', action='store_true', help='log to the console only')
    subparsers = parser.add_subparsers(title='commands', dest='command', required=True,
                                       parser_class=ArgumentParser)

    backup = subparsers.add_parser('backup', parents=[common], help='build a snapshot and enforce retention')
    backup.add_argument('-i', '--include', action='append', default=[], help='include pattern (repeatable)')
    backup.add_argument('-x', '--exclude', action='append', default=[], help='exclude pattern (repeatable)')
    backup.add_argument('--no-default-excludes', action='store_true', help='do not add the built-in excludes')
    backup.add_argument('--format', choices=list(FORMAT_EXTENSIONS), help='archive format')
    backup.add_argument('--s3-bucket', help='also upload the archive to this S3 bucket')
    backup.add_argument('--mirror', type=Path, help='also copy the archive into this directory')
    backup.set_defaults(handler=cmd_backup)

    prune = subparsers.add_parser('prune', parents=[common], help='enforce retention only')
    prune.set_defaults(handler=cmd_prune)

    listing = subparsers.add_parser('list', parents=[common], help='list complete snapshots')
    listing.add_argument('--json', action='store_true', help='machine readable output')
    listing.set_defaults(handler=cmd_list)

    verify = subparsers.add_parser('verify', parents=[common], help='check archives against manifests')
    verify.add_argument('--snapshot', help='snapshot id (default: all)')
    verify.set_defaults(handler=cmd_verify)

    restore = subparsers.add_parser('restore', parents=[common], help='extract a snapshot')
    restore.add_argument('target', type=Path, help='directory to extract into')
    restore.add_argument('--snapshot', help='snapshot id (default: newest)')
    restore.add_argument('--no-verify', action='store_true', help='skip checksum verification')
    restore.set_defaults(handler=cmd_restore)

    locks = subparsers.add_parser('locks', parents=[common], help='show lock markers')
    locks.set_defaults(handler=cmd_locks)

    remote = subparsers.add_parser('remote', parents=[common], help='check, list or prune the remote mirror')
    remote.add_argument('action', choices=['check', 'list', 'prune'], help='what to do with the mirror')
    remote.add_argument('--s3-bucket', help='S3 bucket holding the mirror')
    remote.add_argument('--mirror', type=Path, help='directory holding the mirror')
    remote.set_defaults(handler=cmd_remote)

    schedule = subparsers.add_parser('schedule', parents=[common], help='run scheduled backups in the foreground')
    schedule.add_argument('--cron', required=True, help='crontab expression, e.g. "0 3 * * *"')
    schedule.add_argument('-i', '--include', action='append', default=[], help='include pattern (repeatable)')
    schedule.add_argument('-x', '--exclude', action='append', default=[], help='exclude pattern (repeatable)')
    schedule.add_argument('--no-default-excludes', action='store_true', help='do not add the built-in excludes')
    schedule.add_argument('--format', choices=list(FORMAT_EXTENSIONS), help='archive format')
    schedule.add_argument('--s3-bucket', help='also upload each archive to this S3 bucket')
    schedule.add_argument('--mirror', type=Path, help='also copy each archive into this directory')
    schedule.add_argument('--run-now', action='store_true', help='also run one backup right after starting')
    schedule.set_defaults(handler=cmd_schedule)

    return parser


def build_backup_config(args, settings) -> BackupConfig:
    """
    Merge a JSON config file (if given) with command line overrides.

    Raises:
        InvalidConfiguration: If the file is unreadable or required values are missing
    """
    data = {}
    if args.config is not None:
        try:
            with open(args.config, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise InvalidConfiguration(f"Cannot read configuration file {args.config}: {e}")
        if not isinstance(data, dict):
            raise InvalidConfiguration(f"Configuration file {args.config} must contain an object")

    overrides = {
        'project_name': args.project,
        'source_root': args.source,
        'destination_dir': args.dest,
        'keep': args.keep,
        'lock_timeout': args.lock_timeout,
        'stale_after': args.stale_after,
        'lock_dir': args.lock_dir,
        'compression_format': getattr(args, 'format', None),
    }
    for key, value in overrides.items():
        if value is not None:
            data[key] = str(value) if isinstance(value, Path) else value

    if getattr(args, 'include', None):
        data['include'] = list(data.get('include') or []) + args.include
    if getattr(args, 'exclude', None):
        data['exclude'] = list(data.get('exclude') or []) + args.exclude
    if getattr(args, 'no_default_excludes', False):
        data['use_default_excludes'] = False

    # Commands other than backup never read the source tree
    if args.handler not in (cmd_backup, cmd_schedule):
        data.setdefault('source_root', '.')

    return BackupConfig.from_dict(data, defaults=settings)


def build_remote_sink(args, settings):
    """Return the remote sink selected on the command line, if any."""
    mirror = getattr(args, 'mirror', None)
    bucket = getattr(args, 's3_bucket', None) or settings.S3_BUCKET
    if mirror is not None and getattr(args, 's3_bucket', None):
        raise InvalidConfiguration("Use either --s3-bucket or --mirror, not both")
    if mirror is not None:
        return LocalStorage(str(mirror))
    if bucket:
        return S3Storage(bucket, region=settings.S3_REGION, endpoint_url=settings.S3_ENDPOINT_URL)
    return None


def cmd_backup(args, settings):
    backup_config = build_backup_config(args, settings)
    snapshot = run_backup(backup_config, remote_sink=build_remote_sink(args, settings))
    print(f"{snapshot.snapshot_id}\t{snapshot.entry_count} entries\t{snapshot.archive_size} bytes")


def cmd_prune(args, settings):
    backup_config = build_backup_config(args, settings)
    deleted = run_prune(backup_config)
    for snapshot_id in deleted:
        print(f"deleted {snapshot_id}")
    if not deleted:
        print("nothing to prune")


def cmd_list(args, settings):
    backup_config = build_backup_config(args, settings)
    snapshots = list_snapshots(backup_config.project_name, backup_config.destination_dir)

    if args.json:
        print(json.dumps([
            {
                'id': s.snapshot_id,
                'archive': str(s.archive_path),
                'created_at': s.created_at.isoformat(),
                'file_count': s.manifest.file_count,
                'archive_size': s.manifest.archive_size,
            }
            for s in snapshots
        ], indent=2))
        return

    for s in snapshots:
        print(f"{s.snapshot_id}\t{s.created_at.isoformat()}\t{s.manifest.file_count} files\t"
              f"{s.manifest.archive_size} bytes")


def _select(snapshots, snapshot_id: Optional[str]):
    if snapshot_id is None:
        return snapshots
    selected = [s for s in snapshots if s.snapshot_id == snapshot_id]
    if not selected:
        raise RestoreError(f"No complete snapshot with id {snapshot_id}")
    return selected


def cmd_verify(args, settings):
    backup_config = build_backup_config(args, settings)
    snapshots = _select(list_snapshots(backup_config.project_name, backup_config.destination_dir), args.snapshot)

    failures = 0
    for s in snapshots:
        try:
            verify_snapshot(s)
            print(f"OK\t{s.snapshot_id}")
        except RestoreError as e:
            failures += 1
            print(f"FAILED\t{s.snapshot_id}\t{e}")

    if failures:
        raise RestoreError(f"{failures} of {len(snapshots)} snapshot(s) failed verification")


def cmd_restore(args, settings):
    backup_config = build_backup_config(args, settings)
    snapshots = list_snapshots(backup_config.project_name, backup_config.destination_dir)
    if not snapshots:
        raise RestoreError(f"No complete snapshots of {backup_config.project_name} in {backup_config.destination_dir}")

    chosen = _select(snapshots, args.snapshot)[0]
    count = restore_snapshot(chosen.archive_path, args.target, verify=not args.no_verify)
    print(f"restored {count} files from {chosen.snapshot_id} into {args.target}")


def cmd_locks(args, settings):
    backup_config = build_backup_config(args, settings)
    manager = LockManager(backup_config.effective_lock_dir, stale_after=backup_config.stale_after)
    now = time.time()

    records = manager.list_locks()
    if not records:
        print("no locks held")
    for record in records:
        state = 'stale' if manager.is_stale(record, now=now) else 'held'
        print(f"{record.resource_id}\t{state}\t{record.holder}\t{now - record.acquired_at:.0f}s")


def cmd_remote(args, settings):
    backup_config = build_backup_config(args, settings)
    sink = build_remote_sink(args, settings)
    if sink is None:
        raise InvalidConfiguration("No remote mirror configured: use --s3-bucket or --mirror")

    if args.action == 'check':
        sink.test_connection()
        print("remote mirror reachable")
    elif args.action == 'list':
        for obj in sink.list_objects(f"{backup_config.project_name}/"):
            print(f"{obj['Key']}\t{obj['LastModified'].isoformat()}\t{obj['Size']} bytes")
    else:
        deleted = prune_remote(backup_config, sink)
        for key in deleted:
            print(f"deleted {key}")
        if not deleted:
            print("nothing to prune")


def cmd_schedule(args, settings):
    from projsnap import scheduler

    backup_config = build_backup_config(args, settings)
    remote_sink = build_remote_sink(args, settings)
    scheduler.init_scheduler(settings)

    try:
        scheduler.schedule_backup(backup_config, args.cron, remote_sink=remote_sink)
        scheduler.start_scheduler()
        for job in scheduler.get_scheduled_jobs():
            print(f"{job['id']}\t{job['name']}\tnext run: {job['next_run'] or 'N/A'}")
        if args.run_now:
            scheduler.trigger_backup_now(backup_config.project_name)

        while scheduler.is_scheduler_running():
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping scheduler")
    finally:
        scheduler.stop_scheduler()
