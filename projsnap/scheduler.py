"""
APScheduler configuration and job scheduling for projsnap.

Manages:
- Scheduled backup jobs (based on cron expressions)
- Daily retention policy enforcement
- Manual job triggers
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError

from projsnap.config import Config
from projsnap.errors import BuildInProgress, InvalidConfiguration, ProjsnapError
from projsnap.backup.executor import run_backup, run_prune


logger = logging.getLogger(__name__)

# Global scheduler instance and registered projects
scheduler = None
scheduler_config = Config
_registered = {}


def init_scheduler(config=Config):
    """
    Initialize and configure APScheduler.

    Args:
        config: Configuration class (SCHEDULER_TIMEZONE, SCHEDULER_MAX_WORKERS)
    """
    global scheduler, scheduler_config

    if scheduler is not None:
        return scheduler

    scheduler_config = config

    jobstores = {
        'default': MemoryJobStore()
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=config.SCHEDULER_MAX_WORKERS)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=config.SCHEDULER_TIMEZONE
    )

    # Add retention policy job (runs daily at 2 AM)
    scheduler.add_job(
        func=enforce_retention_policies,
        trigger=CronTrigger(hour=2, minute=0, timezone=config.SCHEDULER_TIMEZONE),
        id='retention_cleanup',
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Raises:
        RuntimeError: If init_scheduler() has not been called
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        jobs = scheduler.get_jobs()
        for job in jobs:
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler and forget it, so init_scheduler() starts fresh."""
    global scheduler

    if scheduler is not None:
        if scheduler.running:
            scheduler.shutdown()
            logger.info("APScheduler stopped")
        scheduler = None
    _registered.clear()


def _job_id(project_name: str) -> str:
    return f"backup_{project_name}"


def schedule_backup(backup_config, cron: str, remote_sink=None) -> str:
    """
    Schedule recurring backups of a project.

    Args:
        backup_config: BackupConfig for the project
        cron: Five-field crontab expression
        remote_sink: Optional remote sink for each run

    Returns:
        Scheduler job id

    Raises:
        RuntimeError: If the scheduler is not initialized
        InvalidConfiguration: If the configuration or cron expression is invalid
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    backup_config.validate()
    try:
        trigger = CronTrigger.from_crontab(cron, timezone=scheduler_config.SCHEDULER_TIMEZONE)
    except ValueError as e:
        raise InvalidConfiguration(f"Invalid cron expression {cron!r}: {e}")

    project_name = backup_config.project_name
    _registered[project_name] = (backup_config, remote_sink)

    job_id = _job_id(project_name)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[project_name],
        trigger=trigger,
        id=job_id,
        name=f"Backup: {project_name}",
        replace_existing=True
    )

    logger.info(f"Scheduled backup job: {project_name} ({cron})")
    return job_id


def unschedule_backup(project_name: str) -> bool:
    """
    Remove a project's recurring backup.

    Returns:
        True if a job was removed
    """
    _registered.pop(project_name, None)
    if scheduler is None:
        return False

    try:
        scheduler.remove_job(_job_id(project_name))
    except JobLookupError:
        return False

    logger.info(f"Removed scheduled backup job: {project_name}")
    return True


def _execute_backup_wrapper(project_name: str):
    """
    Run one backup in scheduler context.

    Failures are logged; the next trigger is the retry.
    """
    entry = _registered.get(project_name)
    if entry is None:
        logger.warning(f"Scheduled backup for unknown project: {project_name}")
        return None

    backup_config, remote_sink = entry
    try:
        logger.info(f"Scheduler executing backup: {project_name}")
        snapshot = run_backup(backup_config, remote_sink=remote_sink)
        logger.info(f"Scheduled backup {project_name} completed: {snapshot.snapshot_id}")
        return snapshot
    except BuildInProgress as e:
        logger.warning(f"Scheduled backup {project_name} skipped: {e}")
    except ProjsnapError as e:
        logger.error(f"Scheduled backup {project_name} failed: {e}")
    return None


def enforce_retention_policies():
    """Enforce retention for every registered project."""
    for project_name, (backup_config, _) in list(_registered.items()):
        try:
            deleted = run_prune(backup_config)
            if deleted:
                logger.info(f"Retention removed {len(deleted)} snapshot(s) of {project_name}")
        except ProjsnapError as e:
            logger.error(f"Retention enforcement for {project_name} failed: {e}")


def trigger_backup_now(project_name: str) -> str:
    """
    Manually trigger a scheduled project's backup immediately.

    Returns:
        Id of the one-off job

    Raises:
        RuntimeError: If the scheduler is not initialized
        ValueError: If the project is not scheduled
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    if project_name not in _registered:
        raise ValueError(f"Backup job not found: {project_name}")

    # 1 second delay to avoid racing the scheduler's own wakeup
    now = datetime.now(timezone.utc)
    job_id = f"manual_{project_name}_{int(now.timestamp())}"
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[project_name],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name=f"Manual: {project_name}",
        replace_existing=True
    )

    logger.info(f"Manually triggered backup job: {project_name}")
    return job_id


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    """Check if scheduler is running."""
    return scheduler is not None and scheduler.running
