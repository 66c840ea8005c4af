"""
APScheduler configuration and job scheduling for Tierkeep.

Manages:
- Scheduled site backups (based on cron expressions)
- The capacity monitor (MONITOR_CRON)
- Daily retention policy enforcement
- Manual backup triggers
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from sqlalchemy.exc import SQLAlchemyError

from tierkeep import db
from tierkeep.models import BackupSite
from tierkeep.backup.errors import ConfigurationError, StorageError
from tierkeep.backup.executor import execute_backup_site
from tierkeep.backup.lifecycle import enforce_retention_policies, run_capacity_monitor
from tierkeep.backup.storage import StorageClients

logger = logging.getLogger(__name__)

MONITOR_JOB_ID = 'capacity_monitor'
RETENTION_JOB_ID = 'retention_cleanup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def _count_jobs_in_database() -> int:
    """
    Count jobs in APScheduler's persistent job store.

    Used to report scheduler health from processes that do not own the
    in-memory scheduler.

    Returns:
        Number of jobs in database, or 0 if the table is missing
    """
    try:
        from sqlalchemy import text
        result = db.session.execute(
            text("SELECT COUNT(*) FROM apscheduler_jobs")
        ).scalar()
        return result or 0
    except SQLAlchemyError:
        db.session.rollback()
        return 0


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=3)
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
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    if app.config.get('RETENTION_ENABLED', True):
        scheduler.add_job(
            func=_retention_wrapper,
            trigger=CronTrigger.from_crontab(app.config.get('RETENTION_CRON') or '0 3 * * *', timezone='UTC'),
            id=RETENTION_JOB_ID,
            name='Daily Retention Cleanup',
            replace_existing=True
        )

    if app.config.get('MONITOR_ENABLED'):
        scheduler.add_job(
            func=_monitor_wrapper,
            trigger=CronTrigger.from_crontab(app.config['MONITOR_CRON'], timezone='UTC'),
            id=MONITOR_JOB_ID,
            name='Capacity Monitor',
            replace_existing=True
        )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")

    jobs = scheduler.get_jobs()
    logger.info(f"Loaded {len(jobs)} scheduled jobs")
    for job in jobs:
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _site_job_id(site_id: int) -> str:
    return f"backup_{site_id}"


def sync_backup_sites():
    """
    Synchronize backup sites from database to scheduler.

    This function should be called:
    - After app startup
    - After creating/updating/deleting backup sites
    """
    if scheduler is None:
        return

    # One-time jobs from earlier "run now" triggers have run or missed their window
    for job in scheduler.get_jobs():
        if job.id.startswith('manual_'):
            _remove_job(job.id)

    scheduled_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith('backup_')}

    for site in BackupSite.query.all():
        job_id = _site_job_id(site.id)

        if site.enabled and site.schedule_cron:
            try:
                scheduler.add_job(
                    func=_execute_backup_wrapper,
                    args=[site.id],
                    trigger=CronTrigger.from_crontab(site.schedule_cron, timezone='UTC'),
                    id=job_id,
                    name=f"Backup: {site.name}",
                    replace_existing=True
                )
                logger.info(f"Scheduled backup site: {site.name} ({site.schedule_cron})")
            except ValueError as e:
                logger.error(f"Failed to schedule backup site {site.name}: {e}")
        elif job_id in scheduled_ids:
            _remove_job(job_id)

        scheduled_ids.discard(job_id)

    # Sites deleted from the database
    for leftover_id in scheduled_ids:
        _remove_job(leftover_id)
        logger.info(f"Removed orphaned scheduled job: {leftover_id}")


def _remove_job(job_id: str):
    try:
        scheduler.remove_job(job_id)
    except JobLookupError:
        logger.debug(f"Job already removed: {job_id}")


def _execute_backup_wrapper(site_id: int, allow_disabled: bool = False):
    """
    Run a site backup inside the app context of the stored Flask app.

    Args:
        site_id: BackupSite ID to execute
        allow_disabled: Allow execution of disabled sites (manual triggers)
    """
    with flask_app.app_context():
        try:
            clients = StorageClients.from_config(flask_app.config)
            history = execute_backup_site(site_id, clients, flask_app.config, allow_disabled=allow_disabled)
            logger.info(f"Backup site {site_id} completed with status: {history.status}")
        except (ConfigurationError, StorageError, ValueError) as e:
            logger.error(f"Scheduled backup of site {site_id} failed: {e}")


def _monitor_wrapper():
    with flask_app.app_context():
        try:
            run = run_capacity_monitor(flask_app.config)
            logger.info(f"Capacity monitor finished with status: {run.status}")
        except ConfigurationError as e:
            logger.error(f"Capacity monitor not run: {e}")


def _retention_wrapper():
    with flask_app.app_context():
        try:
            enforce_retention_policies(flask_app.config)
        except ConfigurationError as e:
            logger.error(f"Retention pass not run: {e}")


def trigger_backup_now(site_id: int):
    """
    Manually trigger a site backup immediately.

    Args:
        site_id: BackupSite ID to execute

    Raises:
        RuntimeError: If the scheduler is not initialized
        ValueError: If site not found
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    site = db.session.get(BackupSite, site_id)
    if not site:
        raise ValueError(f"Backup site not found: {site_id}")

    # One second delay so the trigger never lands in the past
    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[site_id, True],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{site_id}_{int(now.timestamp())}",
        name=f"Manual: {site.name}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup site: {site.name}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]


def is_scheduler_running() -> bool:
    """
    Check if scheduler is running.

    Falls back to the persistent job store when this process does not own
    the scheduler (e.g. a non-scheduler gunicorn worker).
    """
    if scheduler is not None and scheduler.running:
        return True
    return _count_jobs_in_database() > 0


def get_scheduler_diagnostics() -> dict:
    """
    Get detailed scheduler diagnostics for troubleshooting.

    Returns:
        Dict with scheduler state, jobs, and health info
    """
    jobs_in_db = _count_jobs_in_database()

    if scheduler is None:
        return {
            'initialized': False,
            'running': jobs_in_db > 0,
            'state': 'NOT_INITIALIZED',
            'jobs_in_database': jobs_in_db,
            'note': 'Scheduler object not available in this process'
        }

    jobs = scheduler.get_jobs()
    return {
        'initialized': True,
        'running': scheduler.running,
        'state': str(scheduler.state),
        'job_count': len(jobs),
        'jobs_in_database': jobs_in_db,
        'jobs': [
            {
                'id': job.id,
                'name': job.name,
                'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                'trigger': str(job.trigger),
                'pending': job.pending
            }
            for job in jobs
        ]
    }
