"""
APScheduler configuration and job scheduling for Strongbox.

Manages:
- Scheduled backup models (based on each model's cron `schedule`)
- Daily retention policy enforcement
"""

import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from strongbox.backup.errors import BackupError
from strongbox.backup.executor import execute_model, load_app_policy
from strongbox.backup.policy import Policy
from strongbox.backup.retention import enforce_retention_policies
from strongbox.config import retry_settings

logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

RETENTION_JOB_ID = 'retention_cleanup'


def _job_id(model_name: str) -> str:
    return f"backup_{model_name}"


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

    # Configure job stores and executors
    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=3)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a model at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    # Create scheduler
    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    # Add retention policy job (runs daily, 2 AM UTC by default)
    scheduler.add_job(
        func=_enforce_retention_wrapper,
        trigger=CronTrigger(hour=app.config.get('RETENTION_CRON_HOUR', 2), minute=0),
        id=RETENTION_JOB_ID,
        name='Daily Retention Cleanup',
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

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started successfully (state={scheduler.state})")

        # Log currently scheduled jobs
        jobs = scheduler.get_jobs()
        if jobs:
            logger.info(f"Loaded {len(jobs)} scheduled jobs:")
            for job in jobs:
                next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
                logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
        else:
            logger.info("No scheduled jobs loaded")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def reset_scheduler():
    """Drop the global scheduler so init_scheduler() builds a fresh one."""
    global scheduler, flask_app

    stop_scheduler()
    scheduler = None
    flask_app = None


def sync_model_schedules(policy: Policy):
    """
    Synchronize model schedules from the policy to the scheduler.

    Models with a `schedule` are added or rescheduled; jobs for models that
    no longer exist or lost their schedule are removed.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    scheduled_job_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith('backup_')}

    for model in policy:
        job_id = _job_id(model.name)

        if model.schedule:
            if job_id in scheduled_job_ids:
                _update_scheduled_model(model.name, model.schedule)
                scheduled_job_ids.remove(job_id)
            else:
                _add_scheduled_model(model.name, model.schedule)
        elif job_id in scheduled_job_ids:
            _remove_scheduled_model(model.name)
            scheduled_job_ids.remove(job_id)

    # Remove any leftover scheduled jobs that don't exist in the policy
    for leftover_id in scheduled_job_ids:
        try:
            scheduler.remove_job(leftover_id)
            logger.info(f"Removed orphaned scheduled job: {leftover_id}")
        except JobLookupError:
            pass


def _add_scheduled_model(model_name: str, schedule: str):
    """
    Add a backup model to the scheduler.

    Args:
        model_name: Model name
        schedule: Crontab expression
    """
    try:
        trigger = CronTrigger.from_crontab(schedule, timezone='UTC')
    except ValueError as e:
        logger.error(f"Failed to schedule model {model_name}: invalid schedule {schedule!r}: {e}")
        return

    scheduler.add_job(
        func=_execute_model_wrapper,
        args=[model_name],
        trigger=trigger,
        id=_job_id(model_name),
        name=f"Backup: {model_name}",
        replace_existing=True
    )
    logger.info(f"Scheduled backup model: {model_name} ({schedule})")


def _update_scheduled_model(model_name: str, schedule: str):
    """
    Update a scheduled backup model.

    Args:
        model_name: Model name
        schedule: Crontab expression
    """
    job = scheduler.get_job(_job_id(model_name))
    if not job:
        return

    try:
        new_trigger = CronTrigger.from_crontab(schedule, timezone='UTC')
    except ValueError as e:
        logger.error(f"Failed to update model {model_name}: invalid schedule {schedule!r}: {e}")
        return

    job.reschedule(trigger=new_trigger)
    logger.info(f"Updated scheduled backup model: {model_name}")


def _remove_scheduled_model(model_name: str):
    """
    Remove a backup model from the scheduler.

    Args:
        model_name: Model name
    """
    try:
        scheduler.remove_job(_job_id(model_name))
        logger.info(f"Removed scheduled backup model: {model_name}")
    except JobLookupError:
        logger.warning(f"No scheduled job for model {model_name}")


def _execute_model_wrapper(model_name: str):
    """
    Wrapper function for executing backup models in scheduler context.

    The policy is reloaded for every run so edits take effect without a
    restart.

    Args:
        model_name: Name of the model to execute
    """
    # Execute within app context using stored Flask app reference
    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing backup model: {model_name}")
            run = execute_model(model_name)
            logger.info(f"Backup model {model_name} completed with status: {run.status}")
        except BackupError as e:
            logger.error(f"Scheduler backup model {model_name} failed: {e}")


def _enforce_retention_wrapper():
    """Daily retention sweep in app context."""
    with flask_app.app_context():
        try:
            summary = enforce_retention_policies(load_app_policy(), retry_settings(flask_app.config))
            logger.info(
                f"Retention sweep: {summary['deleted']} set(s) deleted, {len(summary['errors'])} error(s)"
            )
        except BackupError as e:
            logger.error(f"Retention sweep failed: {e}")


def is_scheduler_running() -> bool:
    """
    Check if scheduler is running.

    Returns:
        True if the in-process scheduler is running
    """
    return scheduler is not None and scheduler.running
