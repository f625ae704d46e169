"""
background jobs: outbox polling, tranche auto-transit sweep, outbox retention.

APScheduler's max_instances=1 keeps one run per job at a time, the relay's
own guard covers manual calls racing the scheduled one.
"""
import logging

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from config import settings
from tranche_db import auto_transit_released

logger = logging.getLogger(__name__)

job_defaults = {
    "coalesce": True,  # Combine multiple pending executions into one
    "max_instances": 1,  # Only one instance of each job at a time
    "misfire_grace_time": 60,
}


def poll_outbox(runtime):
    try:
        return runtime.relay.process_pending()
    except Exception as e:
        logger.error(f"outbox poll failed: {e}")


def sweep_tranches(runtime):
    try:
        return auto_transit_released(runtime.store)
    except Exception as e:
        logger.error(f"tranche sweep failed: {e}")


def purge_outbox(runtime):
    try:
        return runtime.relay.purge_processed(settings.OUTBOX_RETENTION_DAYS)
    except Exception as e:
        logger.error(f"outbox retention failed: {e}")


def build_scheduler(runtime) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(
        jobstores={"default": MemoryJobStore()},
        job_defaults=job_defaults,
        timezone="UTC",
    )
    scheduler.add_job(
        poll_outbox,
        "interval",
        seconds=settings.OUTBOX_POLL_SECONDS,
        args=[runtime],
        id="poll_outbox",
        name="Outbox relay",
        replace_existing=True,
    )
    scheduler.add_job(
        sweep_tranches,
        "interval",
        minutes=settings.TRANCHE_SWEEP_MINUTES,
        args=[runtime],
        id="sweep_tranches",
        name="Tranche auto-transit",
        replace_existing=True,
    )
    scheduler.add_job(
        purge_outbox,
        "interval",
        hours=settings.OUTBOX_CLEANUP_HOURS,
        args=[runtime],
        id="purge_outbox",
        name="Outbox retention",
        replace_existing=True,
    )
    return scheduler


def start_scheduler(scheduler: BackgroundScheduler):
    if not scheduler.running:
        scheduler.start()
        for job in scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler(scheduler: BackgroundScheduler):
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")


def get_job_status(scheduler: BackgroundScheduler):
    return [
        {
            "id": job.id,
            "name": job.name,
            "next_run_time": str(job.next_run_time) if getattr(job, "next_run_time", None) else None,
            "trigger": str(job.trigger),
        }
        for job in scheduler.get_jobs()
    ]
