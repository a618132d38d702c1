"""
APScheduler Configuration

Background job scheduler for the order backend. The only recurring job is
the pending-payment sweeper, which re-arms payment polls from the orders
table so polling survives restarts.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from app.config import settings

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE
)


def start_scheduler(registry):
    """
    Start the background job scheduler.

    Args:
        registry: PaymentPollingRegistry the sweeper re-arms polls on
    """
    if not scheduler.running:
        from app.jobs.payment_jobs import sweep_pending_payments

        # Re-arm polls for unpaid orders every 10 minutes by default
        scheduler.add_job(
            sweep_pending_payments,
            'interval',
            minutes=settings.PAYMENT_SWEEP_INTERVAL_MINUTES,
            args=[registry],
            id='sweep_pending_payments',
            name='Sweep Pending Payments',
            replace_existing=True,
        )

        scheduler.start()
        logger.info("Background job scheduler started")

        # Log all scheduled jobs
        jobs = scheduler.get_jobs()
        for job in jobs:
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
