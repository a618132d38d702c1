"""
Background Jobs Module

Handles scheduled tasks for:
- Pending payment sweeps (re-arming payment polls)
"""

from app.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler
from app.jobs.payment_jobs import sweep_pending_payments

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "sweep_pending_payments",
]
