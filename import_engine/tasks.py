"""
Celery tasks for the import engine.
"""

import logging

from celery import shared_task

import worker  # noqa: F401  (configures the Celery app shared_task binds to)
from import_engine.importer import run_job

logger = logging.getLogger(__name__)


@shared_task(bind=True, name="import_engine.process_import_job")
def process_import_job(self, job_id, run_token):
    """
    Run an import job from its checkpoint until it completes, fails,
    or is paused/cancelled.
    """
    logger.info(f"Worker picked up import job {job_id} (run {run_token})")
    status = run_job(job_id, run_token)
    return {"job_id": job_id, "status": status}


def enqueue(job_id: int, run_token: str) -> None:
    """Hand a run to the worker pool (inline when no broker is configured)."""
    process_import_job.delay(job_id, run_token)
