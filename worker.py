"""
Celery configuration for the import worker.

Start a worker with:  celery -A worker worker --loglevel=info
"""

from celery import Celery

import config

celery_app = Celery("marketplace_import", include=["import_engine.tasks"])

celery_app.conf.update(
    broker_url=config.REDIS_URL or "memory://",
    result_backend=config.REDIS_URL or None,
    accept_content=["json"],
    task_serializer="json",
    result_serializer="json",
    # A job is only acknowledged once its run returns, so a worker
    # crash hands the message to another worker.
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

# Task will run synchronously if Redis is not available
celery_app.conf.task_always_eager = not config.REDIS_URL
