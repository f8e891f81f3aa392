"""Celery application for background matching work.

Broker and result backend come from settings (Redis by default). With
CELERY_TASK_ALWAYS_EAGER the tasks run inline in the calling process.
"""

from celery import Celery

from config import settings

celery_app = Celery(
    "wholesale_matcher",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["workers.matching_worker"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)
