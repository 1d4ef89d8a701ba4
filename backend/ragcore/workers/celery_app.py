"""
Celery application instance and configuration.
"""

from datetime import timedelta

from celery import Celery

from ragcore.core.config import settings

# Create Celery application
celery_app = Celery(
    settings.APP_NAME,
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["ragcore.tasks.ingestion_tasks"],
)

# Configure Celery
celery_app.conf.update(
    task_serializer=settings.CELERY_TASK_SERIALIZER,
    result_serializer=settings.CELERY_RESULT_SERIALIZER,
    accept_content=settings.celery_accept_content_list,
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=settings.CELERY_ENABLE_UTC,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    result_expires=3600,  # 1 hour
)

# Celery Beat Schedule (Periodic Tasks)
celery_app.conf.beat_schedule = {
    'retry-failed-documents': {
        'task': 'ingestion.retry_failed_documents',
        'schedule': timedelta(minutes=settings.RETRY_FAILED_INTERVAL_MINUTES),
        'options': {'queue': 'ingestion'},
    },
}

# Task routing
celery_app.conf.task_routes = {
    'ingestion.*': {'queue': 'ingestion'},
}
