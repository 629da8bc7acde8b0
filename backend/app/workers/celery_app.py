"""
Celery app dos lembretes de billing e dos emails transacionais.

Beat agenda as varreduras de lembrete; os emails chegam via .delay() do
NotificationService apos o commit da transicao.
"""
import logging

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from celery.signals import worker_process_shutdown

from app.core.config import settings

logger = logging.getLogger(__name__)

REMINDER_INTERVAL_SECONDS = settings.REMINDER_CHECK_MINUTES * 60

celery_app = Celery(
    "queueflow",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "app.workers.tasks.email_tasks",
        "app.workers.tasks.billing_tasks",
    ],
)

celery_app.conf.update(
    accept_content=["json"],
    task_serializer="json",
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    broker_connection_retry_on_startup=True,
    # Lembrete so e marcado como enviado dentro da task; reentrega e segura.
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,
    result_expires=3600,
    beat_schedule_filename="/tmp/celerybeat-schedule",
    beat_schedule={
        "send-trial-expiration-reminders": {
            "task": "app.workers.tasks.billing_tasks.send_trial_expiration_reminders",
            "schedule": REMINDER_INTERVAL_SECONDS,
        },
        "send-renewal-reminders": {
            "task": "app.workers.tasks.billing_tasks.send_renewal_reminders",
            "schedule": REMINDER_INTERVAL_SECONDS,
        },
    },
)

# Mappers precisam estar todos registrados antes da primeira task.
import app.models  # noqa: F401, E402


@celery_setup_logging.connect
def _configure_worker_logging(**_kwargs) -> None:
    # Connecting this signal stops Celery from installing its own handlers.
    from app.core.logging_config import setup_logging

    setup_logging(force=True)


@worker_process_shutdown.connect
def _dispose_engine(**_kwargs) -> None:
    from app.core.database_sync import dispose_sync_engine

    dispose_sync_engine()
    logger.info("worker_shutdown: sync engine disposed")
