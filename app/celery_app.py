"""Celery application instance shared across the backend.

Start a delivery worker with:
    celery -A app.celery_app worker -Q sms,scan -l info --concurrency=5
Start the scanner tick with:
    celery -A app.celery_app beat -l info
"""

from celery import Celery

from config import settings

BROKER_URL = settings.REDIS_URL

celery_app = Celery("sms_nudges", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings: at-least-once delivery, a job is only acked after it ran
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.worker_concurrency = settings.SMS_WORKER_CONCURRENCY
celery_app.conf.task_default_retry_delay = settings.SMS_RETRY_BASE_DELAY  # seconds
celery_app.conf.result_expires = settings.SMS_COMPLETED_RETENTION
celery_app.conf.broker_transport_options = {
    "visibility_timeout": settings.BROKER_VISIBILITY_TIMEOUT,
}
celery_app.conf.timezone = "UTC"

celery_app.conf.task_routes = {
    "app.workers.notification.deliver": {"queue": "sms"},
    "app.workers.notification.scan_due": {"queue": "scan"},
    "app.workers.notification.purge_dead_letters": {"queue": "scan"},
}

# Beat schedule: scan for due nudges every minute, purge expired dead letters hourly
celery_app.conf.beat_schedule = {
    "scan-due-nudges": {
        "task": "app.workers.notification.scan_due",
        "schedule": settings.SMS_SCAN_INTERVAL,
    },
    "purge-dead-letters": {
        "task": "app.workers.notification.purge_dead_letters",
        "schedule": 3600.0,
    },
}

# --- Ensure tasks are registered ---
import app.workers.notification  # noqa: E402,F401
