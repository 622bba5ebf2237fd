"""Celery application instance shared across the backend.

Start a worker (with the due-call sweep) with:
    celery -A app.celery_app worker -B -Q scheduler -l info --concurrency=2
"""

from celery import Celery

from app.utils.log import configure_logging
from config import settings

BROKER_URL = settings.REDIS_URL

configure_logging()

celery_app = Celery("call_scheduler", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_default_retry_delay = 30  # seconds
celery_app.conf.worker_hijack_root_logger = False
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]

# Redis redelivers unacked messages after the visibility timeout; it must
# outlast the longest eta (MAX_DELAY_MINUTES) or every wake arrives twice.
celery_app.conf.broker_transport_options = {
    "visibility_timeout": max(3600, settings.MAX_DELAY_MINUTES * 60 * 2),
}

celery_app.conf.task_routes = {
    "app.workers.scheduler.on_wake": {"queue": "scheduler"},
    "app.workers.scheduler.dispatch_due": {"queue": "scheduler"},
}

# Beat schedule: re-deliver wakes for overdue PENDING calls every minute
celery_app.conf.beat_schedule = {
    "dispatch-due-calls": {
        "task": "app.workers.scheduler.dispatch_due",
        "schedule": 60.0,
    }
}

# --- Ensure tasks are registered ---
import app.workers.scheduler
