"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from freight.core.config import settings

celery_app = Celery(
    "truck_freight",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["freight.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Tehran",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "dispatch-lifecycle-events-every-10-seconds": {
        "task": "freight.workers.tasks.dispatch_lifecycle_events",
        "schedule": 10.0,
    },
    # תשלומים שנתקעו ב-PROCESSING (המשלם לא חזר מדף הבנק) - שאילתת סטטוס מול הגייטוויי
    "reconcile-processing-payments-every-5-minutes": {
        "task": "freight.workers.tasks.reconcile_processing_payments",
        "schedule": 300.0,
    },
    "cleanup-dispatched-events-daily": {
        "task": "freight.workers.tasks.cleanup_dispatched_events",
        "schedule": crontab(hour="3", minute="30"),
    },
}
