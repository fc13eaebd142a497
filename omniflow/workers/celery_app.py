"""
Celery Application Configuration
"""
from celery import Celery

from omniflow.core.config import settings

celery_app = Celery(
    "omniflow",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["omniflow.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # wait actions חוסמות עד AUTOMATION_WAIT_MAX_SECONDS: מעט מרווח מעל
    task_time_limit=settings.AUTOMATION_WAIT_MAX_SECONDS + 60,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # טיימרים של delay nodes: עמידים ל-restart
    "process-due-flow-timers": {
        "task": "omniflow.workers.tasks.process_due_flow_timers",
        "schedule": settings.FLOW_TIMER_POLL_SECONDS,
    },
    "relay-outbox-every-10-seconds": {
        "task": "omniflow.workers.tasks.relay_outbox_messages",
        "schedule": 10.0,
    },
    "cleanup-flow-timers-daily": {
        "task": "omniflow.workers.tasks.cleanup_flow_timers",
        "schedule": 86400.0,  # 24 hours
    },
}
