# reconciler/workers/celery_app.py
import os

from celery import Celery
from celery.schedules import crontab

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

celery = Celery(
    "reconciler",
    broker=os.getenv("CELERY_BROKER_URL", REDIS_URL),
    backend=os.getenv("CELERY_RESULT_BACKEND", REDIS_URL),
    include=["reconciler.workers.tasks"],
)

BEAT_SCHEDULE = {
    "retry-failed-payments-hourly": {
        "task": "reconciler.retry_failed_payments",
        "schedule": crontab(minute=0),
    },
    "retry-failed-events": {
        "task": "reconciler.retry_failed_events",
        "schedule": crontab(minute="*/30"),
    },
    "dunning-daily": {
        "task": "reconciler.run_dunning",
        "schedule": crontab(minute=0, hour=10),
    },
    "trial-reminders-daily": {
        "task": "reconciler.send_trial_reminders",
        "schedule": crontab(minute=0, hour=9),
    },
    "lifecycle-sweep": {
        "task": "reconciler.run_lifecycle",
        "schedule": crontab(minute="*/15"),
    },
    "subscription-sync": {
        "task": "reconciler.sync_subscriptions",
        "schedule": crontab(minute=0, hour="*/6"),
    },
}

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=900,
    task_soft_time_limit=840,
    beat_schedule=BEAT_SCHEDULE,
)


def init_celery(app):
    celery.conf.update(
        broker_url=app.config.get("CELERY_BROKER_URL", REDIS_URL),
        result_backend=app.config.get("CELERY_RESULT_BACKEND", REDIS_URL),
    )

    class ContextTask(celery.Task):
        abstract = True

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery.Task = ContextTask
    app.extensions["celery"] = celery
    return celery
