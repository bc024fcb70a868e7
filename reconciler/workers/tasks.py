import threading
from dataclasses import asdict
from datetime import datetime

from celery.signals import worker_shutting_down
from celery.utils.log import get_task_logger

from reconciler.billing.dunning import run_dunning_pass, run_trial_reminder_pass
from reconciler.billing.lifecycle import run_lifecycle_pass
from reconciler.billing.retry_scheduler import run_retry_pass
from reconciler.billing.sync import run_subscription_sync
from reconciler.webhooks import dispatcher
from reconciler.workers.celery_app import celery

logger = get_task_logger(__name__)

_shutting_down = threading.Event()


@worker_shutting_down.connect
def _on_worker_shutdown(sig=None, how=None, exitcode=None, **kwargs):
    logger.info("Worker shutting down, sweeps stop after the current row")
    _shutting_down.set()


def should_stop():
    return _shutting_down.is_set()


@celery.task(name="reconciler.process_inbound_event")
def process_inbound_event(event_id):
    outcome = dispatcher.dispatch_by_id(event_id)
    return outcome.state if outcome else None


@celery.task(name="reconciler.retry_failed_payments")
def retry_failed_payments():
    return asdict(run_retry_pass(datetime.utcnow(), should_stop=should_stop))


@celery.task(name="reconciler.retry_failed_events")
def retry_failed_events():
    return asdict(dispatcher.retry_failed(datetime.utcnow(), should_stop=should_stop))


@celery.task(name="reconciler.run_dunning")
def run_dunning():
    return asdict(run_dunning_pass(datetime.utcnow(), should_stop=should_stop))


@celery.task(name="reconciler.send_trial_reminders")
def send_trial_reminders():
    return asdict(run_trial_reminder_pass(datetime.utcnow(), should_stop=should_stop))


@celery.task(name="reconciler.run_lifecycle")
def run_lifecycle():
    return asdict(run_lifecycle_pass(datetime.utcnow(), should_stop=should_stop))


@celery.task(name="reconciler.sync_subscriptions")
def sync_subscriptions():
    return asdict(run_subscription_sync(datetime.utcnow(), should_stop=should_stop))
