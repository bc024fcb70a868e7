import json
from datetime import datetime

import pytest

from helpers import make_event
from reconciler.models import ProcessingState
from reconciler.webhooks.store import EventStore
from reconciler.workers import tasks
from reconciler.workers.celery_app import BEAT_SCHEDULE, celery


@pytest.fixture()
def shutdown_flag():
    yield tasks._shutting_down
    tasks._shutting_down.clear()


def test_every_scheduled_task_is_registered():
    for entry in BEAT_SCHEDULE.values():
        assert entry["task"] in celery.tasks


def test_process_inbound_event(app):
    event = make_event("customer.created", {"id": "cus_1"})
    EventStore.record_if_new(event["id"], event["type"], json.dumps(event))

    assert tasks.process_inbound_event.run(event["id"]) == ProcessingState.PROCESSED
    assert tasks.process_inbound_event.run("evt_unknown") is None


def test_periodic_tasks_return_serializable_reports(app):
    for task in (
        tasks.retry_failed_payments,
        tasks.retry_failed_events,
        tasks.run_dunning,
        tasks.send_trial_reminders,
        tasks.run_lifecycle,
        tasks.sync_subscriptions,
    ):
        report = task.run()
        assert json.loads(json.dumps(report)) == report
        assert report["stopped"] is False


def test_worker_shutdown_stops_sweeps(app, make_subscription, make_failed_payment, gateway, shutdown_flag):
    make_failed_payment(make_subscription("past_due"), next_retry_at=datetime.utcnow())

    tasks._on_worker_shutdown()
    report = tasks.retry_failed_payments.run()

    assert tasks.should_stop() is True
    assert report["stopped"] is True
    gateway.collect_payment.assert_not_called()
