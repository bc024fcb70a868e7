"""
Time-driven transitions nobody sends an event for: cancellations scheduled
for the period end, and first payments that never completed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from flask import current_app

from reconciler.billing.state_machine import SubscriptionStateMachine, Trigger
from reconciler.extensions import db
from reconciler.metrics import get_metrics
from reconciler.models.subscription import Subscription, SubscriptionStatus
from reconciler.utils.leases import job_lease

logger = logging.getLogger(__name__)

LEASE_NAME = "lifecycle"


@dataclass
class LifecyclePassResult:
    period_end_canceled: int = 0
    incomplete_expired: int = 0
    skipped: bool = False
    stopped: bool = False
    errors: int = 0


def run_lifecycle_pass(now: datetime, *, should_stop: Optional[Callable[[], bool]] = None) -> LifecyclePassResult:
    expiry_hours = current_app.config.get("INCOMPLETE_EXPIRY_HOURS", 23)
    metrics = get_metrics()
    result = LifecyclePassResult()

    with job_lease(LEASE_NAME) as acquired:
        if not acquired:
            result.skipped = True
            metrics.record_job(LEASE_NAME, "skipped")
            return result

        ending = [
            row.id
            for row in Subscription.query
            .filter(
                Subscription.cancel_at_period_end.is_(True),
                Subscription.status.in_(SubscriptionStatus.LIVE),
                Subscription.current_period_end <= now,
            )
            .with_entities(Subscription.id)
            .all()
        ]
        expiring = [
            row.id
            for row in Subscription.query
            .filter(
                Subscription.status == SubscriptionStatus.INCOMPLETE,
                Subscription.created_at <= now - timedelta(hours=expiry_hours),
            )
            .with_entities(Subscription.id)
            .all()
        ]
        db.session.commit()

        work = [(sid, Trigger.PERIOD_ENDED) for sid in ending] + [(sid, Trigger.EXPIRED) for sid in expiring]
        for subscription_id, trigger in work:
            if should_stop is not None and should_stop():
                result.stopped = True
                break

            try:
                transition = SubscriptionStateMachine.apply(subscription_id, trigger, occurred_at=now, now=now)
            except Exception:
                db.session.rollback()
                logger.exception(
                    "Lifecycle transition failed",
                    extra={"subscription_id": subscription_id, "trigger": trigger.value},
                )
                result.errors += 1
                continue

            if not transition.changed:
                continue
            if trigger == Trigger.PERIOD_ENDED:
                result.period_end_canceled += 1
            else:
                result.incomplete_expired += 1

    metrics.record_job(LEASE_NAME, "stopped" if result.stopped else "completed")
    logger.info(
        "Lifecycle pass finished",
        extra={
            "period_end_canceled": result.period_end_canceled,
            "incomplete_expired": result.incomplete_expired,
        },
    )
    return result
