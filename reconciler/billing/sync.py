"""
Pull the processor's view of subscriptions we have not heard about recently
and reconcile it through the state machine.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from flask import current_app

from reconciler.billing.state_machine import SubscriptionSnapshot, SubscriptionStateMachine, Trigger
from reconciler.errors import CollaboratorError, ReconcilerError
from reconciler.extensions import db
from reconciler.metrics import get_metrics
from reconciler.models.subscription import Subscription, SubscriptionStatus
from reconciler.services.payment_gateway import get_payment_gateway
from reconciler.utils.leases import job_lease

logger = logging.getLogger(__name__)

LEASE_NAME = "subscription_sync"


@dataclass
class SyncPassResult:
    checked: int = 0
    updated: int = 0
    failed: int = 0
    skipped: bool = False
    stopped: bool = False


def run_subscription_sync(now: datetime, *, should_stop: Optional[Callable[[], bool]] = None) -> SyncPassResult:
    config = current_app.config
    stale_after = timedelta(hours=config.get("SYNC_STALE_AFTER_HOURS", 6))
    batch_size = config.get("SYNC_BATCH_SIZE", 100)
    metrics = get_metrics()
    result = SyncPassResult()

    with job_lease(LEASE_NAME) as acquired:
        if not acquired:
            result.skipped = True
            metrics.record_job(LEASE_NAME, "skipped")
            return result

        subscription_ids = [
            row.id
            for row in Subscription.query
            .filter(
                Subscription.status.notin_(SubscriptionStatus.TERMINAL),
                Subscription.updated_at <= now - stale_after,
            )
            .order_by(Subscription.updated_at.asc())
            .limit(batch_size)
            .with_entities(Subscription.id)
            .all()
        ]
        db.session.commit()

        gateway = get_payment_gateway()
        for subscription_id in subscription_ids:
            if should_stop is not None and should_stop():
                result.stopped = True
                break

            result.checked += 1
            try:
                snapshot = SubscriptionSnapshot.from_processor(gateway.retrieve_subscription(subscription_id))
                transition = SubscriptionStateMachine.apply(
                    subscription_id, Trigger.SNAPSHOT, occurred_at=now, snapshot=snapshot, now=now
                )
            except CollaboratorError as e:
                logger.warning(
                    f"Could not fetch subscription from processor: {e}",
                    extra={"subscription_id": subscription_id, "code": e.code},
                )
                result.failed += 1
                continue
            except ReconcilerError as e:
                logger.error(
                    f"Processor snapshot could not be applied: {e}",
                    extra={"subscription_id": subscription_id},
                )
                result.failed += 1
                continue

            if transition.changed:
                result.updated += 1

    metrics.record_job(LEASE_NAME, "stopped" if result.stopped else "completed")
    logger.info(
        "Subscription sync finished",
        extra={"checked": result.checked, "updated": result.updated, "failed": result.failed},
    )
    return result
