"""
Failed-payment retry sweep.

Runs hourly. Each due row gets one collection attempt; the schedule after a
failed attempt is 1h, 6h, then 24h, and the row is abandoned after the third
failure.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from flask import current_app

from reconciler.billing.ledger import MAX_RETRY_ATTEMPTS, RETRY_SCHEDULE_HOURS, FailedPaymentLedger
from reconciler.billing.state_machine import SubscriptionStateMachine, Trigger
from reconciler.errors import CollaboratorError, ReconcilerError
from reconciler.extensions import db
from reconciler.metrics import get_metrics
from reconciler.models.failed_payment import FailedPayment
from reconciler.services.notifications import NotificationKind, get_notification_service
from reconciler.services.payment_gateway import CollectionResult, get_payment_gateway
from reconciler.utils.leases import job_lease

logger = logging.getLogger(__name__)

LEASE_NAME = "retry_failed_payments"


@dataclass
class RetryPassResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: bool = False
    stopped: bool = False


def run_retry_pass(
    now: datetime,
    *,
    batch_size: Optional[int] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> RetryPassResult:
    config = current_app.config
    batch_size = batch_size or config.get("RETRY_BATCH_SIZE", 50)
    max_attempts = config.get("RETRY_MAX_ATTEMPTS", MAX_RETRY_ATTEMPTS)
    schedule = tuple(config.get("RETRY_SCHEDULE_HOURS", RETRY_SCHEDULE_HOURS))
    metrics = get_metrics()
    result = RetryPassResult()

    with job_lease(LEASE_NAME) as acquired:
        if not acquired:
            result.skipped = True
            metrics.record_job(LEASE_NAME, "skipped")
            return result

        with metrics.observe_job(LEASE_NAME):
            due_ids = [record.id for record in FailedPaymentLedger.list_due(now, batch_size, max_attempts)]
            db.session.commit()

            for failed_payment_id in due_ids:
                if should_stop is not None and should_stop():
                    result.stopped = True
                    break

                result.attempted += 1
                try:
                    succeeded = _attempt_collection(failed_payment_id, now, schedule, max_attempts)
                except Exception:
                    db.session.rollback()
                    logger.exception(
                        "Retry attempt crashed", extra={"failed_payment_id": failed_payment_id}
                    )
                    succeeded = False

                if succeeded:
                    result.succeeded += 1
                    metrics.record_retry("succeeded")
                else:
                    result.failed += 1
                    metrics.record_retry("failed")

    metrics.record_job(LEASE_NAME, "stopped" if result.stopped else "completed")
    logger.info(
        "Payment retry pass finished",
        extra={"attempted": result.attempted, "succeeded": result.succeeded, "failed": result.failed},
    )
    return result


def _attempt_collection(failed_payment_id, now, schedule, max_attempts):
    record = db.session.get(FailedPayment, failed_payment_id)
    payment_reference = record.payment_reference
    # Nothing stays locked while the processor is called
    db.session.commit()

    try:
        outcome = get_payment_gateway().collect_payment(payment_reference)
    except CollaboratorError as e:
        outcome = CollectionResult(False, e.code or type(e).__name__, e.message)

    record = (
        FailedPayment.query
        .filter_by(id=failed_payment_id)
        .with_for_update()
        .first()
    )
    if record is None or record.resolved:
        # Settled by a webhook while we were waiting on the processor
        db.session.commit()
        return True

    if outcome.succeeded:
        FailedPaymentLedger.resolve(record, now)
        subscription_id = record.subscription_id
        db.session.commit()
        logger.info(
            "Payment collected on retry",
            extra={"failed_payment_id": failed_payment_id, "payment_reference": payment_reference},
        )

        if subscription_id:
            try:
                SubscriptionStateMachine.apply(
                    subscription_id, Trigger.PAYMENT_SUCCEEDED, occurred_at=now, now=now
                )
            except ReconcilerError as e:
                logger.error(
                    f"Collected payment but could not update subscription: {e}",
                    extra={"subscription_id": subscription_id},
                )
        return True

    exhausted = FailedPaymentLedger.record_attempt(
        record,
        now,
        error_code=outcome.error_code,
        error_message=outcome.error_message,
        schedule_hours=schedule,
        max_attempts=max_attempts,
    )
    recipient = record.subscription.recipient if record.subscription else record.customer_id
    notice = {
        "subscription_id": record.subscription_id,
        "attempts": record.retry_count,
        "amount": record.amount,
        "currency": record.currency,
    }
    db.session.commit()

    logger.info(
        "Payment retry failed",
        extra={
            "failed_payment_id": failed_payment_id,
            "retry_count": notice["attempts"],
            "error_code": outcome.error_code,
            "exhausted": exhausted,
        },
    )

    if exhausted:
        get_notification_service().send(NotificationKind.PAYMENT_RETRY_EXHAUSTED, recipient, notice)
    return False
