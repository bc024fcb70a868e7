"""
Failed-payment ledger.

The only module that creates or mutates ``FailedPayment`` rows. Callers own
the transaction: nothing here commits.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import or_

from reconciler.extensions import db
from reconciler.models.failed_payment import FailedPayment
from reconciler.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

RETRY_SCHEDULE_HOURS = (1, 6, 24)
MAX_RETRY_ATTEMPTS = 3


@dataclass
class PaymentFailure:
    """What the processor told us about a failed collection."""
    payment_reference: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None


def next_retry_delay(retry_count, schedule_hours=RETRY_SCHEDULE_HOURS, max_attempts=MAX_RETRY_ATTEMPTS):
    """
    Delay before the next collection attempt, given the attempts already made.
    None once the budget is spent.
    """
    if retry_count >= max_attempts or retry_count >= len(schedule_hours):
        return None
    return timedelta(hours=schedule_hours[retry_count])


class FailedPaymentLedger:

    @staticmethod
    def find_open(subscription_id=None, period_end=None, payment_reference=None):
        query = FailedPayment.query.filter(FailedPayment.resolved.is_(False))
        if subscription_id is not None:
            query = query.filter(FailedPayment.subscription_id == subscription_id)
            if period_end is not None:
                query = query.filter(FailedPayment.period_end == period_end)
        elif payment_reference is not None:
            query = query.filter(FailedPayment.payment_reference == payment_reference)
        else:
            return None
        return query.order_by(FailedPayment.created_at.asc()).first()

    @staticmethod
    def ensure_open(subscription, now, failure=None, period_end=None, schedule_hours=RETRY_SCHEDULE_HOURS):
        """
        Return the open record for the subscription's period, creating it if
        missing. Returns ``(record, created)``.
        """
        failure = failure or PaymentFailure()
        period_end = period_end or subscription.current_period_end

        record = FailedPaymentLedger.find_open(subscription_id=subscription.id, period_end=period_end)
        if record is not None:
            if failure.failure_code:
                record.failure_code = failure.failure_code
            if failure.failure_reason:
                record.failure_reason = failure.failure_reason[:255]
            if failure.payment_reference and not record.payment_reference:
                record.payment_reference = failure.payment_reference
            return record, False

        record = FailedPayment(
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
            payment_reference=failure.payment_reference or subscription.latest_invoice_id,
            period_end=period_end,
            amount=failure.amount if failure.amount is not None else (subscription.amount or 0),
            currency=failure.currency or subscription.currency or "usd",
            failure_code=failure.failure_code,
            failure_reason=(failure.failure_reason or "")[:255] or None,
            retry_count=0,
            next_retry_at=now + next_retry_delay(0, schedule_hours),
            resolved=False,
            created_at=now,
        )
        db.session.add(record)
        db.session.flush()

        logger.info(
            "Failed payment recorded",
            extra={
                "failed_payment_id": record.id,
                "subscription_id": subscription.id,
                "payment_reference": record.payment_reference,
                "next_retry_at": record.next_retry_at.isoformat(),
            },
        )
        return record, True

    @staticmethod
    def record_standalone(customer_id, failure, now, schedule_hours=RETRY_SCHEDULE_HOURS):
        """A failure with no owning subscription, keyed by payment reference."""
        record = FailedPaymentLedger.find_open(payment_reference=failure.payment_reference)
        if record is not None:
            return record, False

        record = FailedPayment(
            customer_id=customer_id,
            subscription_id=None,
            payment_reference=failure.payment_reference,
            amount=failure.amount or 0,
            currency=failure.currency or "usd",
            failure_code=failure.failure_code,
            failure_reason=(failure.failure_reason or "")[:255] or None,
            retry_count=0,
            next_retry_at=now + next_retry_delay(0, schedule_hours),
            resolved=False,
            created_at=now,
        )
        db.session.add(record)
        db.session.flush()
        logger.info(
            "Standalone failed payment recorded",
            extra={"failed_payment_id": record.id, "payment_reference": failure.payment_reference},
        )
        return record, True

    @staticmethod
    def record_attempt(record, now, error_code=None, error_message=None,
                       schedule_hours=RETRY_SCHEDULE_HOURS, max_attempts=MAX_RETRY_ATTEMPTS):
        """
        Count one failed collection attempt and schedule the next.
        Returns True when the retry budget is now spent.
        """
        record.retry_count = (record.retry_count or 0) + 1
        record.last_attempt_at = now
        if error_code:
            record.failure_code = error_code
        if error_message:
            record.failure_reason = str(error_message)[:255]

        delay = next_retry_delay(record.retry_count, schedule_hours, max_attempts)
        record.next_retry_at = now + delay if delay is not None else None
        return delay is None

    @staticmethod
    def resolve(record, now):
        if record.resolved:
            return False
        record.resolved = True
        record.resolved_at = now
        record.next_retry_at = None
        return True

    @staticmethod
    def resolve_for_subscription(subscription_id, now):
        records = FailedPayment.query.filter(
            FailedPayment.subscription_id == subscription_id,
            FailedPayment.resolved.is_(False),
        ).all()
        for record in records:
            FailedPaymentLedger.resolve(record, now)
        if records:
            logger.info(
                "Failed payments resolved",
                extra={"subscription_id": subscription_id, "count": len(records)},
            )
        return len(records)

    @staticmethod
    def resolve_by_reference(payment_reference, now):
        records = FailedPayment.query.filter(
            FailedPayment.payment_reference == payment_reference,
            FailedPayment.resolved.is_(False),
        ).all()
        for record in records:
            FailedPaymentLedger.resolve(record, now)
        return len(records)

    @staticmethod
    def list_due(now, limit, max_attempts=MAX_RETRY_ATTEMPTS):
        """Unresolved rows whose next attempt is due, skipping terminal subscriptions."""
        return (
            FailedPayment.query
            .outerjoin(Subscription, FailedPayment.subscription_id == Subscription.id)
            .filter(
                FailedPayment.resolved.is_(False),
                FailedPayment.retry_count < max_attempts,
                FailedPayment.next_retry_at.isnot(None),
                FailedPayment.next_retry_at <= now,
                or_(
                    Subscription.id.is_(None),
                    Subscription.status.notin_(SubscriptionStatus.TERMINAL),
                ),
            )
            .order_by(FailedPayment.next_retry_at.asc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def list_unresolved(limit=100, offset=0):
        return (
            FailedPayment.query
            .filter(FailedPayment.resolved.is_(False))
            .order_by(FailedPayment.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
