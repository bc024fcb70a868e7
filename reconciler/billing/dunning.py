"""
Dunning and trial reminders.

Both sweeps run once a day. A reminder is claimed by inserting its
``NotificationLog`` row before anything is sent, so a rerun on the same day
never sends twice.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from reconciler.billing.ledger import FailedPaymentLedger
from reconciler.billing.state_machine import SubscriptionStateMachine, Trigger
from reconciler.extensions import db
from reconciler.metrics import get_metrics
from reconciler.models.notification_log import NotificationLog
from reconciler.models.subscription import Subscription, SubscriptionStatus
from reconciler.services.notifications import NotificationKind, get_notification_service
from reconciler.utils.leases import job_lease

logger = logging.getLogger(__name__)

DUNNING_LEASE = "dunning"
TRIAL_REMINDER_LEASE = "trial_reminders"

DEFAULT_REMINDER_DAYS = (1, 3, 7, 14)
DEFAULT_CANCEL_AFTER_DAYS = 14
DEFAULT_TRIAL_REMINDER_DAYS = (3, 1, 0)


@dataclass
class DunningPassResult:
    reminded: int = 0
    canceled: int = 0
    skipped: bool = False
    stopped: bool = False
    errors: int = 0


@dataclass
class TrialReminderPassResult:
    reminded: int = 0
    skipped: bool = False
    stopped: bool = False


def claim_notification(subscription_id: str, notification_type: str, sent_date: date, details=None) -> bool:
    """
    Insert the at-most-once-per-day claim. Returns False when the row already
    exists, meaning the notification went out earlier today.
    """
    db.session.add(
        NotificationLog(
            subscription_id=subscription_id,
            notification_type=notification_type,
            sent_date=sent_date,
            details=details or {},
        )
    )
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.debug(
            "Notification already claimed today",
            extra={"subscription_id": subscription_id, "notification_type": notification_type},
        )
        return False
    return True


def run_dunning_pass(now: datetime, *, should_stop: Optional[Callable[[], bool]] = None) -> DunningPassResult:
    config = current_app.config
    reminder_days = set(config.get("DUNNING_REMINDER_DAYS", DEFAULT_REMINDER_DAYS))
    cancel_after = config.get("DUNNING_CANCEL_AFTER_DAYS", DEFAULT_CANCEL_AFTER_DAYS)
    metrics = get_metrics()
    result = DunningPassResult()

    with job_lease(DUNNING_LEASE) as acquired:
        if not acquired:
            result.skipped = True
            metrics.record_job(DUNNING_LEASE, "skipped")
            return result

        with metrics.observe_job(DUNNING_LEASE):
            subscription_ids = [
                row.id
                for row in Subscription.query
                .filter(Subscription.status == SubscriptionStatus.PAST_DUE)
                .order_by(Subscription.current_period_end.asc())
                .with_entities(Subscription.id)
                .all()
            ]
            db.session.commit()

            for subscription_id in subscription_ids:
                if should_stop is not None and should_stop():
                    result.stopped = True
                    break

                try:
                    action = _dun_subscription(subscription_id, now, reminder_days, cancel_after)
                except Exception:
                    db.session.rollback()
                    logger.exception("Dunning failed for subscription", extra={"subscription_id": subscription_id})
                    result.errors += 1
                    continue

                if action == "reminded":
                    result.reminded += 1
                elif action == "canceled":
                    result.canceled += 1
                if action:
                    metrics.record_dunning(action)

    metrics.record_job(DUNNING_LEASE, "stopped" if result.stopped else "completed")
    logger.info(
        "Dunning pass finished",
        extra={"reminded": result.reminded, "canceled": result.canceled, "errors": result.errors},
    )
    return result


def _dun_subscription(subscription_id, now, reminder_days, cancel_after):
    subscription = db.session.get(Subscription, subscription_id)
    if subscription is None or subscription.status != SubscriptionStatus.PAST_DUE:
        return None

    days_past_due = subscription.days_past_due(now)
    if days_past_due is None:
        logger.warning("Past-due subscription has no period end", extra={"subscription_id": subscription_id})
        return None

    if days_past_due > cancel_after:
        transition = SubscriptionStateMachine.apply(
            subscription_id, Trigger.DUNNING_EXHAUSTED, occurred_at=now, now=now
        )
        return "canceled" if transition.changed else None

    if days_past_due not in reminder_days:
        return None

    outstanding = FailedPaymentLedger.find_open(subscription_id=subscription_id)
    notice = {
        "subscription_id": subscription_id,
        "days_past_due": days_past_due,
        "amount": outstanding.amount if outstanding else subscription.amount,
        "currency": outstanding.currency if outstanding else subscription.currency,
    }
    recipient = subscription.recipient

    if not claim_notification(
        subscription_id, NotificationKind.DUNNING_REMINDER, now.date(), {"days_past_due": days_past_due}
    ):
        return None

    get_notification_service().send(NotificationKind.DUNNING_REMINDER, recipient, notice)
    return "reminded"


def run_trial_reminder_pass(
    now: datetime, *, should_stop: Optional[Callable[[], bool]] = None
) -> TrialReminderPassResult:
    """Warn trialing customers 3 days, 1 day and on the day their trial ends."""
    reminder_days = set(current_app.config.get("TRIAL_REMINDER_DAYS", DEFAULT_TRIAL_REMINDER_DAYS))
    metrics = get_metrics()
    result = TrialReminderPassResult()

    with job_lease(TRIAL_REMINDER_LEASE) as acquired:
        if not acquired:
            result.skipped = True
            metrics.record_job(TRIAL_REMINDER_LEASE, "skipped")
            return result

        trialing = (
            Subscription.query
            .filter(
                Subscription.status == SubscriptionStatus.TRIALING,
                Subscription.trial_end.isnot(None),
                Subscription.trial_end >= datetime.combine(now.date(), datetime.min.time()),
            )
            .all()
        )

        for subscription in trialing:
            if should_stop is not None and should_stop():
                result.stopped = True
                break

            days_left = (subscription.trial_end.date() - now.date()).days
            if days_left not in reminder_days:
                continue

            if send_trial_ending_notice(subscription, now):
                result.reminded += 1

    metrics.record_job(TRIAL_REMINDER_LEASE, "stopped" if result.stopped else "completed")
    logger.info("Trial reminder pass finished", extra={"reminded": result.reminded})
    return result


def send_trial_ending_notice(subscription, now):
    """Send a trial-ending notice unless one already went out today."""
    subscription_id = subscription.id
    recipient = subscription.recipient
    notice = {
        "subscription_id": subscription_id,
        "trial_end": subscription.trial_end.date().isoformat() if subscription.trial_end else None,
    }

    if not claim_notification(subscription_id, NotificationKind.TRIAL_ENDING, now.date()):
        return False

    get_notification_service().send(NotificationKind.TRIAL_ENDING, recipient, notice)
    return True
