"""
Operator commands. Shared by the admin HTTP endpoints and the CLI.
"""
import logging
from datetime import datetime

from reconciler.billing.ledger import FailedPaymentLedger
from reconciler.billing.state_machine import SubscriptionStateMachine, Trigger
from reconciler.errors import SubscriptionNotFound
from reconciler.extensions import db
from reconciler.models.subscription import Subscription
from reconciler.services.payment_gateway import get_payment_gateway
from reconciler.webhooks.dispatcher import dispatcher
from reconciler.webhooks.store import EventStore

logger = logging.getLogger(__name__)


def cancel_subscription(subscription_id, immediate=True, now=None, notify_processor=True):
    """
    Cancel at the processor, then record it locally. ``immediate=False``
    schedules the cancellation for the end of the current period.
    """
    now = now or datetime.utcnow()
    subscription = db.session.get(Subscription, subscription_id)
    if subscription is None:
        raise SubscriptionNotFound(f"Subscription {subscription_id} not found")

    if notify_processor and not subscription.is_terminal:
        get_payment_gateway().cancel_subscription(subscription_id, at_period_end=not immediate)

    trigger = Trigger.CANCEL_IMMEDIATELY if immediate else Trigger.CANCEL_AT_PERIOD_END
    result = SubscriptionStateMachine.apply(subscription_id, trigger, occurred_at=now, now=now)
    logger.info(
        "Subscription cancellation requested by operator",
        extra={"subscription_id": subscription_id, "immediate": immediate, "status": result.to_status},
    )
    return result


def replay_event(event_id, now=None):
    return dispatcher.replay(event_id, now=now)


def failed_events(limit=100, offset=0):
    return EventStore.list_failed(limit=limit, offset=offset)


def unresolved_failed_payments(limit=100, offset=0):
    return FailedPaymentLedger.list_unresolved(limit=limit, offset=offset)
