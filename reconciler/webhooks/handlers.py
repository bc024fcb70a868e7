"""
Handlers for processor event types. Every handler is idempotent: running it
twice for the same event leaves the same state as running it once.
"""
import logging
from datetime import datetime

from reconciler.billing.dunning import send_trial_ending_notice
from reconciler.billing.ledger import FailedPaymentLedger, PaymentFailure
from reconciler.billing.state_machine import SubscriptionSnapshot, SubscriptionStateMachine, Trigger
from reconciler.errors import MalformedEventError, SubscriptionNotFound
from reconciler.extensions import db
from reconciler.models.subscription import Subscription, SubscriptionStatus
from reconciler.services.notifications import NotificationKind, get_notification_service
from reconciler.webhooks.dispatcher import dispatcher, subscription_id_of

logger = logging.getLogger(__name__)


def _from_epoch(value):
    if not value:
        return None
    return datetime.utcfromtimestamp(int(value))


def _object(event):
    obj = (event.get("data") or {}).get("object")
    if not isinstance(obj, dict) or not obj.get("id"):
        raise MalformedEventError(f"Event {event.get('id')} carries no data object")
    return obj


def _occurred_at(event, context):
    return _from_epoch(event.get("created")) or context.now


def _line_period(invoice):
    """Service period covered by an invoice, taken from its first line."""
    lines = (invoice.get("lines") or {}).get("data") or []
    period = (lines[0].get("period") if lines else None) or {}
    return _from_epoch(period.get("start")), _from_epoch(period.get("end"))


def _require_subscription(subscription_id):
    subscription = db.session.get(Subscription, subscription_id)
    if subscription is None:
        # Usually the creation event has not arrived yet; the retry sweep picks this up
        raise SubscriptionNotFound(f"Subscription {subscription_id} not known yet")
    return subscription


# ============================================
# SUBSCRIPTION EVENTS
# ============================================

@dispatcher.register("customer.subscription.created")
def handle_subscription_created(event, context):
    snapshot = SubscriptionSnapshot.from_processor(_object(event))
    subscription, created = SubscriptionStateMachine.upsert_from_snapshot(
        snapshot, now=context.now, occurred_at=_occurred_at(event, context)
    )
    if created:
        get_notification_service().send(
            NotificationKind.WELCOME, subscription.recipient, {"subscription_id": subscription.id}
        )


@dispatcher.register("customer.subscription.updated")
def handle_subscription_updated(event, context):
    snapshot = SubscriptionSnapshot.from_processor(_object(event))
    SubscriptionStateMachine.upsert_from_snapshot(
        snapshot, now=context.now, occurred_at=_occurred_at(event, context)
    )


@dispatcher.register("customer.subscription.deleted")
def handle_subscription_deleted(event, context):
    obj = _object(event)
    occurred_at = _occurred_at(event, context)

    subscription = db.session.get(Subscription, obj["id"])
    if subscription is None:
        SubscriptionStateMachine.upsert_from_snapshot(
            SubscriptionSnapshot.from_processor(obj), now=context.now, occurred_at=occurred_at
        )
        return

    # An abandoned first payment ends as expired, not canceled
    trigger = Trigger.EXPIRED if subscription.status == SubscriptionStatus.INCOMPLETE else Trigger.CANCEL_IMMEDIATELY
    SubscriptionStateMachine.apply(
        subscription.id,
        trigger,
        occurred_at=occurred_at,
        reported_canceled_at=_from_epoch(obj.get("canceled_at") or obj.get("ended_at")),
        now=context.now,
    )


@dispatcher.register("customer.subscription.trial_will_end")
def handle_trial_will_end(event, context):
    snapshot = SubscriptionSnapshot.from_processor(_object(event))
    subscription, _ = SubscriptionStateMachine.upsert_from_snapshot(
        snapshot, now=context.now, occurred_at=_occurred_at(event, context)
    )
    if subscription.status == SubscriptionStatus.TRIALING:
        send_trial_ending_notice(subscription, context.now)


# ============================================
# INVOICE EVENTS
# ============================================

@dispatcher.register("invoice.payment_succeeded")
def handle_invoice_payment_succeeded(event, context):
    invoice = _object(event)
    subscription_id = subscription_id_of(event)

    if not subscription_id:
        resolved = FailedPaymentLedger.resolve_by_reference(invoice["id"], context.now)
        db.session.commit()
        logger.info("One-off invoice paid", extra={"invoice_id": invoice["id"], "resolved": resolved})
        return

    _require_subscription(subscription_id)
    period_start, period_end = _line_period(invoice)
    SubscriptionStateMachine.apply(
        subscription_id,
        Trigger.PAYMENT_SUCCEEDED,
        occurred_at=_occurred_at(event, context),
        reported_period_start=period_start,
        reported_period_end=period_end,
        now=context.now,
    )


@dispatcher.register("invoice.payment_failed")
def handle_invoice_payment_failed(event, context):
    invoice = _object(event)
    subscription_id = subscription_id_of(event)

    error = invoice.get("last_finalization_error") or {}
    failure = PaymentFailure(
        payment_reference=invoice["id"],
        amount=invoice.get("amount_due"),
        currency=invoice.get("currency"),
        failure_code=error.get("code") or "payment_failed",
        failure_reason=error.get("message") or f"Attempt {invoice.get('attempt_count', 1)} failed",
    )

    if not subscription_id:
        if not invoice.get("customer"):
            logger.info("Invoice failure without customer not tracked", extra={"invoice_id": invoice["id"]})
            return
        FailedPaymentLedger.record_standalone(invoice["customer"], failure, context.now)
        db.session.commit()
        return

    _require_subscription(subscription_id)

    # The unpaid period ends at the invoice's billing boundary
    SubscriptionStateMachine.apply(
        subscription_id,
        Trigger.PAYMENT_FAILED,
        occurred_at=_occurred_at(event, context),
        reported_period_end=_from_epoch(invoice.get("period_end")),
        failure=failure,
        now=context.now,
    )


@dispatcher.register("invoice.upcoming")
def handle_invoice_upcoming(event, context):
    invoice = _object(event)
    subscription_id = subscription_id_of(event)
    subscription = db.session.get(Subscription, subscription_id) if subscription_id else None

    recipient = subscription.recipient if subscription else invoice.get("customer_email")
    due = _from_epoch(invoice.get("next_payment_attempt") or invoice.get("due_date"))
    get_notification_service().send(
        NotificationKind.UPCOMING_INVOICE,
        recipient,
        {
            "subscription_id": subscription_id,
            "amount": invoice.get("amount_due"),
            "currency": invoice.get("currency"),
            "due_date": due.date().isoformat() if due else None,
        },
    )


# ============================================
# PAYMENT EVENTS
# ============================================

@dispatcher.register("payment_intent.payment_failed")
def handle_payment_intent_failed(event, context):
    intent = _object(event)

    if intent.get("invoice"):
        # Subscription payments are tracked from the invoice event
        logger.debug("Payment intent belongs to an invoice", extra={"payment_intent": intent["id"]})
        return

    if not intent.get("customer"):
        logger.info("Guest payment failure not tracked", extra={"payment_intent": intent["id"]})
        return

    error = intent.get("last_payment_error") or {}
    FailedPaymentLedger.record_standalone(
        intent["customer"],
        PaymentFailure(
            payment_reference=intent["id"],
            amount=intent.get("amount"),
            currency=intent.get("currency"),
            failure_code=error.get("code") or error.get("decline_code"),
            failure_reason=error.get("message"),
        ),
        context.now,
    )
    db.session.commit()


@dispatcher.register("payment_intent.succeeded")
def handle_payment_intent_succeeded(event, context):
    intent = _object(event)
    resolved = FailedPaymentLedger.resolve_by_reference(intent["id"], context.now)
    if intent.get("invoice"):
        resolved += FailedPaymentLedger.resolve_by_reference(intent["invoice"], context.now)
    db.session.commit()
    if resolved:
        logger.info("Failed payments settled", extra={"payment_intent": intent["id"], "resolved": resolved})


@dispatcher.register("charge.dispute.created")
def handle_dispute_created(event, context):
    dispute = _object(event)
    logger.warning(
        "Charge disputed",
        extra={
            "dispute_id": dispute["id"],
            "charge": dispute.get("charge"),
            "amount": dispute.get("amount"),
            "currency": dispute.get("currency"),
            "reason": dispute.get("reason"),
        },
    )
