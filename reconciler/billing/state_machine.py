import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from reconciler.billing.ledger import FailedPaymentLedger, PaymentFailure
from reconciler.errors import InvalidStateTransition, ReconcilerError, SubscriptionNotFound
from reconciler.extensions import db
from reconciler.models.subscription import Subscription, SubscriptionStatus
from reconciler.services.notifications import NotificationKind, get_notification_service

logger = logging.getLogger(__name__)

S = SubscriptionStatus


class Trigger(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    EXPIRED = "expired"
    DUNNING_EXHAUSTED = "dunning_exhausted"
    CANCEL_IMMEDIATELY = "cancel_immediately"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    PERIOD_ENDED = "period_ended"
    MARKED_UNPAID = "marked_unpaid"
    SNAPSHOT = "snapshot"


# Processor-reported status -> the trigger that reaches it
SNAPSHOT_TRIGGERS = {
    S.ACTIVE: Trigger.PAYMENT_SUCCEEDED,
    S.TRIALING: Trigger.PAYMENT_SUCCEEDED,
    S.PAST_DUE: Trigger.PAYMENT_FAILED,
    S.UNPAID: Trigger.MARKED_UNPAID,
    S.CANCELED: Trigger.CANCEL_IMMEDIATELY,
    S.INCOMPLETE_EXPIRED: Trigger.EXPIRED,
}


def _from_epoch(value):
    if value in (None, ""):
        return None
    return datetime.utcfromtimestamp(int(value))


@dataclass
class SubscriptionSnapshot:
    """The processor's view of a subscription at one point in time."""
    id: str
    customer_id: Optional[str]
    status: str
    customer_email: Optional[str] = None
    plan_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    latest_invoice_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_processor(cls, obj: Dict[str, Any]) -> "SubscriptionSnapshot":
        customer = obj.get("customer")
        customer_email = None
        if isinstance(customer, dict):
            customer_email = customer.get("email")
            customer = customer.get("id")
        metadata = obj.get("metadata") or {}
        customer_email = customer_email or metadata.get("customer_email")

        items = (obj.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or first_item.get("plan") or obj.get("plan") or {}

        # Newer API versions report the period on the item
        period_start = obj.get("current_period_start") or first_item.get("current_period_start")
        period_end = obj.get("current_period_end") or first_item.get("current_period_end")

        latest_invoice = obj.get("latest_invoice")
        if isinstance(latest_invoice, dict):
            latest_invoice = latest_invoice.get("id")

        return cls(
            id=obj["id"],
            customer_id=customer,
            status=obj.get("status") or S.INCOMPLETE,
            customer_email=customer_email,
            plan_id=price.get("id"),
            amount=price.get("unit_amount", price.get("amount")),
            currency=price.get("currency") or obj.get("currency"),
            current_period_start=_from_epoch(period_start),
            current_period_end=_from_epoch(period_end),
            trial_end=_from_epoch(obj.get("trial_end")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            canceled_at=_from_epoch(obj.get("canceled_at")),
            latest_invoice_id=latest_invoice,
            created_at=_from_epoch(obj.get("created")),
        )


@dataclass
class TransitionResult:
    subscription: Subscription
    from_status: str
    to_status: str
    changed: bool = False
    stale: bool = False
    ignored: bool = False
    effects: List[Tuple[str, str, dict]] = field(default_factory=list, repr=False)


class SubscriptionStateMachine:
    """
    Authoritative subscription state machine.

    Every status change goes through ``apply``. The subscription row is
    locked for the whole transaction, so concurrent writers for the same
    subscription queue behind each other. Notifications are sent only after
    the transaction commits.
    """

    @staticmethod
    def apply(
        subscription_id: str,
        trigger: Trigger,
        *,
        occurred_at: Optional[datetime] = None,
        reported_period_start: Optional[datetime] = None,
        reported_period_end: Optional[datetime] = None,
        reported_canceled_at: Optional[datetime] = None,
        snapshot: Optional[SubscriptionSnapshot] = None,
        failure: Optional[PaymentFailure] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        now = now or datetime.utcnow()
        occurred_at = occurred_at or now
        trigger = Trigger(trigger)

        if trigger == Trigger.SNAPSHOT:
            if snapshot is None:
                raise ValueError("snapshot trigger requires a snapshot")
            reported_period_start = snapshot.current_period_start
            reported_period_end = snapshot.current_period_end
            reported_canceled_at = snapshot.canceled_at

        try:
            subscription = (
                Subscription.query
                .filter_by(id=subscription_id)
                .with_for_update()
                .first()
            )
            if subscription is None:
                raise SubscriptionNotFound(f"Subscription {subscription_id} not found")

            result = SubscriptionStateMachine._apply_locked(
                subscription,
                trigger,
                occurred_at=occurred_at,
                reported_period_start=reported_period_start,
                reported_period_end=reported_period_end,
                reported_canceled_at=reported_canceled_at,
                snapshot=snapshot,
                failure=failure,
                now=now,
            )
            db.session.commit()

        except (SQLAlchemyError, ReconcilerError):
            db.session.rollback()
            raise

        SubscriptionStateMachine._fire(result.effects)
        return result

    @staticmethod
    def _apply_locked(subscription, trigger, *, occurred_at, reported_period_start, reported_period_end,
                      reported_canceled_at, snapshot, failure, now):
        from_status = subscription.status
        result = TransitionResult(subscription, from_status, from_status)

        if subscription.is_terminal:
            logger.info(
                "Trigger ignored for terminal subscription",
                extra={"subscription_id": subscription.id, "status": from_status, "trigger": trigger.value},
            )
            result.ignored = True
            return result

        # A first invoice reports a zero-length period at creation, so a
        # failure before the first payment carries no period
        if trigger == Trigger.PAYMENT_FAILED and from_status == S.INCOMPLETE:
            reported_period_start = reported_period_end = None

        reported_status = snapshot.status if trigger == Trigger.SNAPSHOT else None
        if SubscriptionStateMachine._is_stale(
            subscription, reported_period_end, reported_canceled_at, reported_status
        ):
            logger.info(
                "Stale subscription update discarded",
                extra={
                    "subscription_id": subscription.id,
                    "trigger": trigger.value,
                    "reported_period_end": reported_period_end.isoformat() if reported_period_end else None,
                    "stored_period_end": (
                        subscription.current_period_end.isoformat() if subscription.current_period_end else None
                    ),
                },
            )
            result.stale = True
            return result

        if trigger == Trigger.SNAPSHOT:
            trigger = SubscriptionStateMachine._copy_snapshot(subscription, snapshot)
            # A past-due processor view already rolled the period forward; the
            # unpaid period stays the reference point until payment succeeds
            if snapshot.status in (S.PAST_DUE, S.UNPAID):
                reported_period_start = reported_period_end = None
            if trigger is None:
                SubscriptionStateMachine._write_period(subscription, reported_period_start, reported_period_end)
                return result

        SubscriptionStateMachine._write_period(subscription, reported_period_start, reported_period_end)

        target = SubscriptionStateMachine._resolve_target(subscription, trigger, occurred_at)
        result.to_status = target

        if trigger == Trigger.CANCEL_AT_PERIOD_END and not subscription.cancel_at_period_end:
            subscription.cancel_at_period_end = True
            result.changed = True

        if target != from_status:
            subscription.status = target
            result.changed = True
            logger.info(
                "Subscription transitioned",
                extra={
                    "subscription_id": subscription.id,
                    "from_status": from_status,
                    "to_status": target,
                    "trigger": trigger.value,
                },
            )

        SubscriptionStateMachine._collect_effects(
            result, trigger, failure=failure, reported_period_end=reported_period_end,
            reported_canceled_at=reported_canceled_at, occurred_at=occurred_at, now=now,
        )
        db.session.flush()
        return result

    @staticmethod
    def _is_stale(subscription, reported_period_end, reported_canceled_at, reported_status=None):
        # Nothing leaves ``incomplete`` and comes back; such a report predates the move
        if reported_status == S.INCOMPLETE and subscription.status != S.INCOMPLETE:
            return True
        if (
            reported_period_end is not None
            and subscription.current_period_end is not None
            and reported_period_end < subscription.current_period_end
        ):
            return True
        if (
            reported_canceled_at is not None
            and subscription.canceled_at is not None
            and reported_canceled_at < subscription.canceled_at
        ):
            return True
        return False

    @staticmethod
    def _write_period(subscription, period_start, period_end):
        if period_end is None:
            return
        if subscription.current_period_end is None or period_end >= subscription.current_period_end:
            subscription.current_period_end = period_end
            if period_start is not None:
                subscription.current_period_start = period_start

    @staticmethod
    def _copy_snapshot(subscription, snapshot):
        """Copy non-status fields and return the trigger for the reported status, if any."""
        if snapshot.plan_id:
            subscription.plan_id = snapshot.plan_id
        if snapshot.amount is not None:
            subscription.amount = snapshot.amount
        if snapshot.currency:
            subscription.currency = snapshot.currency
        if snapshot.customer_email:
            subscription.customer_email = snapshot.customer_email
        if snapshot.latest_invoice_id:
            subscription.latest_invoice_id = snapshot.latest_invoice_id
        subscription.trial_end = snapshot.trial_end
        subscription.cancel_at_period_end = snapshot.cancel_at_period_end

        if snapshot.status == subscription.status:
            return None
        trigger = SNAPSHOT_TRIGGERS.get(snapshot.status)
        if trigger is None:
            raise InvalidStateTransition(
                f"Cannot move subscription {subscription.id} from {subscription.status} "
                f"to reported status {snapshot.status}"
            )
        return trigger

    @staticmethod
    def _resolve_target(subscription, trigger, occurred_at):
        status = subscription.status

        if trigger == Trigger.PAYMENT_SUCCEEDED:
            if status == S.INCOMPLETE:
                if subscription.trial_end and subscription.trial_end > occurred_at:
                    return S.TRIALING
                return S.ACTIVE
            if status == S.TRIALING:
                if subscription.trial_end and subscription.trial_end > occurred_at:
                    return S.TRIALING
                return S.ACTIVE
            if status in (S.ACTIVE, S.PAST_DUE, S.UNPAID):
                return S.ACTIVE

        elif trigger == Trigger.PAYMENT_FAILED:
            if status == S.INCOMPLETE:
                return S.INCOMPLETE
            if status in (S.TRIALING, S.ACTIVE, S.PAST_DUE):
                return S.PAST_DUE
            # Later retries of an already unpaid invoice
            if status == S.UNPAID:
                return S.UNPAID

        elif trigger == Trigger.EXPIRED:
            if status == S.INCOMPLETE:
                return S.INCOMPLETE_EXPIRED

        elif trigger == Trigger.MARKED_UNPAID:
            # The past-due report may arrive after the unpaid one, or never
            if status in (S.TRIALING, S.ACTIVE, S.PAST_DUE, S.UNPAID):
                return S.UNPAID

        elif trigger == Trigger.DUNNING_EXHAUSTED:
            if status == S.PAST_DUE:
                return S.CANCELED

        elif trigger == Trigger.CANCEL_IMMEDIATELY:
            if status in (S.ACTIVE, S.TRIALING, S.PAST_DUE, S.UNPAID):
                return S.CANCELED

        elif trigger == Trigger.CANCEL_AT_PERIOD_END:
            if status in S.LIVE:
                return status

        elif trigger == Trigger.PERIOD_ENDED:
            if (
                status in S.LIVE
                and subscription.cancel_at_period_end
                and subscription.current_period_end is not None
                and subscription.current_period_end <= occurred_at
            ):
                return S.CANCELED

        raise InvalidStateTransition(
            f"Cannot apply {trigger.value} to subscription {subscription.id} in status {status}"
        )

    @staticmethod
    def _collect_effects(result, trigger, *, failure, reported_period_end, reported_canceled_at, occurred_at, now):
        subscription = result.subscription
        entered = result.to_status if result.to_status != result.from_status else None

        if trigger == Trigger.PAYMENT_FAILED or entered in (S.PAST_DUE, S.UNPAID):
            record, created = FailedPaymentLedger.ensure_open(
                subscription, now, failure=failure, period_end=reported_period_end
            )
            if created and trigger == Trigger.PAYMENT_FAILED:
                result.effects.append((
                    NotificationKind.PAYMENT_FAILED,
                    subscription.recipient,
                    {
                        "subscription_id": subscription.id,
                        "payment_reference": record.payment_reference,
                        "amount": record.amount,
                        "currency": record.currency,
                    },
                ))

        if trigger == Trigger.PAYMENT_SUCCEEDED:
            FailedPaymentLedger.resolve_for_subscription(subscription.id, now)

        if entered in S.LIVE:
            SubscriptionStateMachine._warn_on_live_conflict(subscription)

        if entered == S.ACTIVE and result.from_status == S.TRIALING:
            result.effects.append((
                NotificationKind.TRIAL_CONVERTED,
                subscription.recipient,
                {"subscription_id": subscription.id},
            ))

        if entered == S.CANCELED:
            subscription.canceled_at = reported_canceled_at or occurred_at
            result.effects.append((
                NotificationKind.SUBSCRIPTION_CANCELED,
                subscription.recipient,
                {
                    "subscription_id": subscription.id,
                    "canceled_at": subscription.canceled_at.isoformat(),
                    "reason": trigger.value,
                },
            ))

    @staticmethod
    def _warn_on_live_conflict(subscription):
        others = (
            Subscription.query
            .filter(
                Subscription.customer_id == subscription.customer_id,
                Subscription.id != subscription.id,
                Subscription.status.in_(S.LIVE),
            )
            .with_entities(Subscription.id)
            .all()
        )
        if others:
            logger.warning(
                "Customer has more than one live subscription",
                extra={
                    "customer_id": subscription.customer_id,
                    "subscription_id": subscription.id,
                    "conflicting_subscription_ids": [row.id for row in others],
                },
            )

    @staticmethod
    def _fire(effects):
        if not effects:
            return
        notifications = get_notification_service()
        for template_kind, recipient, data in effects:
            notifications.send(template_kind, recipient, data)

    @staticmethod
    def upsert_from_snapshot(
        snapshot: SubscriptionSnapshot,
        now: Optional[datetime] = None,
        occurred_at: Optional[datetime] = None,
    ):
        """
        Create the subscription the first time the processor reports it,
        otherwise apply the snapshot. Returns ``(subscription, created)``.
        """
        now = now or datetime.utcnow()

        if db.session.get(Subscription, snapshot.id) is None:
            status = snapshot.status if snapshot.status in S.ALL else S.INCOMPLETE
            subscription = Subscription(
                id=snapshot.id,
                customer_id=snapshot.customer_id,
                customer_email=snapshot.customer_email,
                plan_id=snapshot.plan_id,
                status=status,
                current_period_start=snapshot.current_period_start,
                current_period_end=snapshot.current_period_end,
                trial_end=snapshot.trial_end,
                cancel_at_period_end=snapshot.cancel_at_period_end,
                canceled_at=snapshot.canceled_at,
                latest_invoice_id=snapshot.latest_invoice_id,
                amount=snapshot.amount,
                currency=snapshot.currency or "usd",
                created_at=snapshot.created_at or now,
            )
            db.session.add(subscription)
            try:
                db.session.commit()
            except IntegrityError:
                # Created concurrently; fall through to the update path
                db.session.rollback()
            else:
                logger.info(
                    "Subscription created from processor snapshot",
                    extra={"subscription_id": snapshot.id, "status": status},
                )
                if status in S.LIVE:
                    SubscriptionStateMachine._warn_on_live_conflict(subscription)
                return subscription, True

        result = SubscriptionStateMachine.apply(
            snapshot.id,
            Trigger.SNAPSHOT,
            occurred_at=occurred_at or now,
            snapshot=snapshot,
            now=now,
        )
        return result.subscription, False
