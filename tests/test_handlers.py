"""End-to-end: signed deliveries through the endpoint, processed inline."""
import logging
from datetime import datetime, timedelta

import pytest

from helpers import epoch, invoice_object, make_event, post_event, subscription_object
from reconciler.extensions import db
from reconciler.models import FailedPayment, InboundEvent, ProcessingState, Subscription, SubscriptionStatus as S
from reconciler.webhooks import dispatcher

pytestmark = pytest.mark.webhook


def _subscription(subscription_id):
    db.session.expire_all()
    return db.session.get(Subscription, subscription_id)


def _state(event):
    db.session.expire_all()
    return db.session.get(InboundEvent, event["id"]).processing_state


def _kinds(notifier):
    return [c.args[0] for c in notifier.send.call_args_list]


class TestSubscriptionEvents:

    def test_created_inserts_row_and_welcomes_once(self, client, notifier, now):
        obj = subscription_object("sub_new", "cus_new", "incomplete", now, now + timedelta(days=30))
        event = make_event("customer.subscription.created", obj)

        post_event(client, event)
        post_event(client, event)

        sub = _subscription("sub_new")
        assert sub.status == S.INCOMPLETE
        assert sub.customer_email == "customer@example.com"
        assert sub.amount == 2000
        assert _kinds(notifier) == ["welcome"]

    def test_created_after_update_does_not_roll_back(self, client, notifier, now):
        updated = subscription_object("sub_ooo", "cus_ooo", "active", now, now + timedelta(days=30))
        created = subscription_object("sub_ooo", "cus_ooo", "incomplete", now, now)

        post_event(client, make_event("customer.subscription.updated", updated))
        post_event(client, make_event("customer.subscription.created", created))

        sub = _subscription("sub_ooo")
        assert sub.status == S.ACTIVE
        assert sub.current_period_end == now + timedelta(days=30)
        assert "welcome" not in _kinds(notifier)

    def test_updated_with_trial_converts(self, client, make_subscription, notifier, now):
        sub = make_subscription(S.TRIALING, trial_end=now - timedelta(hours=1))
        obj = subscription_object(sub.id, sub.customer_id, "active", now, now + timedelta(days=30))

        post_event(client, make_event("customer.subscription.updated", obj, created=now))

        assert _subscription(sub.id).status == S.ACTIVE
        assert "trial_converted" in _kinds(notifier)

    def test_deleted_cancels(self, client, make_subscription, notifier, now):
        sub = make_subscription(S.ACTIVE)
        obj = subscription_object(
            sub.id, sub.customer_id, "canceled", now - timedelta(days=30), now, canceled_at=epoch(now)
        )

        post_event(client, make_event("customer.subscription.deleted", obj))

        refreshed = _subscription(sub.id)
        assert refreshed.status == S.CANCELED
        assert refreshed.canceled_at == now
        assert _kinds(notifier) == ["subscription_canceled"]

    def test_deleted_incomplete_expires(self, client, make_subscription, now):
        sub = make_subscription(S.INCOMPLETE)
        obj = subscription_object(sub.id, sub.customer_id, "incomplete_expired", now, now)

        post_event(client, make_event("customer.subscription.deleted", obj))

        assert _subscription(sub.id).status == S.INCOMPLETE_EXPIRED

    def test_trial_will_end_notifies_once_per_day(self, client, make_subscription, notifier, now):
        trial_end = datetime.utcnow() + timedelta(days=3)
        sub = make_subscription(S.TRIALING, trial_end=trial_end, current_period_end=trial_end)
        obj = subscription_object(
            sub.id, sub.customer_id, "trialing", trial_end - timedelta(days=14), trial_end,
            trial_end=epoch(trial_end),
        )

        post_event(client, make_event("customer.subscription.trial_will_end", obj))
        post_event(client, make_event("customer.subscription.trial_will_end", obj))

        assert _kinds(notifier).count("trial_ending") == 1


class TestInvoiceEvents:

    def test_failed_renewal_then_recovery(self, client, make_subscription, notifier, now):
        sub = make_subscription(S.ACTIVE)
        failed = invoice_object(sub.id, now, now + timedelta(days=30), billing_boundary=now)

        post_event(client, make_event("invoice.payment_failed", failed))

        assert _subscription(sub.id).status == S.PAST_DUE
        record = FailedPayment.query.filter_by(subscription_id=sub.id).one()
        assert record.payment_reference == failed["id"]
        assert record.period_end == now
        assert record.amount == 2000
        assert record.resolved is False
        assert "payment_failed" in _kinds(notifier)

        paid = invoice_object(sub.id, now, now + timedelta(days=30), id=failed["id"])
        post_event(client, make_event("invoice.payment_succeeded", paid))

        refreshed = _subscription(sub.id)
        assert refreshed.status == S.ACTIVE
        assert refreshed.current_period_end == now + timedelta(days=30)
        db.session.expire_all()
        assert FailedPayment.query.filter_by(subscription_id=sub.id).one().resolved is True

    def test_failure_retry_after_unpaid_is_processed(
        self, client, make_subscription, make_failed_payment, notifier, now
    ):
        sub = make_subscription(S.UNPAID)
        make_failed_payment(sub)
        failed = invoice_object(sub.id, now, now + timedelta(days=30), billing_boundary=now)
        event = make_event("invoice.payment_failed", failed)

        post_event(client, event)

        assert _state(event) == ProcessingState.PROCESSED
        assert _subscription(sub.id).status == S.UNPAID
        assert FailedPayment.query.filter_by(subscription_id=sub.id).count() == 1
        assert "payment_failed" not in _kinds(notifier)

    def test_unpaid_snapshot_before_past_due_is_processed(self, client, make_subscription, now):
        sub = make_subscription(S.ACTIVE)
        unpaid = subscription_object(sub.id, sub.customer_id, "unpaid", now, now + timedelta(days=30))
        past_due = subscription_object(sub.id, sub.customer_id, "past_due", now, now + timedelta(days=30))
        first = make_event("customer.subscription.updated", unpaid)
        second = make_event("customer.subscription.updated", past_due)

        post_event(client, first)
        post_event(client, second)

        assert _state(first) == ProcessingState.PROCESSED
        assert _state(second) == ProcessingState.PROCESSED
        refreshed = _subscription(sub.id)
        assert refreshed.status == S.UNPAID
        assert refreshed.current_period_end == now

    def test_first_invoice_failure_keeps_incomplete(self, client, make_subscription, notifier, now):
        sub = make_subscription(S.INCOMPLETE, current_period_start=now, current_period_end=now + timedelta(days=30))
        failed = invoice_object(sub.id, now, now)
        event = make_event("invoice.payment_failed", failed)

        post_event(client, event)

        assert _state(event) == ProcessingState.PROCESSED
        assert _subscription(sub.id).status == S.INCOMPLETE
        record = FailedPayment.query.filter_by(subscription_id=sub.id).one()
        assert record.period_end == now + timedelta(days=30)
        assert "payment_failed" in _kinds(notifier)

    def test_late_failure_for_paid_period_is_discarded(self, client, make_subscription, now):
        sub = make_subscription(S.ACTIVE)
        paid = invoice_object(sub.id, now, now + timedelta(days=30))
        post_event(client, make_event("invoice.payment_succeeded", paid))

        # Failure for the period that ended at ``now - 30d``
        late = invoice_object(sub.id, now - timedelta(days=30), now, billing_boundary=now - timedelta(days=30))
        post_event(client, make_event("invoice.payment_failed", late))

        assert _subscription(sub.id).status == S.ACTIVE
        assert FailedPayment.query.count() == 0

    def test_payment_for_unknown_subscription_retried_after_creation(self, client, notifier, now):
        paid = invoice_object("sub_later", now, now + timedelta(days=30))
        payment_event = make_event("invoice.payment_succeeded", paid)

        post_event(client, payment_event)
        assert _state(payment_event) == ProcessingState.FAILED

        created = subscription_object("sub_later", "cus_later", "incomplete", now, now + timedelta(days=30))
        post_event(client, make_event("customer.subscription.created", created))
        result = dispatcher.retry_failed(datetime.utcnow())

        assert result.processed == 1
        assert _state(payment_event) == ProcessingState.PROCESSED
        assert _subscription("sub_later").status == S.ACTIVE

    def test_standalone_invoice_failure_recorded(self, client, now):
        invoice = invoice_object(None, now, now, customer="cus_oneoff", amount_due=990)

        post_event(client, make_event("invoice.payment_failed", invoice))

        record = FailedPayment.query.filter_by(payment_reference=invoice["id"]).one()
        assert record.subscription_id is None
        assert record.customer_id == "cus_oneoff"
        assert record.amount == 990

    def test_upcoming_invoice_notifies(self, client, make_subscription, notifier, now):
        sub = make_subscription(S.ACTIVE)
        invoice = invoice_object(sub.id, now, now + timedelta(days=30), next_payment_attempt=epoch(now))

        post_event(client, make_event("invoice.upcoming", invoice))

        notifier.send.assert_called_once()
        kind, recipient, data = notifier.send.call_args.args
        assert kind == "upcoming_invoice"
        assert recipient == sub.customer_email
        assert data["due_date"] == now.date().isoformat()


class TestPaymentIntentEvents:

    def _intent(self, **extra):
        intent = {"id": "pi_123", "object": "payment_intent", "customer": "cus_pi", "amount": 500, "currency": "eur"}
        intent.update(extra)
        return intent

    def test_failure_without_invoice_is_recorded(self, client):
        intent = self._intent(last_payment_error={"code": "card_declined", "message": "Declined"})

        post_event(client, make_event("payment_intent.payment_failed", intent))

        record = FailedPayment.query.filter_by(payment_reference="pi_123").one()
        assert record.failure_code == "card_declined"
        assert record.amount == 500

    def test_failure_with_invoice_or_guest_is_ignored(self, client):
        post_event(client, make_event("payment_intent.payment_failed", self._intent(invoice="in_1")))
        post_event(client, make_event("payment_intent.payment_failed", self._intent(id="pi_guest", customer=None)))

        assert FailedPayment.query.count() == 0

    def test_success_resolves_open_record(self, client, make_failed_payment):
        record = make_failed_payment(None, payment_reference="pi_123")

        post_event(client, make_event("payment_intent.succeeded", self._intent()))

        db.session.expire_all()
        assert db.session.get(FailedPayment, record.id).resolved is True


def test_dispute_is_logged(client, caplog):
    dispute = {"id": "dp_1", "object": "dispute", "charge": "ch_1", "amount": 2000, "reason": "fraudulent"}
    event = make_event("charge.dispute.created", dispute)

    with caplog.at_level(logging.WARNING):
        post_event(client, event)

    assert _state(event) == ProcessingState.PROCESSED
    assert any(r.getMessage() == "Charge disputed" for r in caplog.records)
