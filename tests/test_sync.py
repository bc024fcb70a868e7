from datetime import timedelta

from helpers import epoch, subscription_object
from reconciler.billing.sync import run_subscription_sync
from reconciler.errors import TransientCollaboratorError
from reconciler.extensions import db
from reconciler.models import Subscription, SubscriptionStatus as S


def test_stale_subscription_reconciled_from_processor(make_subscription, gateway, now):
    sub = make_subscription(S.ACTIVE, updated_at=now - timedelta(hours=7))
    gateway.retrieve_subscription.return_value = subscription_object(
        sub.id, sub.customer_id, "past_due", now - timedelta(days=30), now
    )

    result = run_subscription_sync(now)

    assert (result.checked, result.updated, result.failed) == (1, 1, 0)
    gateway.retrieve_subscription.assert_called_once_with(sub.id)
    db.session.expire_all()
    assert db.session.get(Subscription, sub.id).status == S.PAST_DUE


def test_recently_updated_and_terminal_subscriptions_not_checked(make_subscription, gateway, now):
    make_subscription(S.ACTIVE, updated_at=now - timedelta(hours=1))
    make_subscription(S.CANCELED, updated_at=now - timedelta(days=3))

    result = run_subscription_sync(now)

    assert result.checked == 0
    gateway.retrieve_subscription.assert_not_called()


def test_processor_failure_is_counted_and_sweep_continues(make_subscription, gateway, now):
    first = make_subscription(S.ACTIVE, updated_at=now - timedelta(hours=9))
    second = make_subscription(S.TRIALING, updated_at=now - timedelta(hours=8), trial_end=now + timedelta(days=5))
    gateway.retrieve_subscription.side_effect = [
        TransientCollaboratorError("rate limited"),
        subscription_object(
            second.id, second.customer_id, "trialing", now - timedelta(days=9), now + timedelta(days=5),
            trial_end=epoch(now + timedelta(days=5)),
        ),
    ]

    result = run_subscription_sync(now)

    assert (result.checked, result.updated, result.failed) == (2, 0, 1)
    db.session.expire_all()
    assert db.session.get(Subscription, first.id).status == S.ACTIVE
