from datetime import timedelta

from reconciler.billing.lifecycle import run_lifecycle_pass
from reconciler.extensions import db
from reconciler.models import Subscription, SubscriptionStatus as S


def _status(subscription_id):
    db.session.expire_all()
    return db.session.get(Subscription, subscription_id).status


def test_scheduled_cancellation_takes_effect_at_period_end(make_subscription, notifier, now):
    ended = make_subscription(S.ACTIVE, cancel_at_period_end=True, current_period_end=now - timedelta(minutes=5))
    not_yet = make_subscription(S.ACTIVE, cancel_at_period_end=True, current_period_end=now + timedelta(days=3))
    unflagged = make_subscription(S.ACTIVE, current_period_end=now - timedelta(minutes=5))

    result = run_lifecycle_pass(now)

    assert result.period_end_canceled == 1
    assert _status(ended.id) == S.CANCELED
    assert _status(not_yet.id) == S.ACTIVE
    assert _status(unflagged.id) == S.ACTIVE
    reasons = [c.args[2]["reason"] for c in notifier.send.call_args_list if c.args[0] == "subscription_canceled"]
    assert reasons == ["period_ended"]


def test_incomplete_subscriptions_expire_after_23_hours(make_subscription, now):
    old = make_subscription(S.INCOMPLETE, created_at=now - timedelta(hours=24))
    fresh = make_subscription(S.INCOMPLETE, created_at=now - timedelta(hours=2))

    result = run_lifecycle_pass(now)

    assert result.incomplete_expired == 1
    assert _status(old.id) == S.INCOMPLETE_EXPIRED
    assert _status(fresh.id) == S.INCOMPLETE


def test_rerun_is_a_no_op(make_subscription, now):
    make_subscription(S.INCOMPLETE, created_at=now - timedelta(hours=30))

    run_lifecycle_pass(now)
    second = run_lifecycle_pass(now)

    assert (second.period_end_canceled, second.incomplete_expired, second.errors) == (0, 0, 0)
