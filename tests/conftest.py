from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest
from faker import Faker

from reconciler import create_app
from reconciler.extensions import db
from reconciler.models import FailedPayment, Subscription, SubscriptionStatus
from reconciler.services.notifications import NotificationService
from reconciler.services.payment_gateway import CollectionResult, PaymentGateway

# Initialize Faker for generating test data
fake = Faker()


def pytest_configure(config):
    config.addinivalue_line("markers", "db: mark test as database-intensive")
    config.addinivalue_line("markers", "payment: mark test as payment-related")
    config.addinivalue_line("markers", "webhook: mark test as webhook ingestion related")


@pytest.fixture()
def notifier():
    """Notification collaborator that records calls instead of sending."""
    service = Mock(spec=NotificationService)
    service.send.return_value = True
    return service


@pytest.fixture()
def gateway():
    """Payment collaborator that succeeds unless told otherwise."""
    payment_gateway = Mock(spec=PaymentGateway)
    payment_gateway.collect_payment.return_value = CollectionResult(True)
    return payment_gateway


@pytest.fixture()
def app(notifier, gateway):
    app = create_app("testing")
    app.extensions["notification_service"] = notifier
    app.extensions["payment_gateway"] = gateway

    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def now():
    return datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture()
def make_subscription(app, now):
    """Insert a subscription row directly."""

    def _make(status=SubscriptionStatus.ACTIVE, **overrides):
        values = {
            "id": f"sub_{fake.unique.bothify('????????####')}",
            "customer_id": f"cus_{fake.unique.bothify('????????####')}",
            "customer_email": fake.email(),
            "plan_id": "price_monthly",
            "status": status,
            "current_period_start": now - timedelta(days=30),
            "current_period_end": now,
            "amount": 2000,
            "currency": "usd",
            "created_at": now - timedelta(days=60),
        }
        values.update(overrides)
        subscription = Subscription(**values)
        db.session.add(subscription)
        db.session.commit()
        return subscription

    return _make


@pytest.fixture()
def make_failed_payment(app, now):
    def _make(subscription=None, **overrides):
        values = {
            "customer_id": subscription.customer_id if subscription else f"cus_{fake.bothify('########')}",
            "subscription_id": subscription.id if subscription else None,
            "payment_reference": f"in_{fake.unique.bothify('????????####')}",
            "period_end": subscription.current_period_end if subscription else None,
            "amount": 2000,
            "currency": "usd",
            "retry_count": 0,
            "next_retry_at": now,
            "resolved": False,
            "created_at": now - timedelta(hours=1),
        }
        values.update(overrides)
        record = FailedPayment(**values)
        db.session.add(record)
        db.session.commit()
        return record

    return _make


