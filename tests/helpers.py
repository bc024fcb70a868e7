"""Builders for processor-shaped documents used across the suite."""
import json
import time
from datetime import datetime

from faker import Faker

from reconciler.webhooks.security import build_signature_header

fake = Faker()

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_TOKEN = "test-admin-token"


def epoch(value):
    return int((value - datetime(1970, 1, 1)).total_seconds())


def make_event(event_type, obj, event_id=None, created=None):
    """Processor-shaped event document."""
    return {
        "id": event_id or f"evt_{fake.unique.bothify('????????????####')}",
        "object": "event",
        "type": event_type,
        "created": epoch(created) if created else int(time.time()),
        "data": {"object": obj},
    }


def subscription_object(subscription_id, customer_id, status, period_start, period_end, **extra):
    obj = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "current_period_start": epoch(period_start),
        "current_period_end": epoch(period_end),
        "cancel_at_period_end": False,
        "canceled_at": None,
        "trial_end": None,
        "items": {"data": [{"price": {"id": "price_monthly", "unit_amount": 2000, "currency": "usd"}}]},
        "metadata": {"customer_email": "customer@example.com"},
    }
    obj.update(extra)
    return obj


def invoice_object(subscription_id, period_start, period_end, billing_boundary=None, **extra):
    obj = {
        "id": f"in_{fake.unique.bothify('????????####')}",
        "object": "invoice",
        "subscription": subscription_id,
        "customer": "cus_test",
        "amount_due": 2000,
        "currency": "usd",
        "attempt_count": 1,
        "period_end": epoch(billing_boundary or period_start),
        "lines": {"data": [{"period": {"start": epoch(period_start), "end": epoch(period_end)}}]},
    }
    obj.update(extra)
    return obj


def post_event(client, event, secret=WEBHOOK_SECRET, timestamp=None, header=None):
    payload = json.dumps(event).encode()
    headers = {"Content-Type": "application/json"}
    headers["Stripe-Signature"] = header if header is not None else build_signature_header(
        payload, secret, timestamp=timestamp
    )
    return client.post("/webhooks/processor", data=payload, headers=headers)
