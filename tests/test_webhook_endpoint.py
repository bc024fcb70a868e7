import json
import time
from unittest.mock import patch

import pytest

from helpers import make_event, post_event, subscription_object
from reconciler.extensions import db
from reconciler.models import InboundEvent, ProcessingState

pytestmark = pytest.mark.webhook


class TestAcknowledgement:

    def test_valid_event_is_stored_and_acknowledged(self, client):
        event = make_event("customer.created", {"id": "cus_1", "object": "customer"})

        response = post_event(client, event)

        assert response.status_code == 200
        assert response.get_json() == {"received": True, "duplicate": False}
        record = db.session.get(InboundEvent, event["id"])
        assert record is not None
        assert record.type == "customer.created"
        assert json.loads(record.payload) == event

    def test_unknown_event_type_is_marked_processed(self, client):
        event = make_event("customer.tax_id.created", {"id": "txi_1"})

        post_event(client, event)

        assert db.session.get(InboundEvent, event["id"]).processing_state == ProcessingState.PROCESSED

    def test_request_id_is_echoed(self, client):
        event = make_event("customer.created", {"id": "cus_1"})
        payload = json.dumps(event).encode()
        from reconciler.webhooks.security import build_signature_header

        response = client.post(
            "/webhooks/processor",
            data=payload,
            headers={
                "Stripe-Signature": build_signature_header(payload, "whsec_test_secret"),
                "X-Request-ID": "req-123",
            },
        )

        assert response.headers["X-Request-ID"] == "req-123"


class TestRejection:

    def test_bad_signature_rejected_and_nothing_stored(self, client):
        event = make_event("customer.created", {"id": "cus_1"})

        response = post_event(client, event, secret="whsec_wrong")

        assert response.status_code == 400
        assert InboundEvent.query.count() == 0

    def test_missing_signature_rejected(self, client):
        event = make_event("customer.created", {"id": "cus_1"})

        response = post_event(client, event, header="")

        assert response.status_code == 400
        assert InboundEvent.query.count() == 0

    def test_non_ascii_signature_rejected_as_client_error(self, client):
        event = make_event("customer.created", {"id": "cus_1"})

        response = post_event(client, event, header=f"t={int(time.time())},v1=éabc")

        assert response.status_code == 400
        assert InboundEvent.query.count() == 0

    def test_stale_timestamp_rejected(self, client):
        event = make_event("customer.created", {"id": "cus_1"})

        response = post_event(client, event, timestamp=int(time.time()) - 3600)

        assert response.status_code == 400
        assert InboundEvent.query.count() == 0

    def test_signed_but_malformed_body_rejected(self, client):
        from reconciler.webhooks.security import build_signature_header

        payload = b"not json at all"
        response = client.post(
            "/webhooks/processor",
            data=payload,
            headers={"Stripe-Signature": build_signature_header(payload, "whsec_test_secret")},
        )

        assert response.status_code == 400
        assert InboundEvent.query.count() == 0

    def test_event_without_id_rejected(self, client):
        event = make_event("customer.created", {"id": "cus_1"})
        del event["id"]

        response = post_event(client, event)

        assert response.status_code == 400
        assert InboundEvent.query.count() == 0


class TestIdempotentIngestion:

    def test_duplicate_delivery_processed_once(self, client, notifier, now):
        obj = subscription_object("sub_dup", "cus_dup", "active", now, now.replace(month=4))
        event = make_event("customer.subscription.created", obj)

        first = post_event(client, event)
        second = post_event(client, event)

        assert first.get_json()["duplicate"] is False
        assert second.status_code == 200
        assert second.get_json()["duplicate"] is True
        assert InboundEvent.query.count() == 1
        welcome_calls = [c for c in notifier.send.call_args_list if c.args[0] == "welcome"]
        assert len(welcome_calls) == 1

    def test_handler_failure_does_not_change_acknowledgement(self, client):
        invoice = {"id": "in_1", "object": "invoice", "subscription": "sub_unknown", "lines": {"data": []}}
        event = make_event("invoice.payment_succeeded", invoice)

        response = post_event(client, event)

        assert response.status_code == 200
        record = db.session.get(InboundEvent, event["id"])
        assert record.processing_state == ProcessingState.FAILED
        assert record.retry_count == 1
        assert "sub_unknown" in record.last_error
        assert record.subscription_id == "sub_unknown"


class TestQueuedProcessing:

    def test_event_is_enqueued_when_not_processing_inline(self, app, client):
        app.config["PROCESS_EVENTS_INLINE"] = False
        event = make_event("customer.created", {"id": "cus_1"})

        with patch("reconciler.workers.tasks.process_inbound_event") as task:
            response = post_event(client, event)

        assert response.status_code == 200
        task.delay.assert_called_once_with(event["id"])
        assert db.session.get(InboundEvent, event["id"]).processing_state == ProcessingState.PENDING

    def test_broker_outage_still_acknowledges(self, app, client):
        app.config["PROCESS_EVENTS_INLINE"] = False
        event = make_event("customer.created", {"id": "cus_1"})

        with patch("reconciler.workers.tasks.process_inbound_event") as task:
            task.delay.side_effect = ConnectionError("broker down")
            response = post_event(client, event)

        assert response.status_code == 200
        assert db.session.get(InboundEvent, event["id"]).processing_state == ProcessingState.PENDING
