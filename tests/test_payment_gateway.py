from unittest.mock import patch

import pytest
import stripe

from reconciler.errors import CollaboratorError, TransientCollaboratorError
from reconciler.services.payment_gateway import StripePaymentGateway

pytestmark = pytest.mark.payment


@pytest.fixture()
def stripe_gateway():
    return StripePaymentGateway(api_key="sk_test_mock", timeout=5, max_network_retries=0)


class TestCollectPayment:

    def test_paid_invoice(self, stripe_gateway):
        with patch.object(stripe.Invoice, "pay", return_value={"status": "paid"}) as pay:
            result = stripe_gateway.collect_payment("in_123")

        pay.assert_called_once_with("in_123")
        assert result.succeeded is True

    def test_invoice_still_open(self, stripe_gateway):
        with patch.object(stripe.Invoice, "pay", return_value={"status": "open"}):
            result = stripe_gateway.collect_payment("in_123")

        assert result.succeeded is False
        assert result.error_code == "open"

    def test_card_declined_is_a_failed_collection(self, stripe_gateway):
        error = stripe.CardError("Your card was declined.", None, "card_declined")
        with patch.object(stripe.Invoice, "pay", side_effect=error):
            result = stripe_gateway.collect_payment("in_123")

        assert result.succeeded is False
        assert result.error_code == "card_declined"

    def test_payment_intent_is_confirmed(self, stripe_gateway):
        with patch.object(stripe.PaymentIntent, "retrieve", return_value={"status": "requires_confirmation"}), \
                patch.object(stripe.PaymentIntent, "confirm", return_value={"status": "succeeded"}) as confirm:
            result = stripe_gateway.collect_payment("pi_123")

        confirm.assert_called_once_with("pi_123")
        assert result.succeeded is True

    def test_payment_intent_failure_reports_last_error(self, stripe_gateway):
        intent = {"status": "requires_payment_method", "last_payment_error": {"code": "expired_card", "message": "Expired"}}
        with patch.object(stripe.PaymentIntent, "retrieve", return_value=intent), \
                patch.object(stripe.PaymentIntent, "confirm", return_value=intent):
            result = stripe_gateway.collect_payment("pi_123")

        assert (result.succeeded, result.error_code, result.error_message) == (False, "expired_card", "Expired")

    @pytest.mark.parametrize("reference", [None, "", "ch_123"])
    def test_unusable_reference(self, stripe_gateway, reference):
        assert stripe_gateway.collect_payment(reference).succeeded is False

    def test_connection_error_is_transient(self, stripe_gateway):
        with patch.object(stripe.Invoice, "pay", side_effect=stripe.APIConnectionError("network down")):
            with pytest.raises(TransientCollaboratorError):
                stripe_gateway.collect_payment("in_123")

    def test_other_processor_errors_surface(self, stripe_gateway):
        with patch.object(stripe.Invoice, "pay", side_effect=stripe.InvalidRequestError("No such invoice", "id")):
            with pytest.raises(CollaboratorError) as exc_info:
                stripe_gateway.collect_payment("in_123")

        assert not isinstance(exc_info.value, TransientCollaboratorError)


class TestSubscriptions:

    def test_retrieve(self, stripe_gateway):
        with patch.object(stripe.Subscription, "retrieve", return_value={"id": "sub_1"}) as retrieve:
            assert stripe_gateway.retrieve_subscription("sub_1") == {"id": "sub_1"}

        retrieve.assert_called_once_with("sub_1")

    def test_retrieve_rate_limited(self, stripe_gateway):
        with patch.object(stripe.Subscription, "retrieve", side_effect=stripe.RateLimitError("slow down")):
            with pytest.raises(TransientCollaboratorError):
                stripe_gateway.retrieve_subscription("sub_1")

    def test_cancel_now(self, stripe_gateway):
        with patch.object(stripe.Subscription, "cancel", return_value={"status": "canceled"}) as cancel:
            stripe_gateway.cancel_subscription("sub_1")

        cancel.assert_called_once_with("sub_1")

    def test_cancel_at_period_end(self, stripe_gateway):
        with patch.object(stripe.Subscription, "modify", return_value={}) as modify:
            stripe_gateway.cancel_subscription("sub_1", at_period_end=True)

        modify.assert_called_once_with("sub_1", cancel_at_period_end=True)
