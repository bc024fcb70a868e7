# payment_gateway.py
"""
Payment collaborator. The engine only ever needs two things from the
processor: re-attempt collection of an outstanding payment, and fetch the
processor's current view of a subscription.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe
from flask import current_app

from reconciler.errors import CollaboratorError, TransientCollaboratorError

logger = logging.getLogger(__name__)


@dataclass
class CollectionResult:
    succeeded: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class PaymentGateway:
    """Interface every payment collaborator implements."""

    def collect_payment(self, payment_reference: str) -> CollectionResult:
        raise NotImplementedError

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def cancel_subscription(self, subscription_id: str, at_period_end: bool = False) -> Dict[str, Any]:
        raise NotImplementedError


class StripePaymentGateway(PaymentGateway):
    """Stripe-backed collaborator. Blocking calls, bounded by the client timeout."""

    RETRYABLE_INTENT_STATES = ("requires_payment_method", "requires_confirmation")

    def __init__(self, api_key: str, timeout: int = 20, max_network_retries: int = 1):
        stripe.api_key = api_key
        stripe.max_network_retries = max_network_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def collect_payment(self, payment_reference: str) -> CollectionResult:
        if not payment_reference:
            return CollectionResult(False, "missing_reference", "No payment reference on record")

        try:
            if payment_reference.startswith("in_"):
                return self._pay_invoice(payment_reference)
            if payment_reference.startswith("pi_"):
                return self._confirm_payment_intent(payment_reference)
        except stripe.CardError as e:
            logger.info(
                "Payment declined on retry",
                extra={"payment_reference": payment_reference, "code": e.code},
            )
            return CollectionResult(False, e.code or "card_declined", e.user_message or str(e))
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise TransientCollaboratorError(
                f"Processor unavailable: {e}", code=getattr(e, "code", None)
            ) from e
        except stripe.StripeError as e:
            raise CollaboratorError(f"Processor error: {e}", code=e.code) from e

        return CollectionResult(
            False, "unsupported_reference", f"Cannot collect reference {payment_reference}"
        )

    def _pay_invoice(self, invoice_id):
        invoice = stripe.Invoice.pay(invoice_id)
        if invoice.get("status") == "paid":
            return CollectionResult(True)
        return CollectionResult(False, invoice.get("status"), "Invoice remains unpaid")

    def _confirm_payment_intent(self, intent_id):
        intent = stripe.PaymentIntent.retrieve(intent_id)
        if intent.get("status") in self.RETRYABLE_INTENT_STATES:
            intent = stripe.PaymentIntent.confirm(intent_id)

        if intent.get("status") == "succeeded":
            return CollectionResult(True)

        last_error = intent.get("last_payment_error") or {}
        return CollectionResult(
            False,
            last_error.get("code") or intent.get("status"),
            last_error.get("message") or f"Payment intent is {intent.get('status')}",
        )

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            return stripe.Subscription.retrieve(subscription_id)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise TransientCollaboratorError(f"Processor unavailable: {e}") from e
        except stripe.StripeError as e:
            raise CollaboratorError(f"Processor error: {e}", code=e.code) from e

    def cancel_subscription(self, subscription_id: str, at_period_end: bool = False) -> Dict[str, Any]:
        try:
            if at_period_end:
                return stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
            return stripe.Subscription.cancel(subscription_id)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise TransientCollaboratorError(f"Processor unavailable: {e}") from e
        except stripe.StripeError as e:
            raise CollaboratorError(f"Processor error: {e}", code=e.code) from e


def init_payment_gateway(app):
    """Attach the configured payment collaborator to the app."""
    if "payment_gateway" in app.extensions:
        return app.extensions["payment_gateway"]

    gateway = StripePaymentGateway(
        api_key=app.config["STRIPE_SECRET_KEY"],
        timeout=app.config.get("PAYMENT_GATEWAY_TIMEOUT", 20),
        max_network_retries=app.config.get("PAYMENT_GATEWAY_MAX_NETWORK_RETRIES", 1),
    )
    app.extensions["payment_gateway"] = gateway
    return gateway


def get_payment_gateway() -> PaymentGateway:
    return current_app.extensions["payment_gateway"]
