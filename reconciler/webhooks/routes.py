import json
import logging

from flask import Blueprint, current_app, jsonify, request

from reconciler.errors import MalformedEventError, SignatureVerificationError
from reconciler.metrics import get_metrics
from reconciler.webhooks.dispatcher import dispatcher, subscription_id_of
from reconciler.webhooks.security import verify_signature
from reconciler.webhooks.store import EventStore

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


def _parse_event(payload):
    try:
        event = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise MalformedEventError(f"Request body is not valid JSON: {e}")

    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise MalformedEventError("Event must be an object with an id and a type")
    return event


def _schedule_processing(record):
    if current_app.config.get("PROCESS_EVENTS_INLINE", False):
        dispatcher.dispatch(record)
        return

    from reconciler.workers.tasks import process_inbound_event

    try:
        process_inbound_event.delay(record.id)
    except Exception:
        # Still pending; the event retry sweep picks it up
        logger.exception("Could not enqueue event for processing", extra={"event_id": record.id})


@webhooks_bp.route("/processor", methods=["POST"])
def receive_processor_event():
    """
    Verify, store, acknowledge. Nothing is stored for a rejected request,
    and handler outcomes never change the response.
    """
    metrics = get_metrics()
    payload = request.get_data(cache=True)
    signature = request.headers.get(current_app.config["WEBHOOK_SIGNATURE_HEADER"])

    if not verify_signature(
        payload,
        signature,
        current_app.config["WEBHOOK_SIGNING_SECRET"],
        tolerance=current_app.config.get("WEBHOOK_TOLERANCE_SECONDS", 300),
    ):
        metrics.record_webhook("rejected")
        raise SignatureVerificationError("Invalid webhook signature")

    try:
        event = _parse_event(payload)
    except MalformedEventError:
        metrics.record_webhook("malformed")
        raise

    stored = EventStore.record_if_new(
        event["id"],
        event["type"],
        payload,
        subscription_id=subscription_id_of(event),
    )

    if stored.is_new:
        metrics.record_webhook("accepted")
        _schedule_processing(stored.record)
    else:
        metrics.record_webhook("duplicate")

    return jsonify({"received": True, "duplicate": not stored.is_new}), 200
