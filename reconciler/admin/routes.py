import hmac

from flask import Blueprint, abort, current_app, jsonify, request

from reconciler.admin import commands
from reconciler.errors import SubscriptionNotFound
from reconciler.extensions import db
from reconciler.models.subscription import Subscription

ADMIN_TOKEN_HEADER = "X-Admin-Token"
MAX_PAGE_SIZE = 500

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


@admin_bp.before_request
def require_admin_token():
    supplied = request.headers.get(ADMIN_TOKEN_HEADER, "")
    expected = current_app.config.get("ADMIN_API_TOKEN") or ""
    if not expected or not hmac.compare_digest(supplied.encode(), expected.encode()):
        abort(401)


def _page_args():
    limit = min(request.args.get("limit", 100, type=int), MAX_PAGE_SIZE)
    offset = max(request.args.get("offset", 0, type=int), 0)
    return limit, offset


@admin_bp.route("/subscriptions/<subscription_id>", methods=["GET"])
def get_subscription(subscription_id):
    subscription = db.session.get(Subscription, subscription_id)
    if subscription is None:
        raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
    return jsonify(subscription.to_dict())


@admin_bp.route("/subscriptions/<subscription_id>/cancel", methods=["POST"])
def cancel_subscription(subscription_id):
    body = request.get_json(silent=True) or {}
    result = commands.cancel_subscription(subscription_id, immediate=bool(body.get("immediate", True)))
    return jsonify({
        "subscription": result.subscription.to_dict(),
        "changed": result.changed,
    })


@admin_bp.route("/events/<event_id>/replay", methods=["POST"])
def replay_event(event_id):
    result = commands.replay_event(event_id)
    return jsonify({
        "event_id": result.event_id,
        "replayed": result.replayed,
        "reason": result.reason,
        "processing_state": result.outcome.state if result.outcome else None,
        "error": result.outcome.error if result.outcome else None,
    })


@admin_bp.route("/events/failed", methods=["GET"])
def list_failed_events():
    limit, offset = _page_args()
    events = commands.failed_events(limit=limit, offset=offset)
    return jsonify({"events": [event.to_dict() for event in events], "count": len(events)})


@admin_bp.route("/failed-payments", methods=["GET"])
def list_failed_payments():
    limit, offset = _page_args()
    records = commands.unresolved_failed_payments(limit=limit, offset=offset)
    return jsonify({"failed_payments": [record.to_dict() for record in records], "count": len(records)})
