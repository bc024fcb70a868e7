from datetime import datetime

from flask import Blueprint, Response, abort, current_app, jsonify

from reconciler.health.checks import run_health_checks
from reconciler.metrics import get_metrics

health_bp = Blueprint("health", __name__)


@health_bp.route("/health", methods=["GET"])
def health():
    healthy, checks = run_health_checks()
    return jsonify({
        "status": "ok" if healthy else "degraded",
        "version": current_app.config.get("APP_VERSION"),
        "timestamp": datetime.utcnow().isoformat(),
        "checks": checks,
    }), 200 if healthy else 503


@health_bp.route("/metrics", methods=["GET"])
def metrics():
    payload = get_metrics().export()
    if payload is None:
        abort(404)
    return Response(payload, mimetype="text/plain; version=0.0.4")
