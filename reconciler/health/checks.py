import time

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from reconciler.extensions import db, get_redis
from reconciler.models.failed_payment import FailedPayment
from reconciler.webhooks.store import EventStore


def _check_database():
    start = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        latency = round((time.time() - start) * 1000, 2)
        return {"status": "ok", "latency_ms": latency}
    except SQLAlchemyError as e:
        db.session.rollback()
        return {"status": "error", "error": str(e)}


def _check_redis():
    client = get_redis()
    if client is None:
        return {"status": "skipped", "reason": "Redis not configured"}

    start = time.time()
    try:
        client.ping()
        latency = round((time.time() - start) * 1000, 2)
        return {"status": "ok", "latency_ms": latency}
    except Exception as e:
        return {"status": "error", "error": str(e)}


def _check_backlog():
    try:
        unresolved = FailedPayment.query.filter(FailedPayment.resolved.is_(False)).count()
        return {
            "status": "ok",
            "events": EventStore.counts_by_state(),
            "unresolved_failed_payments": unresolved,
        }
    except SQLAlchemyError as e:
        db.session.rollback()
        return {"status": "error", "error": str(e)}


def run_health_checks():
    checks = {
        "database": _check_database(),
        "redis": _check_redis(),
        "backlog": _check_backlog(),
    }
    healthy = all(check["status"] in ("ok", "skipped") for check in checks.values())
    return healthy, checks
