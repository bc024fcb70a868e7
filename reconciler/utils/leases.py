"""
Job leases: at most one concurrent run of each periodic job across workers.
"""
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from reconciler.extensions import db, get_redis
from reconciler.models.job_lease import JobLease
from reconciler.utils.redis_lock import RedisLeaseBackend

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TTL = 900


class DatabaseLeaseBackend:
    """Compare-and-update on the ``job_leases`` table."""

    def acquire(self, name, ttl):
        holder = uuid.uuid4().hex
        now = datetime.utcnow()
        expires_at = now + timedelta(seconds=ttl)

        if db.session.get(JobLease, name) is None:
            db.session.add(JobLease(name=name, holder=holder, acquired_at=now, expires_at=expires_at))
            try:
                db.session.commit()
                return holder
            except IntegrityError:
                db.session.rollback()
                return None

        # Only an expired lease may be taken over
        taken = (
            JobLease.query
            .filter(JobLease.name == name, JobLease.expires_at <= now)
            .update(
                {"holder": holder, "acquired_at": now, "expires_at": expires_at},
                synchronize_session=False,
            )
        )
        db.session.commit()
        return holder if taken else None

    def release(self, name, token):
        db.session.rollback()
        JobLease.query.filter_by(name=name, holder=token).delete(synchronize_session=False)
        db.session.commit()


def _backend():
    if current_app.config.get("JOB_LOCK_BACKEND", "redis") == "redis":
        client = get_redis()
        if client is not None:
            return RedisLeaseBackend(client)
        logger.warning("Redis unavailable, falling back to database leases")
    return DatabaseLeaseBackend()


@contextmanager
def job_lease(name, ttl=None):
    """
    Try to take the named lease without blocking.

    Yields True when this caller holds the lease, False when another run
    does. The lease is released on exit.
    """
    ttl = ttl or current_app.config.get("JOB_LEASE_TTL", DEFAULT_LEASE_TTL)
    backend = _backend()
    token = backend.acquire(name, ttl)

    if token is None:
        logger.info("Job lease held elsewhere, skipping run", extra={"lease": name})
        yield False
        return

    logger.debug("Job lease acquired", extra={"lease": name, "ttl": ttl})
    try:
        yield True
    finally:
        backend.release(name, token)
