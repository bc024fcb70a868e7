# reconciler/utils/redis_lock.py
import logging

from redis.exceptions import LockError, RedisError

logger = logging.getLogger(__name__)

KEY_PREFIX = "reconciler:lease:"


class RedisLeaseBackend:
    """Non-blocking Redis locks, one key per job name."""

    def __init__(self, client):
        self.client = client

    def acquire(self, name, ttl):
        lock = self.client.lock(f"{KEY_PREFIX}{name}", timeout=ttl)
        try:
            acquired = lock.acquire(blocking=False)
        except RedisError as e:
            logger.error(f"Could not reach Redis for lease {name}: {e}")
            return None
        return lock if acquired else None

    def release(self, name, token):
        try:
            token.release()
        except LockError:
            # Expired under us; another worker may already hold it
            logger.warning("Lease expired before release", extra={"lease": name})
