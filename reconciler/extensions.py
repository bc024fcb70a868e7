# reconciler/extensions.py
"""
Flask extensions initialization module.
"""

import logging

import redis
from flask_sqlalchemy import SQLAlchemy

# Initialize extensions
db = SQLAlchemy()
redis_client = None

logger = logging.getLogger(__name__)


def init_extensions(app):
    """Initialize all Flask extensions."""

    db.init_app(app)
    logger.info("SQLAlchemy initialized")

    if app.config.get("JOB_LOCK_BACKEND") == "redis":
        init_redis(app)

    if app.config.get("ENVIRONMENT") in ("development", "testing"):
        with app.app_context():
            db.create_all()

    return app


def init_redis(app):
    """Initialize the Redis connection used for job leases."""
    global redis_client
    try:
        redis_url = app.config.get("REDIS_URL", "redis://localhost:6379/0")
        redis_client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )

        redis_client.ping()
        logger.info("Redis initialized successfully")

    except redis.ConnectionError as e:
        logger.error(f"Failed to connect to Redis: {e}")
        if app.config.get("ENVIRONMENT") == "production":
            raise
        redis_client = None


def get_redis():
    """Return the shared Redis client, or None when it is not configured."""
    return redis_client
