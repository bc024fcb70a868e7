"""
Configuration management for the reconciliation engine.
Designed to fail fast with clear error messages in production.
"""

import os
import warnings
from enum import Enum
from urllib.parse import urlparse


class Environment(str, Enum):
    """Environment types"""
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class ConfigurationError(Exception):
    """Raised when configuration validation fails"""
    pass


def _env_bool(name, default="False"):
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_int(name, default):
    return int(os.getenv(name, str(default)))


class BaseConfig:
    """
    Base configuration shared by all environments.
    """

    # ============================================
    # APPLICATION META
    # ============================================
    APP_NAME = os.getenv("APP_NAME", "Billing Reconciler")
    APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
    ENV = Environment.DEVELOPMENT.value
    ENVIRONMENT = ENV
    DEBUG = False
    TESTING = False

    # ============================================
    # SECURITY KEYS
    # ============================================
    @property
    def SECRET_KEY(self):
        key = os.getenv("SECRET_KEY")
        if not key:
            if self.ENV == Environment.PRODUCTION:
                raise ConfigurationError("SECRET_KEY is required in production")
            return "dev-secret-key-change-immediately-in-production"
        return key

    @property
    def WEBHOOK_SIGNING_SECRET(self):
        """Shared secret used to sign processor notifications"""
        secret = os.getenv("WEBHOOK_SIGNING_SECRET", os.getenv("STRIPE_WEBHOOK_SECRET"))
        if not secret:
            if self.ENV == Environment.PRODUCTION:
                raise ConfigurationError("WEBHOOK_SIGNING_SECRET is required in production")
            return "whsec_development"
        return secret

    @property
    def ADMIN_API_TOKEN(self):
        token = os.getenv("ADMIN_API_TOKEN")
        if not token and self.ENV == Environment.PRODUCTION:
            raise ConfigurationError("ADMIN_API_TOKEN is required in production")
        return token or "dev-admin-token"

    WEBHOOK_SIGNATURE_HEADER = os.getenv("WEBHOOK_SIGNATURE_HEADER", "Stripe-Signature")
    WEBHOOK_TOLERANCE_SECONDS = _env_int("WEBHOOK_TOLERANCE_SECONDS", 300)

    # ============================================
    # DATABASE CONFIGURATION
    # ============================================
    @property
    def SQLALCHEMY_DATABASE_URI(self):
        uri = os.getenv("DATABASE_URL")

        if not uri:
            if self.ENV == Environment.PRODUCTION:
                raise ConfigurationError("DATABASE_URL is required in production")
            uri = "sqlite:///reconciler.db"

        # SQLite has no row locks; never acceptable for concurrent workers
        if self.ENV == Environment.PRODUCTION and urlparse(uri).scheme == "sqlite":
            raise ConfigurationError("SQLite is not allowed in production. Use PostgreSQL.")

        return uri

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # ============================================
    # REDIS / CELERY
    # ============================================
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
    CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", REDIS_URL)

    # redis | database
    JOB_LOCK_BACKEND = os.getenv("JOB_LOCK_BACKEND", "redis")
    JOB_LEASE_TTL = _env_int("JOB_LEASE_TTL", 900)

    # Dispatch events in the request thread instead of the worker queue
    PROCESS_EVENTS_INLINE = _env_bool("PROCESS_EVENTS_INLINE", "False")

    # ============================================
    # PAYMENT PROCESSOR
    # ============================================
    @property
    def STRIPE_SECRET_KEY(self):
        key = os.getenv("STRIPE_SECRET_KEY")

        if not key:
            if self.ENV == Environment.PRODUCTION:
                raise ConfigurationError("STRIPE_SECRET_KEY is required in production")
            return "sk_test_xxx"

        if self.ENV == Environment.PRODUCTION and key.startswith("sk_test"):
            raise ConfigurationError("Stripe test key detected in production!")

        return key

    PAYMENT_GATEWAY_TIMEOUT = _env_int("PAYMENT_GATEWAY_TIMEOUT", 20)
    PAYMENT_GATEWAY_MAX_NETWORK_RETRIES = _env_int("PAYMENT_GATEWAY_MAX_NETWORK_RETRIES", 1)

    # ============================================
    # EVENT PROCESSING
    # ============================================
    EVENT_MAX_ATTEMPTS = _env_int("EVENT_MAX_ATTEMPTS", 3)
    EVENT_RETRY_WINDOW_HOURS = _env_int("EVENT_RETRY_WINDOW_HOURS", 24)
    EVENT_PENDING_GRACE_SECONDS = _env_int("EVENT_PENDING_GRACE_SECONDS", 300)
    EVENT_RETRY_BATCH_SIZE = _env_int("EVENT_RETRY_BATCH_SIZE", 100)

    # ============================================
    # RETRY / DUNNING
    # ============================================
    RETRY_BATCH_SIZE = _env_int("RETRY_BATCH_SIZE", 50)
    RETRY_MAX_ATTEMPTS = _env_int("RETRY_MAX_ATTEMPTS", 3)
    # Hours to wait before attempt 1, 2 and 3
    RETRY_SCHEDULE_HOURS = (1, 6, 24)

    DUNNING_REMINDER_DAYS = (1, 3, 7, 14)
    DUNNING_CANCEL_AFTER_DAYS = _env_int("DUNNING_CANCEL_AFTER_DAYS", 14)
    TRIAL_REMINDER_DAYS = (3, 1, 0)

    INCOMPLETE_EXPIRY_HOURS = _env_int("INCOMPLETE_EXPIRY_HOURS", 23)
    SYNC_STALE_AFTER_HOURS = _env_int("SYNC_STALE_AFTER_HOURS", 6)
    SYNC_BATCH_SIZE = _env_int("SYNC_BATCH_SIZE", 100)

    # ============================================
    # NOTIFICATIONS
    # ============================================
    # smtp | log
    NOTIFICATION_BACKEND = os.getenv("NOTIFICATION_BACKEND", "log")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "billing@example.com")
    SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
    SMTP_PORT = _env_int("SMTP_PORT", 587)
    SMTP_USE_TLS = _env_bool("SMTP_USE_TLS", "True")
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_TIMEOUT = _env_int("SMTP_TIMEOUT", 10)

    # ============================================
    # LOGGING / METRICS
    # ============================================
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_REQUESTS = _env_bool("LOG_REQUESTS", "False")
    METRICS_ENABLED = _env_bool("METRICS_ENABLED", "False")

    def validate(self):
        """Touch every lazily validated setting so errors surface at boot."""
        for name in (
            "SECRET_KEY",
            "WEBHOOK_SIGNING_SECRET",
            "ADMIN_API_TOKEN",
            "SQLALCHEMY_DATABASE_URI",
            "STRIPE_SECRET_KEY",
        ):
            getattr(self, name)

        if self.JOB_LOCK_BACKEND not in ("redis", "database"):
            raise ConfigurationError(f"Unknown JOB_LOCK_BACKEND: {self.JOB_LOCK_BACKEND}")
        if self.NOTIFICATION_BACKEND not in ("smtp", "log"):
            raise ConfigurationError(f"Unknown NOTIFICATION_BACKEND: {self.NOTIFICATION_BACKEND}")
        if len(self.RETRY_SCHEDULE_HOURS) < self.RETRY_MAX_ATTEMPTS:
            raise ConfigurationError("RETRY_SCHEDULE_HOURS must cover every retry attempt")


class DevelopmentConfig(BaseConfig):
    """
    Development configuration.
    """

    ENV = Environment.DEVELOPMENT.value
    ENVIRONMENT = ENV
    DEBUG = True
    LOG_REQUESTS = True
    JOB_LOCK_BACKEND = os.getenv("JOB_LOCK_BACKEND", "database")
    PROCESS_EVENTS_INLINE = _env_bool("PROCESS_EVENTS_INLINE", "True")

    def __init__(self):
        if not os.getenv("SECRET_KEY"):
            warnings.warn("SECRET_KEY not set, using development fallback")


class TestingConfig(BaseConfig):
    """
    Testing configuration. In-memory database, no external services.
    """

    ENV = Environment.TESTING.value
    ENVIRONMENT = ENV
    TESTING = True
    JOB_LOCK_BACKEND = "database"
    NOTIFICATION_BACKEND = "log"
    PROCESS_EVENTS_INLINE = True
    METRICS_ENABLED = False

    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URI", "sqlite:///:memory:")
    WEBHOOK_SIGNING_SECRET = "whsec_test_secret"
    ADMIN_API_TOKEN = "test-admin-token"
    STRIPE_SECRET_KEY = "sk_test_mock"
    SECRET_KEY = "test-secret-key"


class ProductionConfig(BaseConfig):
    """
    Production configuration. Every secret must come from the environment.
    """

    ENV = Environment.PRODUCTION.value
    ENVIRONMENT = ENV
    DEBUG = False


def get_config(env: str = None) -> BaseConfig:
    """Get configuration based on environment"""
    if env is None:
        env = os.getenv("ENV", os.getenv("FLASK_ENV", "development")).lower()

    config_map = {
        Environment.DEVELOPMENT.value: DevelopmentConfig,
        Environment.PRODUCTION.value: ProductionConfig,
        Environment.TESTING.value: TestingConfig,
        "staging": ProductionConfig,  # Staging uses production config
    }

    config_class = config_map.get(env.lower())
    if not config_class:
        raise ConfigurationError(f"Unknown environment: {env}")

    config = config_class()
    config.validate()
    return config
