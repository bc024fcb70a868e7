# reconciler/__init__.py
"""
Billing event reconciliation engine.
"""
import logging

from flask import Flask

from reconciler.config import get_config
from reconciler.error_handlers import register_error_handlers
from reconciler.extensions import init_extensions
from reconciler.logging_config import setup_logging
from reconciler.metrics import init_metrics
from reconciler.middleware import init_request_id_middleware
from reconciler.services.notifications import init_notifications
from reconciler.services.payment_gateway import init_payment_gateway

logger = logging.getLogger(__name__)


def create_app(config_name=None, **overrides):
    """
    Application factory.

    ``overrides`` are applied on top of the selected configuration, which
    is how tests swap in collaborators or tweak tunables.
    """
    app = Flask(__name__)

    config = get_config(config_name)
    app.config.from_object(config)
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config.update(overrides)

    setup_logging(app)
    init_request_id_middleware(app)

    # Models must be imported before create_all runs
    from reconciler import models  # noqa: F401

    init_extensions(app)
    init_metrics(app)
    init_notifications(app)
    init_payment_gateway(app)

    register_blueprints(app)
    register_error_handlers(app)

    from reconciler.admin.cli import register_commands
    register_commands(app)

    from reconciler.workers.celery_app import init_celery
    init_celery(app)

    logger.info("Application created", extra={"environment": app.config.get("ENVIRONMENT")})
    return app


def register_blueprints(app):
    from reconciler.admin import admin_bp
    from reconciler.health import health_bp
    from reconciler.webhooks import webhooks_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(health_bp)
