from reconciler.webhooks import handlers  # noqa: F401  registers event handlers
from reconciler.webhooks.dispatcher import dispatcher
from reconciler.webhooks.routes import webhooks_bp

__all__ = ["dispatcher", "webhooks_bp"]
