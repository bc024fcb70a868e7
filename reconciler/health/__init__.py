from reconciler.health.routes import health_bp

__all__ = ["health_bp"]
