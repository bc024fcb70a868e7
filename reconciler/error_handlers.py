# reconciler/error_handlers.py
import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from reconciler.errors import ReconcilerError

logger = logging.getLogger(__name__)


def register_error_handlers(app):
    """Register all error handlers for the application"""

    @app.errorhandler(ReconcilerError)
    def handle_reconciler_error(e):
        log = logger.warning if e.status_code < 500 else logger.error
        log(f"{type(e).__name__}: {e.message} - Path: {request.path}")
        body = {
            "error": type(e).__name__,
            "message": e.message,
            "path": request.path,
        }
        if e.payload:
            body["details"] = e.payload
        return jsonify(body), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        if e.code >= 500:
            logger.error(f"HTTP {e.code}: {e.description} - Path: {request.path}")
        else:
            logger.info(f"HTTP {e.code}: {request.method} {request.path}")
        return jsonify({
            "error": e.name,
            "message": e.description,
            "path": request.path,
        }), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        logger.exception(f"Unhandled error - Path: {request.path}")
        return jsonify({
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
            "path": request.path,
        }), 500

    return app
