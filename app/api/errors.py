"""Error handlers for the application.

Every response is JSON: ``{"error": <code>, "message": <detail>}``.
"""
import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

from app.core.exceptions import GatewayError

logger = logging.getLogger(__name__)


def _error_response(code: str, message: str, status: int):
    return jsonify({"error": code, "message": message}), status


def register_error_handlers(app):
    """Register error handlers with the Flask app."""

    @app.errorhandler(GatewayError)
    def gateway_error(error: GatewayError):
        """Domain errors carry their own status and code."""
        if error.status >= 500:
            logger.error("Gateway error status=%s code=%s: %s", error.status, error.code, error.detail)
        else:
            logger.info("Request rejected status=%s code=%s: %s", error.status, error.code, error.detail)
        return jsonify(error.to_dict()), error.status

    @app.errorhandler(400)
    def bad_request(error):
        """Handle 400 Bad Request errors (malformed JSON bodies included)."""
        return _error_response("bad_request", getattr(error, "description", None) or "Bad Request", 400)

    @app.errorhandler(401)
    def unauthorized(error):
        return _error_response("unauthorized", "Authentication required", 401)

    @app.errorhandler(403)
    def forbidden(error):
        return _error_response("forbidden", "Insufficient permissions", 403)

    @app.errorhandler(404)
    def not_found(error):
        return _error_response("not_found", "Resource not found", 404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return _error_response("method_not_allowed", "Method not allowed", 405)

    @app.errorhandler(500)
    def internal_error(error):
        """Handle 500 Internal Server Error."""
        logger.error("Internal error: %s", error, exc_info=True)
        return _error_response("internal_error", "An unexpected error occurred", 500)

    @app.errorhandler(Exception)
    def unhandled_exception(error):
        """Catch-all for exceptions that escaped the route handlers."""
        if isinstance(error, HTTPException):
            return _error_response(
                (error.name or "error").lower().replace(" ", "_"),
                error.description or error.name,
                error.code or 500,
            )
        # ALWAYS log the error (even in production) - logs are secure
        logger.error("Unhandled exception: %s", error, exc_info=True)
        return _error_response("internal_error", "An unexpected error occurred", 500)
