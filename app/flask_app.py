"""Flask application factory and bootstrap.

This module provides the create_app() factory function for initializing
the Flask application with all blueprints, error handlers and the request
service.

Run with gunicorn:
    gunicorn "app.flask_app:create_app()"
"""
from __future__ import annotations
import logging
import os

from flask import Flask
from werkzeug.middleware.proxy_fix import ProxyFix

from app.config import AppConfig, load_settings

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Application Factory
# ─────────────────────────────────────────────────────────────────────────────
def create_app(cfg: AppConfig | None = None, service=None) -> Flask:
    """Create and configure Flask application.

    Args:
        cfg: Settings (default: load_settings())
        service: Prebuilt RequestService (default: build_service(cfg))
    """
    if cfg is None:
        cfg = load_settings()

    app = Flask(__name__)

    # Store config for easy access in routes
    app.config["APP_CONFIG"] = cfg
    app.config["DEMO_MODE"] = cfg.demo_mode
    app.config["MAX_CONTENT_LENGTH"] = 1024 * 1024

    # Trust X-Forwarded-* headers from proxy (nginx)
    if os.environ.get("TRUST_PROXY_HEADERS", "false").strip().lower() == "true":
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)  # type: ignore

    if service is None:
        from app.core.provisioning_service import build_service
        service = build_service(cfg)
    app.extensions["oci_request_service"] = service

    # Register blueprints
    from app.api import errors, health
    from app.api import requests as request_routes

    app.register_blueprint(health.bp)
    app.register_blueprint(request_routes.bp)

    # Register error handlers
    errors.register_error_handlers(app)

    mode_label = "DEMO" if cfg.demo_mode else "PRODUCTION"
    logger.info("Mode=%s; OCI request API registered at /api/oci", mode_label)
    if not cfg.signing_identity_configured:
        logger.warning("No OCI signing identity configured; /ready will report degraded")

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    create_app().run(host="0.0.0.0", port=5000, debug=False)
