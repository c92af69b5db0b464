"""Health check endpoints."""
from flask import Blueprint, current_app, jsonify

bp = Blueprint("health", __name__)


@bp.route("/health")
def health_check():
    """Basic health check endpoint."""
    return ("ok", 200, {"Content-Type": "text/plain"})


@bp.route("/ready")
def readiness_check():
    """Readiness: the service is wired and an OCI signing identity is configured."""
    cfg = current_app.config.get("APP_CONFIG")
    signing_ready = bool(cfg is not None and cfg.signing_identity_configured)
    service_ready = current_app.extensions.get("oci_request_service") is not None
    body = {
        "status": "ready" if signing_ready and service_ready else "degraded",
        "signingIdentity": signing_ready,
        "service": service_ready,
    }
    return jsonify(body), 200 if signing_ready and service_ready else 503
