"""OCI Request Gateway Flask Application Package.

To use the Flask app:
    from app.flask_app import create_app

To use the request service without HTTP:
    from app.core.provisioning_service import build_service
"""
# Note: We don't import flask_app by default to avoid the Flask dependency
# for scripts that only use app.core
