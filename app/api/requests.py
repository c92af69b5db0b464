"""OCI request gateway HTTP API.

Thin layer: parse the JSON body, call the RequestService, render the result.
All business logic lives in app/core/provisioning_service.py.

Architecture:
    /api/oci/* -> app/core/provisioning_service.py -> app/core/oci -> OCI Identity

Security:
    - Every endpoint requires a Bearer token (@require_bearer_token)
    - Template writes are admin only (enforced by the service)
    - Request reads, reprocess and cancel are limited to owner, company manager or admin
"""

from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from flask import Blueprint, current_app, g, jsonify, request

from app.api.decorators import require_bearer_token
from app.core.exceptions import ValidationError

bp = Blueprint("oci_requests", __name__, url_prefix="/api/oci")

JSON_MAX_SIZE_BYTES = 65536  # 64 KB

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _service():
    return current_app.extensions["oci_request_service"]


def _json_body() -> Dict[str, Any]:
    """Parse the request body as a JSON object."""
    if request.content_length and request.content_length > JSON_MAX_SIZE_BYTES:
        raise ValidationError(f"Request body exceeds {JSON_MAX_SIZE_BYTES} bytes")
    payload = request.get_json(silent=True)
    if payload is None:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _optional_int(value: Any, field_name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer")


def _optional_bool(value: Any, field_name: str) -> Optional[bool]:
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a boolean")
    return value


# ─────────────────────────────────────────────────────────────────────────────
# Templates
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/templates", methods=["GET"])
@require_bearer_token
def list_templates():
    """List active templates."""
    return jsonify(_service().list_templates()), 200


@bp.route("/templates/<int:template_id>", methods=["GET"])
@require_bearer_token
def get_template(template_id: int):
    return jsonify(_service().get_template(template_id, g.actor)), 200


@bp.route("/templates", methods=["POST"])
@require_bearer_token
def create_template():
    """Create a template (admin).

    Body: {"name", "description", "template", "requestType"?, "active"?}
    """
    payload = _json_body()
    created = _service().save_template(
        g.actor,
        name=payload.get("name"),
        description=payload.get("description"),
        body=payload.get("template"),
        request_type=payload.get("requestType"),
        active=_optional_bool(payload.get("active"), "active"),
    )
    return jsonify(created), 201


@bp.route("/templates/<int:template_id>", methods=["PUT"])
@require_bearer_token
def update_template(template_id: int):
    payload = _json_body()
    updated = _service().save_template(
        g.actor,
        template_id=template_id,
        name=payload.get("name"),
        description=payload.get("description"),
        body=payload.get("template"),
        request_type=payload.get("requestType"),
        active=_optional_bool(payload.get("active"), "active"),
    )
    return jsonify(updated), 200


@bp.route("/templates/<int:template_id>", methods=["DELETE"])
@require_bearer_token
def deactivate_template(template_id: int):
    """Soft delete: the template stops accepting new requests."""
    return jsonify(_service().deactivate_template(template_id, g.actor)), 200


# ─────────────────────────────────────────────────────────────────────────────
# Requests
# ─────────────────────────────────────────────────────────────────────────────

@bp.route("/requests", methods=["POST"])
@require_bearer_token
def submit_request():
    """Submit a request for asynchronous dispatch.

    Body: {"templateId"?, "requestType"?, "parameters": {...}}

    Returns:
        202 {"requestId", "status": "PENDING"}
    """
    payload = _json_body()
    ack = _service().submit(
        g.actor,
        template_id=_optional_int(payload.get("templateId"), "templateId"),
        request_type=payload.get("requestType"),
        parameters=payload.get("parameters"),
    )
    return jsonify(ack), 202


@bp.route("/requests", methods=["GET"])
@require_bearer_token
def list_requests():
    """List visible requests. Query: status, limit (default 10), offset."""
    result = _service().list_requests(
        g.actor,
        status=request.args.get("status"),
        limit=_optional_int(request.args.get("limit"), "limit") or 10,
        offset=_optional_int(request.args.get("offset"), "offset") or 0,
    )
    return jsonify(result), 200


@bp.route("/requests/<request_id>", methods=["GET"])
@require_bearer_token
def get_request(request_id: str):
    return jsonify(_service().get_status(request_id, g.actor)), 200


@bp.route("/requests/<request_id>/reprocess", methods=["POST"])
@require_bearer_token
def reprocess_request(request_id: str):
    """ERROR -> PENDING and dispatch again."""
    return jsonify(_service().reprocess(request_id, g.actor)), 202


@bp.route("/requests/<request_id>/cancel", methods=["POST"])
@require_bearer_token
def cancel_request(request_id: str):
    """PENDING -> CANCELLED, only before dispatch has started."""
    return jsonify(_service().cancel(request_id, g.actor)), 200
