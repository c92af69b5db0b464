"""Error taxonomy for the OCI request gateway.

Every error carries an HTTP status and a machine-readable code so the API
layer can render it directly and the lifecycle tracker can persist it as a
request result.
"""
from __future__ import annotations
from typing import Any, Optional


class GatewayError(Exception):
    """Base error with HTTP status and machine code."""

    status = 500
    code = "internal_error"

    def __init__(self, detail: str, status: Optional[int] = None):
        self.detail = detail
        if status is not None:
            self.status = status
        super().__init__(detail)

    def to_dict(self) -> dict:
        """Convert to API error response format."""
        return {"error": self.code, "message": self.detail}

    def to_result(self) -> dict:
        """Convert to the structured error stored in a request's result."""
        return {"kind": self.code, "message": self.detail}


class ValidationError(GatewayError):
    """Missing or malformed caller input."""

    status = 400
    code = "validation_error"


class UnsupportedRequestTypeError(GatewayError):
    """Request type is not in the registry."""

    status = 400
    code = "unsupported_request_type"

    def __init__(self, request_type: Any):
        self.request_type = request_type
        super().__init__(f"Request type '{request_type}' is not supported")


class TemplateNotFoundError(GatewayError):
    status = 404
    code = "template_not_found"

    def __init__(self, template_id: Any):
        self.template_id = template_id
        super().__init__(f"Template '{template_id}' not found")


class TemplateInactiveError(GatewayError):
    status = 404
    code = "template_inactive"

    def __init__(self, template_id: Any):
        self.template_id = template_id
        super().__init__(f"Template '{template_id}' is inactive")


class RequestNotFoundError(GatewayError):
    status = 404
    code = "request_not_found"

    def __init__(self, request_id: Any):
        self.request_id = request_id
        super().__init__(f"Request '{request_id}' not found")


class AuthorizationError(GatewayError):
    status = 403
    code = "forbidden"


class ConflictError(GatewayError):
    """Illegal state transition on a request or template."""

    status = 409
    code = "conflict"

    def __init__(self, detail: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(detail)


class PersistenceError(GatewayError):
    status = 500
    code = "persistence_error"


class SigningError(GatewayError):
    """Request signing failed.

    The message is always generic: key material must never reach logs or
    persisted results.
    """

    status = 500
    code = "signing_error"


class DispatchError(GatewayError):
    """Base for failures of the outbound provider call."""

    status = 502
    code = "dispatch_error"


class DispatchTimeoutError(DispatchError):
    status = 504
    code = "timeout"


class DispatchNetworkError(DispatchError):
    status = 502
    code = "network_error"


class ProviderError(DispatchError):
    """Provider answered with a non-2xx status.

    Attributes:
        status_code: Upstream HTTP status
        body: Raw upstream response body
    """

    status = 502
    code = "provider_error"

    def __init__(self, status_code: int, body: str, endpoint: str = ""):
        self.status_code = status_code
        self.body = body
        self.endpoint = endpoint
        super().__init__(f"Provider returned HTTP {status_code}")

    def to_result(self) -> dict:
        result = super().to_result()
        result["statusCode"] = self.status_code
        result["details"] = self.body
        return result
