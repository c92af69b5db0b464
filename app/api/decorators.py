"""
Flask decorators for authentication.

Bearer tokens (RFC 6750) are JWTs signed with the application secret. Token
issuance lives outside this service; only verification happens here.

Security:
- Signature verified with the configured algorithms only (default HS256)
- Expiration enforced, issuer checked when configured
- Tokens are never logged; only a truncated SHA-256 hash is
"""

import hashlib
import logging
from functools import wraps
from typing import Any, Dict, Optional

import jwt
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    InvalidIssuerError,
    InvalidSignatureError,
    InvalidTokenError,
    MissingRequiredClaimError,
)
from flask import current_app, g, jsonify, request

from app.core.rbac import Actor

logger = logging.getLogger(__name__)


class TokenValidationError(Exception):
    """Exception raised when JWT token validation fails."""
    pass


def validate_jwt_token(token: str) -> Dict[str, Any]:
    """
    Validate a bearer JWT.

    Args:
        token: JWT token string (without "Bearer " prefix)

    Returns:
        dict: Validated token claims

    Raises:
        TokenValidationError: If any validation fails
    """
    cfg = current_app.config["APP_CONFIG"]

    options = {"require": ["exp", "sub"]}
    kwargs: Dict[str, Any] = {}
    if cfg.jwt_issuer:
        kwargs["issuer"] = cfg.jwt_issuer

    try:
        return jwt.decode(
            token,
            cfg.jwt_secret,
            algorithms=list(cfg.jwt_algorithms),
            options=options,
            leeway=5,
            **kwargs,
        )
    except ExpiredSignatureError:
        raise TokenValidationError("Token expired")
    except InvalidIssuerError:
        raise TokenValidationError("Invalid token issuer")
    except MissingRequiredClaimError as e:
        raise TokenValidationError(f"Token is missing claim '{e.claim}'")
    except InvalidSignatureError:
        raise TokenValidationError("Invalid token signature")
    except DecodeError:
        raise TokenValidationError("Malformed token")
    except InvalidTokenError as e:
        raise TokenValidationError(f"Invalid token: {type(e).__name__}")


def _token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


def _unauthorized(message: str):
    response = jsonify({"error": "unauthorized", "message": message})
    response.status_code = 401
    response.headers["WWW-Authenticate"] = 'Bearer realm="oci-gateway"'
    return response


def require_bearer_token(fn):
    """
    Require a valid Bearer token and expose the caller as ``g.actor``.

    Example:
        @bp.route("/requests", methods=["POST"])
        @require_bearer_token
        def submit_request():
            actor = g.actor
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        auth_header = request.headers.get("Authorization", "")

        if not auth_header:
            logger.warning("Request missing Authorization header path=%s", request.path)
            return _unauthorized("Authorization header required. Use 'Authorization: Bearer <token>'")

        if not auth_header.startswith("Bearer "):
            logger.warning("Invalid Authorization format path=%s", request.path)
            return _unauthorized("Invalid Authorization header format. Expected 'Bearer <token>'")

        token = auth_header[7:].strip()
        if not token:
            return _unauthorized("Bearer token is empty")

        try:
            claims = validate_jwt_token(token)
        except TokenValidationError as e:
            logger.warning("Bearer token rejected token_hash=%s path=%s reason=%s", _token_hash(token), request.path, e)
            return _unauthorized(str(e))

        g.actor = Actor.from_claims(claims)
        g.token_claims = claims
        logger.debug("Bearer token accepted token_hash=%s sub=%s", _token_hash(token), g.actor.user_id)
        return fn(*args, **kwargs)

    return wrapper


def get_current_actor() -> Optional[Actor]:
    """Actor set by @require_bearer_token, or None outside an authenticated request."""
    return getattr(g, "actor", None)
