"""OCI Identity API client library.

Architecture:
- signer.py: HTTP Signatures (rsa-sha256) over the canonical header string
- client.py: signed dispatch and outcome classification

Usage:
    from app.core.oci import OciClient, OciRequestSigner

    signer = OciRequestSigner(tenancy, user, fingerprint, pem, base_url)
    client = OciClient(base_url, signer, timeout=30)
    outcome = client.send(plan, payload)
"""
from .client import (
    OciClient,
    DispatchOutcome,
    REQUEST_TIMEOUT,
    SUCCESS,
    PROVIDER_ERROR,
    NETWORK_ERROR,
    TIMEOUT,
)
from .signer import (
    OciRequestSigner,
    SIGNED_HEADERS,
    build_signing_string,
    body_digest,
    http_date,
    load_private_key,
    normalize_pem,
    serialize_body,
)

__all__ = [
    # Client
    "OciClient",
    "DispatchOutcome",
    "REQUEST_TIMEOUT",
    "SUCCESS",
    "PROVIDER_ERROR",
    "NETWORK_ERROR",
    "TIMEOUT",

    # Signer
    "OciRequestSigner",
    "SIGNED_HEADERS",
    "build_signing_string",
    "body_digest",
    "http_date",
    "load_private_key",
    "normalize_pem",
    "serialize_body",
]
