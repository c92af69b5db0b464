"""OCI HTTP request signing (draft-cavage HTTP Signatures, version 1).

The provider rebuilds the canonical signing string from the received
headers and verifies it against the account's public key, so header names,
order and values must match exactly what is sent.
"""
from __future__ import annotations
import base64
import hashlib
import json
import logging
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any, Dict, Optional, Union
from urllib.parse import urlparse

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from app.core.exceptions import SigningError

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/json"

SIGNED_HEADERS = (
    "(request-target)",
    "host",
    "date",
    "content-type",
    "content-length",
    "x-content-sha256",
)

Timestamp = Union[datetime, int, float, None]


def normalize_pem(pem: str) -> str:
    """Normalize PEM text from env vars (literal ``\\n``, stray indentation)."""
    if not pem:
        return pem
    text = pem.replace("\\n", "\n")
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return "\n".join(lines) + "\n"


def serialize_body(body: Any) -> str:
    """Serialize a request body exactly as it is signed and sent.

    ``None`` serializes to the empty string; strings are taken as already
    serialized; anything else is compact JSON.
    """
    if body is None:
        return ""
    if isinstance(body, str):
        return body
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False)


def body_digest(serialized: str) -> str:
    """Base64 SHA-256 of the serialized body."""
    return base64.b64encode(hashlib.sha256(serialized.encode("utf-8")).digest()).decode("ascii")


def http_date(timestamp: Timestamp = None) -> str:
    """Format ``timestamp`` as an RFC 7231 IMF-fixdate (``Sun, 06 Nov 1994 08:49:37 GMT``)."""
    if timestamp is None:
        moment = datetime.now(timezone.utc)
    elif isinstance(timestamp, datetime):
        moment = timestamp if timestamp.tzinfo else timestamp.replace(tzinfo=timezone.utc)
        moment = moment.astimezone(timezone.utc)
    else:
        moment = datetime.fromtimestamp(float(timestamp), tz=timezone.utc)
    return format_datetime(moment.replace(microsecond=0), usegmt=True)


def build_signing_string(method: str, path: str, headers: Dict[str, str]) -> str:
    """Build the canonical newline-joined string the signature covers."""
    lines = [f"(request-target): {method.lower()} {path}"]
    for name in SIGNED_HEADERS[1:]:
        lines.append(f"{name}: {headers[name]}")
    return "\n".join(lines)


def load_private_key(pem: str, passphrase: Optional[str] = None) -> rsa.RSAPrivateKey:
    """Load an RSA private key from PEM text.

    Raises:
        SigningError: Key missing, unreadable, encrypted without the right
            passphrase, or not RSA. The message never includes key material.
    """
    if not pem:
        raise SigningError("OCI private key is not configured")
    try:
        key = serialization.load_pem_private_key(
            normalize_pem(pem).encode("utf-8"),
            password=passphrase.encode("utf-8") if passphrase else None,
        )
    except (ValueError, TypeError, UnsupportedAlgorithm):
        raise SigningError("OCI private key could not be loaded") from None
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SigningError("OCI private key must be an RSA key")
    return key


class OciRequestSigner:
    """Computes OCI signature headers for one API identity.

    The signer holds only immutable configuration (key id, host, parsed key);
    ``sign`` is a pure function of its arguments.

    Usage:
        signer = OciRequestSigner(tenancy, user, fingerprint, private_key_pem,
                                  base_url="https://identity.sa-saopaulo-1.oraclecloud.com")
        headers = signer.sign("POST", "/20160918/groups", {"name": "ops"})
    """

    def __init__(
        self,
        tenancy_id: str,
        user_id: str,
        fingerprint: str,
        private_key: Union[str, rsa.RSAPrivateKey, None],
        base_url: str,
        passphrase: Optional[str] = None,
    ):
        self.key_id = f"{tenancy_id}/{user_id}/{fingerprint}"
        self.host = urlparse(base_url).netloc
        if not self.host:
            raise SigningError("OCI base URL has no host")
        if isinstance(private_key, rsa.RSAPrivateKey):
            self._private_key = private_key
        else:
            self._private_key = load_private_key(private_key or "", passphrase)

    def __repr__(self) -> str:
        return f"OciRequestSigner(key_id={self.key_id!r}, host={self.host!r})"

    def sign(self, method: str, path: str, body: Any = None, timestamp: Timestamp = None) -> Dict[str, str]:
        """Return the full header set for a signed request.

        Args:
            method: HTTP method
            path: Request path (including query string, if any)
            body: Payload (serialized with ``serialize_body``)
            timestamp: Request time (datetime or epoch seconds; defaults to now)

        Returns:
            Headers: date, host, content-type, content-length,
            x-content-sha256 and Authorization

        Raises:
            SigningError: If the RSA signature cannot be computed
        """
        serialized = serialize_body(body)
        headers = {
            "date": http_date(timestamp),
            "host": self.host,
            "content-type": CONTENT_TYPE,
            "content-length": str(len(serialized.encode("utf-8"))),
            "x-content-sha256": body_digest(serialized),
        }
        signing_string = build_signing_string(method, path, headers)

        try:
            raw_signature = self._private_key.sign(
                signing_string.encode("utf-8"),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except (ValueError, TypeError):
            logger.error("Signing failed for %s %s (key_id=%s)", method.upper(), path, self.key_id)
            raise SigningError("Failed to sign request") from None

        signature = base64.b64encode(raw_signature).decode("ascii")
        headers["Authorization"] = (
            'Signature version="1",'
            f'keyId="{self.key_id}",'
            'algorithm="rsa-sha256",'
            f'headers="{" ".join(SIGNED_HEADERS)}",'
            f'signature="{signature}"'
        )
        return headers
