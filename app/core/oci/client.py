"""Low-level HTTP client for the OCI Identity API.

Handles request signing, the outbound call and outcome classification.
Retries are never performed here: a provider call that creates resources
is not idempotent, so a retry is always an explicit reprocess.
"""
from __future__ import annotations
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import requests

from app.core.exceptions import (
    DispatchError,
    DispatchNetworkError,
    DispatchTimeoutError,
    ProviderError,
    SigningError,
)
from app.core.request_types import RequestPlan
from .signer import OciRequestSigner, serialize_body

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30
READ_CHUNK_SIZE = 8192

SUCCESS = "success"
PROVIDER_ERROR = "provider_error"
NETWORK_ERROR = "network_error"
TIMEOUT = "timeout"


@dataclass
class DispatchOutcome:
    """Classified result of one provider call.

    Exactly one of the four kinds: success, provider_error, network_error,
    timeout. Failures carry the matching ``DispatchError`` in ``error``.
    """
    kind: str
    status_code: Optional[int] = None
    data: Any = None
    error: Optional[DispatchError] = None
    opc_request_id: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.kind == SUCCESS

    def to_result(self) -> Dict[str, Any]:
        """Structured value persisted as the request's result."""
        if self.ok:
            result: Dict[str, Any] = {"status": self.status_code, "data": self.data}
        else:
            result = self.error.to_result() if self.error else {"kind": self.kind}
        if self.opc_request_id:
            result["opcRequestId"] = self.opc_request_id
        return result


def _parse_body(raw: bytes, encoding: Optional[str]) -> Any:
    if not raw:
        return {}
    text = raw.decode(encoding or "utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text


class OciClient:
    """HTTP client for the OCI Identity API.

    Usage:
        client = OciClient("https://identity.sa-saopaulo-1.oraclecloud.com", signer, timeout=30)
        outcome = client.send(plan, payload)
    """

    def __init__(self, base_url: str, signer: Optional[OciRequestSigner] = None, timeout: float = REQUEST_TIMEOUT):
        """Initialize OCI client.

        Args:
            base_url: Provider base URL (scheme + host)
            signer: Request signer for the configured API identity
            timeout: Bound in seconds for the whole call, from connect to the last body byte
        """
        self.base_url = base_url.rstrip("/")
        self.signer = signer
        self.timeout = timeout

    def _timed_out(self, method: str, endpoint: str, reason: str) -> DispatchOutcome:
        logger.warning("OCI call timed out: %s %s (%s)", method, endpoint, reason)
        return DispatchOutcome(
            kind=TIMEOUT,
            error=DispatchTimeoutError(f"No response from provider within {self.timeout}s"),
        )

    def dispatch(self, endpoint: str, method: str, headers: Mapping[str, str], body: Any = None) -> DispatchOutcome:
        """Send one request and classify the result.

        The response is streamed so the timeout bounds the total call time;
        ``requests`` alone only bounds connect and each individual read.

        Args:
            endpoint: API path appended to the base URL
            method: HTTP method
            headers: Complete header set (already signed)
            body: Payload, serialized with the same rules used for signing

        Returns:
            DispatchOutcome (never raises for transport or HTTP failures)
        """
        url = f"{self.base_url}{endpoint}"
        data = serialize_body(body)
        method = method.upper()
        deadline = time.monotonic() + self.timeout

        try:
            resp = requests.request(
                method,
                url,
                data=data.encode("utf-8"),
                headers=dict(headers),
                timeout=self.timeout,
                stream=True,
            )
            chunks = []
            try:
                if time.monotonic() > deadline:
                    return self._timed_out(method, endpoint, "deadline exceeded")
                for chunk in resp.iter_content(chunk_size=READ_CHUNK_SIZE):
                    chunks.append(chunk)
                    if time.monotonic() > deadline:
                        return self._timed_out(method, endpoint, "deadline exceeded")
            finally:
                resp.close()
        except requests.Timeout as exc:
            return self._timed_out(method, endpoint, type(exc).__name__)
        except requests.RequestException as exc:
            logger.warning("OCI call failed without response: %s %s (%s)", method, endpoint, type(exc).__name__)
            return DispatchOutcome(
                kind=NETWORK_ERROR,
                error=DispatchNetworkError(f"No response from provider: {type(exc).__name__}"),
            )

        raw = b"".join(chunks)
        opc_request_id = resp.headers.get("opc-request-id")
        logger.info("OCI response: %s %s -> %s (opc-request-id=%s)", method, endpoint, resp.status_code, opc_request_id)

        if 200 <= resp.status_code < 300:
            return DispatchOutcome(
                kind=SUCCESS,
                status_code=resp.status_code,
                data=_parse_body(raw, resp.encoding),
                opc_request_id=opc_request_id,
                headers=dict(resp.headers),
            )
        return DispatchOutcome(
            kind=PROVIDER_ERROR,
            status_code=resp.status_code,
            error=ProviderError(resp.status_code, raw.decode(resp.encoding or "utf-8", errors="replace"), endpoint),
            opc_request_id=opc_request_id,
            headers=dict(resp.headers),
        )

    def send(self, plan: RequestPlan, payload: Any, timestamp=None) -> DispatchOutcome:
        """Sign and dispatch a resolved request plan.

        Raises:
            SigningError: If no signer is configured or signing fails
        """
        if self.signer is None:
            raise SigningError("OCI signing identity is not configured")
        headers = self.signer.sign(plan.method, plan.endpoint, payload, timestamp)
        return self.dispatch(plan.endpoint, plan.method, headers, payload)
