"""Pytest shared fixtures: signing keys, in-memory service wiring, Flask client."""
import json
import pathlib
import sys
import time
from concurrent.futures import Executor, Future
from typing import Any, Dict, List, Optional

# Add project root to Python path
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import jwt
import pytest
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from requests.structures import CaseInsensitiveDict

from app.config import AppConfig
from app.core.lifecycle import InMemoryRequestStore
from app.core.oci import OciClient, OciRequestSigner
from app.core.provisioning_service import RequestService
from app.core.rbac import Actor, AuthorizationOracle, InMemoryCompanyDirectory
from app.core.request_types import RequestTransformer
from app.core.templates import InMemoryTemplateStore

BASE_URL = "https://identity.sa-saopaulo-1.oraclecloud.com"
TENANCY_ID = "ocid1.tenancy.oc1..tenancy"
OCI_USER_ID = "ocid1.user.oc1..apiuser"
FINGERPRINT = "20:3b:97:13:55:1c:5b:0d:d3:37:d8:50:4e:c5:3a:34"
COMPARTMENT_ID = "ocid1.compartment.oc1..compartment"
JWT_SECRET = "test-jwt-secret-with-enough-length-for-hs256"


# ─────────────────────────────────────────────────────────────────────────────
# Network Guard Rails
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
def _block_network(monkeypatch):
    """Unit tests never reach a live provider; fake_oci replaces this stub."""
    def _unexpected(method, url, *args, **kwargs):
        raise RuntimeError(f"Unexpected HTTP {method} in unit test: {url}")

    monkeypatch.setattr(requests, "request", _unexpected)


def make_response(status_code: int = 200, payload: Any = None, headers: Optional[Dict[str, str]] = None, text: Optional[str] = None):
    """Build a real requests.Response carrying ``payload`` as JSON (or raw ``text``)."""
    resp = requests.Response()
    resp.status_code = status_code
    if text is not None:
        resp._content = text.encode("utf-8")
    elif payload is not None:
        resp._content = json.dumps(payload).encode("utf-8")
    else:
        resp._content = b""
    resp._content_consumed = True
    resp.encoding = "utf-8"
    resp.headers = CaseInsensitiveDict(headers or {})
    return resp


class FakeOci:
    """Programmable stand-in for ``requests.request``.

    Queue responses (or exceptions) with ``reply``; every call is recorded.
    When the queue is empty a 200 ``{"id": "ocid1.fake"}`` is returned.
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self._replies: List[Any] = []

    def reply(self, status_code: int = 200, payload: Any = None, headers=None, text=None):
        self._replies.append(make_response(status_code, payload, headers, text))

    def fail_with(self, exc: Exception):
        self._replies.append(exc)

    def __call__(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        reply = self._replies.pop(0) if self._replies else make_response(200, {"id": "ocid1.fake"})
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture()
def fake_oci(monkeypatch):
    fake = FakeOci()
    monkeypatch.setattr(requests, "request", fake)
    return fake


# ─────────────────────────────────────────────────────────────────────────────
# Executors
# ─────────────────────────────────────────────────────────────────────────────
class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class DeferredExecutor(Executor):
    """Holds submitted work until ``run_all`` (lets tests act between submit and dispatch)."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_all(self):
        while self.pending:
            future, fn, args, kwargs = self.pending.pop(0)
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as exc:
                future.set_exception(exc)


class RecordingAuditSink:
    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    def record(self, event, actor_id, details):
        self.events.append({"event": event, "actor": actor_id, "details": dict(details)})

    def names(self) -> List[str]:
        return [e["event"] for e in self.events]


# ─────────────────────────────────────────────────────────────────────────────
# Keys and configuration
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_private_key) -> str:
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


@pytest.fixture()
def cfg(private_key_pem) -> AppConfig:
    return AppConfig(
        demo_mode=True,
        oci_base_url=BASE_URL,
        oci_tenancy_id=TENANCY_ID,
        oci_user_id=OCI_USER_ID,
        oci_fingerprint=FINGERPRINT,
        oci_private_key=private_key_pem,
        oci_compartment_id=COMPARTMENT_ID,
        dispatch_timeout=5.0,
        dispatch_workers=1,
        active_company_ids=["acme", "globex"],
        jwt_secret=JWT_SECRET,
        jwt_algorithms=["HS256"],
    )


@pytest.fixture()
def signer(rsa_private_key) -> OciRequestSigner:
    return OciRequestSigner(TENANCY_ID, OCI_USER_ID, FINGERPRINT, rsa_private_key, BASE_URL)


# ─────────────────────────────────────────────────────────────────────────────
# Service wiring
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture()
def executor() -> Executor:
    return InlineExecutor()


@pytest.fixture()
def companies() -> InMemoryCompanyDirectory:
    return InMemoryCompanyDirectory(["acme", "globex"])


@pytest.fixture()
def service(signer, executor, audit_sink, companies) -> RequestService:
    return RequestService(
        templates=InMemoryTemplateStore(),
        store=InMemoryRequestStore(),
        oracle=AuthorizationOracle(companies),
        transformer=RequestTransformer(COMPARTMENT_ID),
        client=OciClient(BASE_URL, signer, timeout=5),
        executor=executor,
        audit_sink=audit_sink,
    )


@pytest.fixture()
def admin() -> Actor:
    return Actor(user_id="u-admin", role="admin", company_id="acme")


@pytest.fixture()
def manager() -> Actor:
    return Actor(user_id="u-manager", role="manager", company_id="acme")


@pytest.fixture()
def alice() -> Actor:
    return Actor(user_id="u-alice", role="user", company_id="acme")


@pytest.fixture()
def bob() -> Actor:
    return Actor(user_id="u-bob", role="user", company_id="acme")


@pytest.fixture()
def eve() -> Actor:
    return Actor(user_id="u-eve", role="manager", company_id="globex")


# ─────────────────────────────────────────────────────────────────────────────
# Flask Test Client
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
def flask_app(cfg, service):
    from app.flask_app import create_app

    app = create_app(cfg, service)
    app.config.update(TESTING=True)
    return app


@pytest.fixture()
def client(flask_app):
    with flask_app.test_client() as client:
        yield client


def make_token(sub: str = "u-alice", role: str = "user", company_id: Optional[str] = "acme",
               expires_in: int = 300, secret: str = JWT_SECRET, **extra) -> str:
    claims = {"sub": sub, "role": role, "iat": int(time.time()), "exp": int(time.time()) + expires_in}
    if company_id is not None:
        claims["company_id"] = company_id
    claims.update(extra)
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_header(**claims) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(**claims)}"}


@pytest.fixture()
def auth():
    """Build an Authorization header: ``auth(sub="u-admin", role="admin")``."""
    return auth_header
