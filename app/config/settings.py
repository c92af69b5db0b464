"""Settings loader with environment variable and Docker secrets integration."""
from __future__ import annotations
import logging
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

SECRETS_DIR = Path("/run/secrets")
DEFAULT_REGION = "sa-saopaulo-1"
DEFAULT_DISPATCH_TIMEOUT = 30.0
DEFAULT_DISPATCH_WORKERS = 4


def _load_secret_from_file(secret_name: str, env_var: str | None = None) -> str | None:
    """
    Load secret from /run/secrets (Docker secrets pattern).

    Priority:
    1. /run/secrets/{secret_name} (Docker secrets mount)
    2. Environment variable (fallback)

    Args:
        secret_name: Name of the secret file in /run/secrets
        env_var: Optional environment variable name to check as fallback

    Returns:
        Secret value or None if not found
    """
    secret_file = SECRETS_DIR / secret_name

    if secret_file.exists() and secret_file.is_file():
        try:
            secret_value = secret_file.read_text().strip()
            if secret_value:
                logger.info("Loaded %s from %s", secret_name, SECRETS_DIR)
                return secret_value
        except OSError as e:
            logger.warning("Failed to read %s/%s: %s", SECRETS_DIR, secret_name, e)

    if env_var:
        secret_value = os.getenv(env_var)
        if secret_value:
            return secret_value

    return None


def _env_bool(name: str, default: bool = False) -> bool:
    return os.environ.get(name, str(default)).strip().lower() == "true"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise RuntimeError(f"{name} must be positive")
    return value


def _env_list(name: str) -> list[str]:
    return [item.strip() for item in os.environ.get(name, "").split(",") if item.strip()]


@dataclass
class AppConfig:
    """Application configuration container."""
    # Mode
    demo_mode: bool

    # OCI identity (keyId = tenancy/user/fingerprint)
    oci_base_url: str
    oci_tenancy_id: str = ""
    oci_user_id: str = ""
    oci_fingerprint: str = ""
    oci_private_key: str = field(default="", repr=False)
    oci_private_key_passphrase: str = field(default="", repr=False)
    oci_region: str = DEFAULT_REGION
    oci_compartment_id: str = ""

    # Dispatch
    dispatch_timeout: float = DEFAULT_DISPATCH_TIMEOUT
    dispatch_workers: int = DEFAULT_DISPATCH_WORKERS

    # Templates / companies
    templates_file: str = ""
    active_company_ids: list[str] = field(default_factory=list)
    allow_all_companies: bool = False

    # Bearer tokens
    jwt_secret: str = field(default="", repr=False)
    jwt_algorithms: list[str] = field(default_factory=lambda: ["HS256"])
    jwt_issuer: str = ""

    # Audit
    audit_log_signing_key: str = field(default="", repr=False)

    @property
    def signing_identity_configured(self) -> bool:
        return all((self.oci_tenancy_id, self.oci_user_id, self.oci_fingerprint, self.oci_private_key))

    @property
    def compartment_id_resolved(self) -> str:
        """Compartment injected into payloads; the tenancy (root compartment) when unset."""
        return self.oci_compartment_id or self.oci_tenancy_id


def _load_private_key() -> str:
    """Resolve the OCI API private key PEM.

    Priority:
    1. /run/secrets/oci_private_key
    2. OCI_PRIVATE_KEY (PEM text, literal \\n allowed)
    3. OCI_PRIVATE_KEY_FILE (path to a PEM file)
    """
    pem = _load_secret_from_file("oci_private_key", "OCI_PRIVATE_KEY")
    if pem:
        return pem

    key_file = os.environ.get("OCI_PRIVATE_KEY_FILE", "").strip()
    if key_file:
        path = Path(key_file).expanduser()
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise RuntimeError(f"OCI_PRIVATE_KEY_FILE {path} could not be read: {e.strerror}")
    return ""


def load_settings() -> AppConfig:
    """Load application settings from environment and /run/secrets."""
    demo_mode = _env_bool("DEMO_MODE")

    region = os.environ.get("OCI_REGION", DEFAULT_REGION).strip() or DEFAULT_REGION
    base_url = os.environ.get("OCI_BASE_URL", "").strip() or f"https://identity.{region}.oraclecloud.com"

    tenancy_id = os.environ.get("OCI_TENANCY_ID", "").strip()
    user_id = os.environ.get("OCI_USER_ID", "").strip()
    fingerprint = os.environ.get("OCI_FINGERPRINT", "").strip()
    private_key = _load_private_key()
    passphrase = _load_secret_from_file("oci_private_key_passphrase", "OCI_PRIVATE_KEY_PASSPHRASE") or ""

    if not demo_mode:
        missing = [
            name for name, value in (
                ("OCI_TENANCY_ID", tenancy_id),
                ("OCI_USER_ID", user_id),
                ("OCI_FINGERPRINT", fingerprint),
                ("OCI_PRIVATE_KEY", private_key),
            ) if not value
        ]
        if missing:
            raise RuntimeError(f"Missing OCI configuration in production mode: {', '.join(missing)}")
        if not base_url.startswith("https://"):
            raise RuntimeError("OCI_BASE_URL must use https:// outside demo mode")

    # Bearer token secret
    jwt_secret = _load_secret_from_file("app_jwt_secret", "APP_JWT_SECRET")
    if not jwt_secret:
        if not demo_mode:
            raise RuntimeError("APP_JWT_SECRET not found in /run/secrets or environment")
        jwt_secret = secrets.token_urlsafe(48)
        logger.warning("DEMO_MODE: generated temporary APP_JWT_SECRET")

    jwt_algorithms = [alg.upper() for alg in _env_list("APP_JWT_ALGORITHMS")] or ["HS256"]

    # Audit log signing key
    audit_log_signing_key = _load_secret_from_file("audit_log_signing_key", "AUDIT_LOG_SIGNING_KEY") or ""
    if not audit_log_signing_key and demo_mode:
        audit_log_signing_key = "demo-audit-signing-key-change-in-production"
    if audit_log_signing_key:
        os.environ["AUDIT_LOG_SIGNING_KEY"] = audit_log_signing_key

    # Companies allowed to submit requests
    company_ids = _env_list("OCI_ACTIVE_COMPANY_IDS")
    allow_all_companies = "*" in company_ids or (demo_mode and not company_ids)
    company_ids = [c for c in company_ids if c != "*"]

    dispatch_workers = int(_env_float("OCI_DISPATCH_WORKERS", DEFAULT_DISPATCH_WORKERS))

    mode_label = "DEMO" if demo_mode else "PRODUCTION"
    logger.info("Mode=%s; oci_base_url=%s; region=%s", mode_label, base_url, region)
    if demo_mode:
        logger.warning("Demo defaults in use. Do not deploy with these settings.")

    return AppConfig(
        demo_mode=demo_mode,
        oci_base_url=base_url,
        oci_tenancy_id=tenancy_id,
        oci_user_id=user_id,
        oci_fingerprint=fingerprint,
        oci_private_key=private_key,
        oci_private_key_passphrase=passphrase,
        oci_region=region,
        oci_compartment_id=os.environ.get("OCI_COMPARTMENT_ID", "").strip(),
        dispatch_timeout=_env_float("OCI_DISPATCH_TIMEOUT", DEFAULT_DISPATCH_TIMEOUT),
        dispatch_workers=max(1, dispatch_workers),
        templates_file=os.environ.get("OCI_TEMPLATES_FILE", "").strip(),
        active_company_ids=company_ids,
        allow_all_companies=allow_all_companies,
        jwt_secret=jwt_secret,
        jwt_algorithms=jwt_algorithms,
        jwt_issuer=os.environ.get("APP_JWT_ISSUER", "").strip(),
        audit_log_signing_key=audit_log_signing_key,
    )
