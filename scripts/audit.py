"""Audit logging for provisioning request lifecycle events."""

from __future__ import annotations
import datetime
import hashlib
import hmac
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

AUDIT_LOG_DIR = Path(os.environ.get("AUDIT_LOG_DIR", ".runtime/audit"))
AUDIT_LOG_FILE = AUDIT_LOG_DIR / "request-events.jsonl"

_write_lock = threading.Lock()

EventType = Literal[
    "request_submitted", "request_completed", "request_failed",
    "request_reprocessed", "request_cancelled",
    # Template administration
    "template_created", "template_updated", "template_deactivated",
]


def _get_signing_key() -> bytes:
    """Get the audit signing key from environment (read lazily so tests can override it)."""
    key_file = os.environ.get("AUDIT_LOG_SIGNING_KEY_FILE")
    if key_file and Path(key_file).exists():
        try:
            return Path(key_file).read_text(encoding="utf-8").strip().encode("utf-8")
        except OSError:
            logger.warning("Audit signing key file %s unreadable; falling back to environment", key_file)
    return os.environ.get("AUDIT_LOG_SIGNING_KEY", "").strip().encode("utf-8")


def _ensure_audit_dir() -> None:
    """Create audit directory with restricted permissions."""
    AUDIT_LOG_DIR.mkdir(parents=True, exist_ok=True)
    AUDIT_LOG_DIR.chmod(0o700)


def _sign_event(event: dict[str, Any]) -> str:
    """Generate HMAC-SHA256 signature for audit event."""
    signing_key = _get_signing_key()
    if not signing_key:
        return ""
    canonical = json.dumps(event, sort_keys=True, separators=(",", ":"), default=str)
    return hmac.new(signing_key, canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def log_request_event(
    event_type: EventType,
    actor_id: Any,
    *,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> dict[str, Any]:
    """Append a lifecycle event to the audit trail with timestamp and signature.

    Args:
        event_type: Lifecycle transition or template operation
        actor_id: Who triggered the event (user id, or "system" for the pipeline)
        details: Request id, type, status and other context
        success: Whether the operation succeeded

    Returns:
        The event as written
    """
    _ensure_audit_dir()

    event = {
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "event_type": event_type,
        "actor": str(actor_id) if actor_id is not None else "system",
        "success": success,
        "details": details or {},
    }

    signature = _sign_event(event)
    if signature:
        event["signature"] = signature

    with _write_lock:
        with AUDIT_LOG_FILE.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event, ensure_ascii=False, default=str) + "\n")
        AUDIT_LOG_FILE.chmod(0o600)
    return event


def safe_log_request_event(
    event_type: EventType,
    actor_id: Any,
    *,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> bool:
    """Log a request event without ever raising.

    Returns:
        True if the event was written, False if logging failed
    """
    try:
        log_request_event(event_type, actor_id, details=details, success=success)
        return True
    except Exception as e:
        logger.warning("Failed to log %s event for actor %s: %s", event_type, actor_id, e)
        return False


class AuditTrail:
    """Audit sink writing to the signed JSONL trail."""

    def record(self, event: str, actor_id: Any, details: dict[str, Any]) -> None:
        success = event != "request_failed"
        log_request_event(event, actor_id, details=details, success=success)  # type: ignore[arg-type]


def verify_audit_log() -> tuple[int, int]:
    """Verify all signatures in the audit log.

    Returns:
        Tuple of (total_events, valid_signatures)
    """
    if not AUDIT_LOG_FILE.exists():
        return 0, 0

    total = 0
    valid = 0

    with AUDIT_LOG_FILE.open("r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            total += 1
            try:
                event = json.loads(line)
                stored_sig = event.pop("signature", "")
                if not stored_sig:
                    continue
                computed_sig = _sign_event(event)
                if hmac.compare_digest(stored_sig, computed_sig):
                    valid += 1
            except (json.JSONDecodeError, KeyError):
                continue

    return total, valid


if __name__ == "__main__":
    import sys
    total, valid = verify_audit_log()
    print(f"Audit log: {valid}/{total} events with valid signatures")
    sys.exit(0 if total == valid else 1)
