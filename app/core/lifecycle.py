"""Persisted request lifecycle: PENDING -> COMPLETED | ERROR | CANCELLED.

State machine:

    PENDING ──dispatch ok──────> COMPLETED
       │    ──dispatch failed──> ERROR ──reprocess──> PENDING
       └────cancel (before dispatch starts)──────────> CANCELLED

Every mutation of a stored request is a conditional update: it only applies
when the stored status (and, for completion writes, the attempt number)
still match the expected pre-state. A late completion racing a cancel or a
reprocess therefore fails the condition and becomes a no-op.
"""
from __future__ import annotations
import copy
import enum
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from app.core.exceptions import ConflictError, RequestNotFoundError

logger = logging.getLogger(__name__)


class RequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProvisioningRequest:
    """One unit of work sent to the provider, with its own lifecycle."""
    owner_user_id: Any
    owner_company_id: Any
    request_type: Optional[str]
    parameters: Dict[str, Any]
    template_id: Optional[int] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RequestStatus = RequestStatus.PENDING
    result: Optional[Dict[str, Any]] = None
    attempt: int = 1
    dispatch_started_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def dispatch_in_flight(self) -> bool:
        return self.status == RequestStatus.PENDING and self.dispatch_started_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "requestType": self.request_type,
            "templateId": self.template_id,
            "ownerUserId": self.owner_user_id,
            "ownerCompanyId": self.owner_company_id,
            "parameters": copy.deepcopy(self.parameters),
            "result": copy.deepcopy(self.result),
            "attempt": self.attempt,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


# ─────────────────────────────────────────────────────────────────────────────
# Request Store
# ─────────────────────────────────────────────────────────────────────────────

class RequestStore(Protocol):
    def create(self, request: ProvisioningRequest) -> ProvisioningRequest: ...

    def get_by_id(self, request_id: str) -> ProvisioningRequest: ...

    def conditional_update_status(
        self,
        request_id: str,
        expected_status: RequestStatus,
        new_status: RequestStatus,
        result: Optional[Dict[str, Any]] = None,
        *,
        expected_attempt: Optional[int] = None,
        require_idle: bool = False,
    ) -> Optional[ProvisioningRequest]: ...

    def begin_dispatch(self, request_id: str, attempt: int) -> Optional[ProvisioningRequest]: ...

    def list_by_filter(
        self,
        *,
        owner_user_id: Any = None,
        owner_company_id: Any = None,
        status: Optional[RequestStatus] = None,
        template_id: Optional[int] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[int, List[ProvisioningRequest]]: ...


class InMemoryRequestStore:
    """Thread-safe request store; all reads and writes return copies."""

    def __init__(self):
        self._lock = threading.Lock()
        self._requests: Dict[str, ProvisioningRequest] = {}

    def create(self, request: ProvisioningRequest) -> ProvisioningRequest:
        with self._lock:
            if request.id in self._requests:
                raise ConflictError(f"Request '{request.id}' already exists")
            self._requests[request.id] = copy.deepcopy(request)
            return copy.deepcopy(request)

    def get_by_id(self, request_id: str) -> ProvisioningRequest:
        with self._lock:
            stored = self._requests.get(request_id)
            if stored is None:
                raise RequestNotFoundError(request_id)
            return copy.deepcopy(stored)

    def conditional_update_status(
        self,
        request_id: str,
        expected_status: RequestStatus,
        new_status: RequestStatus,
        result: Optional[Dict[str, Any]] = None,
        *,
        expected_attempt: Optional[int] = None,
        require_idle: bool = False,
    ) -> Optional[ProvisioningRequest]:
        """Atomically move a request from ``expected_status`` to ``new_status``.

        Entering PENDING starts a new attempt: the attempt counter increases,
        the dispatch marker and the result are cleared.

        Args:
            expected_status: Status the stored request must currently have
            new_status: Status to write
            result: Result to store alongside the new status
            expected_attempt: Only apply if the stored attempt matches
            require_idle: Only apply if no dispatch has started

        Returns:
            The updated request, or None when the precondition did not hold
        """
        with self._lock:
            stored = self._requests.get(request_id)
            if stored is None:
                raise RequestNotFoundError(request_id)
            if stored.status != expected_status:
                return None
            if expected_attempt is not None and stored.attempt != expected_attempt:
                return None
            if require_idle and stored.dispatch_started_at is not None:
                return None

            stored.status = new_status
            if new_status == RequestStatus.PENDING:
                stored.attempt += 1
                stored.dispatch_started_at = None
                stored.result = None
            else:
                stored.result = copy.deepcopy(result)
            stored.updated_at = _utcnow()
            return copy.deepcopy(stored)

    def begin_dispatch(self, request_id: str, attempt: int) -> Optional[ProvisioningRequest]:
        """Mark the dispatch of ``attempt`` as started; None if not allowed."""
        with self._lock:
            stored = self._requests.get(request_id)
            if stored is None:
                raise RequestNotFoundError(request_id)
            if (
                stored.status != RequestStatus.PENDING
                or stored.attempt != attempt
                or stored.dispatch_started_at is not None
            ):
                return None
            stored.dispatch_started_at = _utcnow()
            stored.updated_at = stored.dispatch_started_at
            return copy.deepcopy(stored)

    def list_by_filter(
        self,
        *,
        owner_user_id: Any = None,
        owner_company_id: Any = None,
        status: Optional[RequestStatus] = None,
        template_id: Optional[int] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[int, List[ProvisioningRequest]]:
        """Filter requests, newest first.

        Returns:
            Tuple of (total matches, requested page)
        """
        with self._lock:
            matches = [
                r for r in self._requests.values()
                if (owner_user_id is None or r.owner_user_id == owner_user_id)
                and (owner_company_id is None or r.owner_company_id == owner_company_id)
                and (status is None or r.status == status)
                and (template_id is None or r.template_id == template_id)
            ]
            matches.sort(key=lambda r: r.created_at, reverse=True)
            page = matches[offset:] if limit is None else matches[offset:offset + limit]
            return len(matches), [copy.deepcopy(r) for r in page]


# ─────────────────────────────────────────────────────────────────────────────
# Lifecycle Tracker
# ─────────────────────────────────────────────────────────────────────────────

class AuditSink(Protocol):
    def record(self, event: str, actor_id: Any, details: Dict[str, Any]) -> None: ...


class LifecycleTracker:
    """Owns request state transitions and their audit events."""

    def __init__(self, store: RequestStore, audit_sink: Optional[AuditSink] = None):
        self.store = store
        self.audit_sink = audit_sink

    def _emit(self, event: str, actor_id: Any, request: ProvisioningRequest, **details: Any) -> None:
        if self.audit_sink is None:
            return
        payload = {
            "request_id": request.id,
            "request_type": request.request_type,
            "template_id": request.template_id,
            "status": request.status.value,
            "attempt": request.attempt,
        }
        payload.update(details)
        try:
            self.audit_sink.record(event, actor_id, payload)
        except Exception as exc:
            logger.warning("Audit emission failed: event=%s request_id=%s error=%s", event, request.id, exc)

    def open(self, request: ProvisioningRequest, actor_id: Any) -> ProvisioningRequest:
        """Persist a new request in PENDING."""
        if request.status != RequestStatus.PENDING or request.result is not None:
            raise ConflictError("New requests must start in PENDING without a result", request.status.value)
        created = self.store.create(request)
        logger.info("Request submitted: request_id=%s type=%s", created.id, created.request_type)
        self._emit("request_submitted", actor_id, created)
        return created

    def begin_dispatch(self, request_id: str, attempt: int) -> bool:
        """Claim the single dispatch attempt for the current PENDING entry."""
        claimed = self.store.begin_dispatch(request_id, attempt)
        if claimed is None:
            logger.info("Dispatch not started: request_id=%s attempt=%s (cancelled or already claimed)", request_id, attempt)
            return False
        return True

    def complete(self, request_id: str, attempt: int, result: Dict[str, Any], actor_id: Any) -> Optional[ProvisioningRequest]:
        """Record a successful dispatch; None when the write was superseded."""
        return self._finish(request_id, attempt, RequestStatus.COMPLETED, result, actor_id, "request_completed")

    def fail(self, request_id: str, attempt: int, result: Dict[str, Any], actor_id: Any) -> Optional[ProvisioningRequest]:
        """Record a failed pipeline run; None when the write was superseded."""
        return self._finish(request_id, attempt, RequestStatus.ERROR, result, actor_id, "request_failed")

    def _finish(
        self,
        request_id: str,
        attempt: int,
        new_status: RequestStatus,
        result: Dict[str, Any],
        actor_id: Any,
        event: str,
    ) -> Optional[ProvisioningRequest]:
        updated = self.store.conditional_update_status(
            request_id,
            RequestStatus.PENDING,
            new_status,
            result,
            expected_attempt=attempt,
        )
        if updated is None:
            logger.info(
                "Completion write skipped: request_id=%s attempt=%s target=%s (request no longer pending)",
                request_id, attempt, new_status.value,
            )
            return None
        logger.info("Request finished: request_id=%s status=%s", request_id, new_status.value)
        self._emit(event, actor_id, updated, kind=result.get("kind") if isinstance(result, dict) else None)
        return updated

    def reprocess(self, request_id: str, actor_id: Any) -> ProvisioningRequest:
        """ERROR -> PENDING; clears the previous result and starts a new attempt.

        Raises:
            ConflictError: If the request is not in ERROR
        """
        current = self.store.get_by_id(request_id)
        if current.status == RequestStatus.ERROR:
            updated = self.store.conditional_update_status(
                request_id,
                RequestStatus.ERROR,
                RequestStatus.PENDING,
                expected_attempt=current.attempt,
            )
            if updated is not None:
                logger.info("Request reprocessed: request_id=%s attempt=%s", request_id, updated.attempt)
                self._emit("request_reprocessed", actor_id, updated)
                return updated
            current = self.store.get_by_id(request_id)
        raise ConflictError(
            f"Request '{request_id}' cannot be reprocessed in status {current.status.value}",
            current.status.value,
        )

    def cancel(self, request_id: str, actor_id: Any) -> ProvisioningRequest:
        """PENDING -> CANCELLED, only before the dispatch attempt has started.

        Raises:
            ConflictError: If the request left PENDING or its dispatch started
        """
        updated = self.store.conditional_update_status(
            request_id,
            RequestStatus.PENDING,
            RequestStatus.CANCELLED,
            {"kind": "cancelled", "message": "Cancelled before dispatch"},
            require_idle=True,
        )
        if updated is not None:
            logger.info("Request cancelled: request_id=%s", request_id)
            self._emit("request_cancelled", actor_id, updated)
            return updated

        current = self.store.get_by_id(request_id)
        if current.status == RequestStatus.PENDING:
            raise ConflictError(
                f"Request '{request_id}' cannot be cancelled: dispatch already started (status PENDING)",
                current.status.value,
            )
        raise ConflictError(
            f"Request '{request_id}' cannot be cancelled in status {current.status.value}",
            current.status.value,
        )
