"""
Provisioning Service Layer: OCI request orchestration

This module ties together the template store, the request-type registry,
the OCI client and the lifecycle tracker. It is used by the Flask API and
can be driven directly (CLI, tests) without HTTP.

Architecture:
    /api/oci/* ──> provisioning_service.py ──> templates / request_types
                                          ├──> lifecycle (request store + audit)
                                          └──> app.core.oci (signer + client) ──> OCI Identity

Pipeline:
    submit()  : authorize -> template -> substitute -> validate -> persist PENDING -> ack
    (worker)  : resolve -> claim dispatch -> sign -> dispatch -> COMPLETED | ERROR
    reprocess : ERROR -> PENDING, then the whole pipeline runs again
    cancel    : PENDING -> CANCELLED while no dispatch has started
"""

from __future__ import annotations
import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from app.core.exceptions import (
    AuthorizationError,
    ConflictError,
    GatewayError,
    TemplateNotFoundError,
    UnsupportedRequestTypeError,
    ValidationError,
)
from app.core.lifecycle import (
    AuditSink,
    InMemoryRequestStore,
    LifecycleTracker,
    ProvisioningRequest,
    RequestStatus,
    RequestStore,
)
from app.core.oci import OciClient, OciRequestSigner
from app.core.rbac import Actor, AuthorizationOracle, InMemoryCompanyDirectory
from app.core.request_types import REQUEST_TYPES, RequestTransformer
from app.core.templates import InMemoryTemplateStore, TemplateStore, substitute

logger = logging.getLogger(__name__)

REQUEST_TYPE_KEY = "requestType"
MAX_PAGE_SIZE = 100


class RequestService:
    """Outward interface: submit, get_status, list_requests, reprocess, cancel.

    Template administration (list/get/save/deactivate) is exposed here too,
    since deactivation depends on the requests referencing a template.
    """

    def __init__(
        self,
        templates: TemplateStore,
        store: RequestStore,
        oracle: AuthorizationOracle,
        transformer: RequestTransformer,
        client: OciClient,
        executor: Optional[Executor] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.templates = templates
        self.store = store
        self.oracle = oracle
        self.transformer = transformer
        self.client = client
        self.executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="oci-dispatch")
        self.audit_sink = audit_sink
        self.tracker = LifecycleTracker(store, audit_sink)

    # ─────────────────────────────────────────────────────────────────────────
    # Request operations
    # ─────────────────────────────────────────────────────────────────────────

    def submit(
        self,
        actor: Actor,
        *,
        template_id: Optional[int] = None,
        request_type: Optional[str] = None,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Validate and persist a new request, then schedule its dispatch.

        Every pre-dispatch failure is raised here, before anything is stored.

        Args:
            actor: Authenticated caller
            template_id: Template to substitute ``parameters`` into
            request_type: Logical type; required when no template is given
            parameters: Template parameters, or the request data for
                type-only submissions

        Returns:
            Acknowledgement with ``requestId`` and ``status``

        Raises:
            AuthorizationError: Caller has no active company
            ValidationError: Malformed input or missing required fields
            TemplateNotFoundError / TemplateInactiveError
            UnsupportedRequestTypeError
        """
        self._require_active_company(actor, actor.company_id if actor else None)

        if parameters is None:
            parameters = {}
        if not isinstance(parameters, Mapping):
            raise ValidationError("parameters must be a JSON object")
        if template_id is None and not request_type:
            raise ValidationError("Either templateId or requestType is required")

        resolved_type, payload = self._materialize(template_id, request_type, parameters)
        self.transformer.resolve(resolved_type, payload)

        request = ProvisioningRequest(
            owner_user_id=actor.user_id,
            owner_company_id=actor.company_id,
            request_type=resolved_type,
            parameters=dict(parameters),
            template_id=template_id,
        )
        created = self.tracker.open(request, actor.user_id)
        self._schedule(created.id, created.attempt, actor.user_id)
        return {"requestId": created.id, "status": created.status.value}

    def get_status(self, request_id: str, actor: Actor) -> Dict[str, Any]:
        """Projection of one request for its owner, company manager or an admin."""
        request = self.store.get_by_id(request_id)
        self._require_access(actor, request)
        return self._project(request)

    def list_requests(
        self,
        actor: Actor,
        *,
        status: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """List requests visible to ``actor``, newest first."""
        status_filter = None
        if status:
            try:
                status_filter = RequestStatus(status.upper())
            except ValueError:
                raise ValidationError(
                    f"status must be one of: {', '.join(s.value for s in RequestStatus)}"
                )
        limit = min(MAX_PAGE_SIZE, max(1, int(limit)))
        offset = max(0, int(offset))

        total, requests = self.store.list_by_filter(
            status=status_filter,
            limit=limit,
            offset=offset,
            **self.oracle.list_scope(actor),
        )
        return {
            "total": total,
            "limit": limit,
            "offset": offset,
            "requests": [self._project(r) for r in requests],
        }

    def reprocess(self, request_id: str, actor: Actor) -> Dict[str, Any]:
        """Move an ERROR request back to PENDING and run the pipeline again.

        Raises:
            ConflictError: If the request is not in ERROR
        """
        request = self.store.get_by_id(request_id)
        self._require_access(actor, request)
        self._require_active_company(actor, request.owner_company_id)

        updated = self.tracker.reprocess(request_id, actor.user_id)
        self._schedule(updated.id, updated.attempt, actor.user_id)
        return {"requestId": updated.id, "status": updated.status.value, "attempt": updated.attempt}

    def cancel(self, request_id: str, actor: Actor) -> Dict[str, Any]:
        """Cancel a PENDING request whose dispatch has not started.

        Raises:
            ConflictError: If the request left PENDING or is being dispatched
        """
        request = self.store.get_by_id(request_id)
        self._require_access(actor, request)

        updated = self.tracker.cancel(request_id, actor.user_id)
        return {"requestId": updated.id, "status": updated.status.value}

    # ─────────────────────────────────────────────────────────────────────────
    # Template administration
    # ─────────────────────────────────────────────────────────────────────────

    def list_templates(self) -> list:
        return [t.summary() for t in self.templates.list_active()]

    def get_template(self, template_id: int, actor: Actor) -> Dict[str, Any]:
        """Active templates for everyone; admins also see inactive ones."""
        if self.oracle.can_manage_templates(actor):
            return self.templates.get_by_id(template_id).to_dict()
        return self.templates.get_active_template_by_id(template_id).to_dict()

    def save_template(
        self,
        actor: Actor,
        *,
        template_id: Optional[int] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        body: Any = None,
        request_type: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Create (no ``template_id``) or update a template. Admin only."""
        self._require_template_admin(actor)
        if request_type is not None and request_type not in REQUEST_TYPES:
            raise UnsupportedRequestTypeError(request_type)
        if name is not None and not str(name).strip():
            raise ValidationError("name must not be empty")

        if template_id is None:
            if not name or body is None:
                raise ValidationError("name and template are required")
            template = self.templates.create(
                name,
                description or "",
                body,
                request_type=request_type,
                active=True if active is None else bool(active),
            )
            event = "template_created"
        else:
            template = self.templates.update(
                template_id,
                name=name,
                description=description,
                body=body,
                request_type=request_type,
                active=active,
            )
            event = "template_updated"

        self._audit(event, actor.user_id, {"template_id": template.id})
        return template.to_dict()

    def deactivate_template(self, template_id: int, actor: Actor) -> Dict[str, Any]:
        """Soft-delete a template; refused while PENDING requests use it."""
        self._require_template_admin(actor)
        self.templates.get_by_id(template_id)

        pending, _ = self.store.list_by_filter(template_id=template_id, status=RequestStatus.PENDING, limit=1)
        if pending:
            raise ConflictError(
                f"Template '{template_id}' has {pending} pending request(s) and cannot be deactivated"
            )
        template = self.templates.update(template_id, active=False)
        self._audit("template_deactivated", actor.user_id, {"template_id": template_id})
        return template.summary()

    # ─────────────────────────────────────────────────────────────────────────
    # Pipeline
    # ─────────────────────────────────────────────────────────────────────────

    def _materialize(
        self,
        template_id: Optional[int],
        request_type: Optional[str],
        parameters: Mapping[str, Any],
    ) -> Tuple[str, Dict[str, Any]]:
        """Build the concrete logical payload and its request type.

        Type precedence: explicit ``request_type``, then the template's
        ``request_type``, then a ``requestType`` key in the substituted body.
        """
        if template_id is None:
            return request_type, dict(parameters)

        template = self.templates.get_active_template_by_id(template_id)
        payload = substitute(template.body, parameters)
        if not isinstance(payload, dict):
            raise ValidationError(f"Template '{template_id}' must produce a JSON object")

        embedded_type = payload.pop(REQUEST_TYPE_KEY, None)
        resolved = request_type or template.request_type or embedded_type
        if not resolved:
            raise ValidationError(f"Template '{template_id}' does not declare a requestType")
        return resolved, payload

    def _schedule(self, request_id: str, attempt: int, actor_id: Any) -> Future:
        """Queue one pipeline attempt; an unschedulable attempt is failed, not left PENDING."""
        try:
            future = self.executor.submit(self._run_pipeline, request_id, attempt, actor_id)
        except Exception:
            logger.exception("Could not schedule dispatch for request %s", request_id)
            self.tracker.fail(
                request_id,
                attempt,
                {"kind": "internal_error", "message": "Could not schedule dispatch"},
                actor_id,
            )
            raise
        future.add_done_callback(self._log_pipeline_crash)
        return future

    @staticmethod
    def _log_pipeline_crash(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Pipeline task crashed: %s", exc, exc_info=exc)

    def _run_pipeline(self, request_id: str, attempt: int, actor_id: Any) -> None:
        """Run one dispatch attempt; every failure ends as an ERROR result."""
        request = self.store.get_by_id(request_id)
        if request.status != RequestStatus.PENDING or request.attempt != attempt:
            logger.info("Pipeline skipped: request_id=%s status=%s attempt=%s", request_id, request.status.value, request.attempt)
            return

        try:
            request_type, payload = self._materialize(request.template_id, request.request_type, request.parameters)
            plan = self.transformer.resolve(request_type, payload)
            wire_payload = plan.transform(payload)
        except GatewayError as exc:
            logger.warning("Pipeline rejected request_id=%s before dispatch: %s", request_id, exc.detail)
            self.tracker.fail(request_id, attempt, exc.to_result(), actor_id)
            return

        if not self.tracker.begin_dispatch(request_id, attempt):
            return

        logger.info("Dispatching request_id=%s type=%s %s %s", request_id, plan.request_type, plan.method, plan.endpoint)
        try:
            outcome = self.client.send(plan, wire_payload)
        except GatewayError as exc:
            logger.warning("Dispatch aborted request_id=%s: %s", request_id, exc.detail)
            self.tracker.fail(request_id, attempt, exc.to_result(), actor_id)
            return
        except Exception:
            logger.exception("Unexpected dispatch failure request_id=%s", request_id)
            self.tracker.fail(
                request_id,
                attempt,
                {"kind": "internal_error", "message": "Unexpected failure while dispatching request"},
                actor_id,
            )
            return

        if outcome.ok:
            self.tracker.complete(request_id, attempt, outcome.to_result(), actor_id)
        else:
            self.tracker.fail(request_id, attempt, outcome.to_result(), actor_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _project(self, request: ProvisioningRequest) -> Dict[str, Any]:
        data = request.to_dict()
        data["template"] = None
        if request.template_id is not None:
            try:
                template = self.templates.get_by_id(request.template_id)
            except TemplateNotFoundError:
                pass
            else:
                data["template"] = {
                    "id": template.id,
                    "name": template.name,
                    "description": template.description,
                }
        return data

    def _require_access(self, actor: Actor, request: ProvisioningRequest) -> None:
        if not self.oracle.is_owner_or_authorized(actor, request):
            raise AuthorizationError(f"Not allowed to access request '{request.id}'")

    def _require_active_company(self, actor: Actor, company_id: Any) -> None:
        if actor is None:
            raise AuthorizationError("Authentication required")
        if not self.oracle.is_company_active(company_id):
            raise AuthorizationError("User has no active company")

    def _require_template_admin(self, actor: Actor) -> None:
        if not self.oracle.can_manage_templates(actor):
            raise AuthorizationError("Only administrators can manage templates")

    def _audit(self, event: str, actor_id: Any, details: Dict[str, Any]) -> None:
        if self.audit_sink is None:
            return
        try:
            self.audit_sink.record(event, actor_id, details)
        except Exception as exc:
            logger.warning("Audit emission failed: event=%s error=%s", event, exc)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)


# ─────────────────────────────────────────────────────────────────────────────
# Factory
# ─────────────────────────────────────────────────────────────────────────────

def build_service(cfg, *, executor: Optional[Executor] = None, audit_sink: Optional[AuditSink] = None) -> RequestService:
    """Wire a RequestService from application settings.

    Args:
        cfg: AppConfig
        executor: Worker pool for pipelines (default: thread pool sized by cfg)
        audit_sink: Audit sink (default: signed JSONL trail)
    """
    signer = None
    if cfg.signing_identity_configured:
        signer = OciRequestSigner(
            cfg.oci_tenancy_id,
            cfg.oci_user_id,
            cfg.oci_fingerprint,
            cfg.oci_private_key,
            cfg.oci_base_url,
            passphrase=cfg.oci_private_key_passphrase or None,
        )
    else:
        logger.warning("OCI signing identity not configured; dispatches will end in ERROR")

    if audit_sink is None:
        from scripts.audit import AuditTrail
        audit_sink = AuditTrail()

    templates = InMemoryTemplateStore()
    if cfg.templates_file:
        templates.load_file(Path(cfg.templates_file))

    return RequestService(
        templates=templates,
        store=InMemoryRequestStore(),
        oracle=AuthorizationOracle(
            InMemoryCompanyDirectory(cfg.active_company_ids, allow_all=cfg.allow_all_companies)
        ),
        transformer=RequestTransformer(cfg.compartment_id_resolved),
        client=OciClient(cfg.oci_base_url, signer, timeout=cfg.dispatch_timeout),
        executor=executor or ThreadPoolExecutor(max_workers=cfg.dispatch_workers, thread_name_prefix="oci-dispatch"),
        audit_sink=audit_sink,
    )
