"""Service-level tests for submit / status / list / reprocess / cancel and template management."""
import json
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest
import requests

from app.core.exceptions import (
    AuthorizationError,
    ConflictError,
    RequestNotFoundError,
    TemplateInactiveError,
    TemplateNotFoundError,
    UnsupportedRequestTypeError,
    ValidationError,
)
from app.core.lifecycle import RequestStatus
from app.core.rbac import Actor

from conftest import COMPARTMENT_ID, DeferredExecutor, RecordingAuditSink

GROUP_TEMPLATE = {"requestType": "CREATE_GROUP", "name": "${name}", "description": "${description}"}
POLICY_DATA = {"name": "ops-read", "description": "Ops read", "statements": ["Allow group ops to read all-resources in tenancy"]}


def _status(service, request_id):
    return service.store.get_by_id(request_id)


# ─────────────────────────────────────────────────────────────────────────────
# Submit
# ─────────────────────────────────────────────────────────────────────────────

def test_submit_template_completes(service, fake_oci, alice, audit_sink):
    template = service.templates.create("Group", "", GROUP_TEMPLATE)
    fake_oci.reply(200, {"id": "ocid1.group.oc1..g"}, headers={"opc-request-id": "opc-1"})

    ack = service.submit(alice, template_id=template.id, parameters={"name": "ops", "description": "Ops"})

    assert ack["status"] == "PENDING"
    stored = _status(service, ack["requestId"])
    assert stored.status == RequestStatus.COMPLETED
    assert stored.request_type == "CREATE_GROUP"
    assert stored.result == {"status": 200, "data": {"id": "ocid1.group.oc1..g"}, "opcRequestId": "opc-1"}

    sent = json.loads(fake_oci.calls[0]["data"])
    assert sent == {"compartmentId": COMPARTMENT_ID, "name": "ops", "description": "Ops", "freeformTags": {}}
    assert fake_oci.calls[0]["url"].endswith("/20160918/groups")
    assert audit_sink.names() == ["request_submitted", "request_completed"]


def test_substitution_of_email_parameter(service, fake_oci, alice):
    template = service.templates.create(
        "User", "", {"name": "${name}", "description": "d", "email": "${email}"}, request_type="CREATE_USER",
    )
    ack = service.submit(alice, template_id=template.id, parameters={"name": "ana", "email": "a@b.com"})

    assert json.loads(fake_oci.calls[0]["data"])["email"] == "a@b.com"
    assert _status(service, ack["requestId"]).status == RequestStatus.COMPLETED


def test_type_only_submission(service, fake_oci, alice):
    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)
    stored = _status(service, ack["requestId"])
    assert stored.status == RequestStatus.COMPLETED
    assert stored.template_id is None
    assert json.loads(fake_oci.calls[0]["data"])["statements"] == POLICY_DATA["statements"]


def test_missing_statements_rejected_before_persisting(service, fake_oci, alice):
    with pytest.raises(ValidationError, match="statements"):
        service.submit(alice, request_type="CREATE_POLICY", parameters={"name": "p", "description": "d"})
    assert service.store.list_by_filter()[0] == 0
    assert fake_oci.calls == []


def test_unresolved_placeholder_counts_as_value(service, fake_oci, alice):
    template = service.templates.create("Group", "", GROUP_TEMPLATE)
    service.submit(alice, template_id=template.id, parameters={"name": "ops"})
    assert json.loads(fake_oci.calls[0]["data"])["description"] == "${description}"


def test_unknown_template(service, alice):
    with pytest.raises(TemplateNotFoundError):
        service.submit(alice, template_id=42, parameters={})


def test_inactive_template(service, alice):
    template = service.templates.create("Group", "", GROUP_TEMPLATE, active=False)
    with pytest.raises(TemplateInactiveError):
        service.submit(alice, template_id=template.id, parameters={})


def test_unsupported_type(service, alice):
    with pytest.raises(UnsupportedRequestTypeError):
        service.submit(alice, request_type="DELETE_TENANCY", parameters={})


def test_template_without_type(service, alice):
    template = service.templates.create("Untyped", "", {"name": "${name}"})
    with pytest.raises(ValidationError, match="requestType"):
        service.submit(alice, template_id=template.id, parameters={"name": "x"})


def test_template_id_or_type_required(service, alice):
    with pytest.raises(ValidationError):
        service.submit(alice, parameters={"name": "x"})


def test_parameters_must_be_object(service, alice):
    with pytest.raises(ValidationError):
        service.submit(alice, request_type="CREATE_GROUP", parameters=["x"])


def test_inactive_company_cannot_submit(service, companies, alice):
    companies.deactivate("acme")
    with pytest.raises(AuthorizationError):
        service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)


def test_actor_without_company_cannot_submit(service):
    with pytest.raises(AuthorizationError):
        service.submit(Actor("loner"), request_type="CREATE_POLICY", parameters=POLICY_DATA)


def test_caller_parameters_are_not_aliased(service, fake_oci, alice):
    template = service.templates.create("Group", "", GROUP_TEMPLATE)
    parameters = {"name": "ops", "description": "Ops"}
    ack = service.submit(alice, template_id=template.id, parameters=parameters)
    parameters["name"] = "changed"

    assert _status(service, ack["requestId"]).parameters["name"] == "ops"
    assert service.templates.get_by_id(template.id).body == GROUP_TEMPLATE


# ─────────────────────────────────────────────────────────────────────────────
# Dispatch failures
# ─────────────────────────────────────────────────────────────────────────────

def test_provider_401_ends_in_error_without_retry(service, fake_oci, alice, audit_sink):
    fake_oci.reply(401, {"code": "NotAuthenticated"})

    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)

    stored = _status(service, ack["requestId"])
    assert stored.status == RequestStatus.ERROR
    assert stored.result["kind"] == "provider_error"
    assert stored.result["statusCode"] == 401
    assert len(fake_oci.calls) == 1
    assert audit_sink.names()[-1] == "request_failed"


def test_timeout_ends_in_error(service, fake_oci, alice):
    fake_oci.fail_with(requests.Timeout("slow"))
    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)
    assert _status(service, ack["requestId"]).result["kind"] == "timeout"


def test_missing_signer_ends_in_error(service, fake_oci, alice):
    service.client.signer = None
    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)
    stored = _status(service, ack["requestId"])
    assert stored.status == RequestStatus.ERROR
    assert stored.result["kind"] == "signing_error"
    assert fake_oci.calls == []


def test_unexpected_failure_ends_in_error(service, alice):
    service.client = MagicMock()
    service.client.send.side_effect = RuntimeError("boom")
    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)
    stored = _status(service, ack["requestId"])
    assert stored.status == RequestStatus.ERROR
    assert stored.result["kind"] == "internal_error"


def test_audit_failure_does_not_break_pipeline(service, fake_oci, alice):
    broken = MagicMock()
    broken.record.side_effect = OSError("disk full")
    service.tracker.audit_sink = broken

    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)

    assert _status(service, ack["requestId"]).status == RequestStatus.COMPLETED


# ─────────────────────────────────────────────────────────────────────────────
# Reprocess / cancel
# ─────────────────────────────────────────────────────────────────────────────

def test_reprocess_reruns_pipeline(service, fake_oci, alice, audit_sink):
    fake_oci.reply(500, {"code": "InternalError"})
    fake_oci.reply(200, {"id": "ocid1.policy.oc1..p"})
    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)
    assert _status(service, ack["requestId"]).status == RequestStatus.ERROR

    result = service.reprocess(ack["requestId"], alice)

    assert result["attempt"] == 2
    stored = _status(service, ack["requestId"])
    assert stored.status == RequestStatus.COMPLETED
    assert stored.result["data"] == {"id": "ocid1.policy.oc1..p"}
    assert len(fake_oci.calls) == 2
    assert "request_reprocessed" in audit_sink.names()


def test_reprocess_uses_current_template(service, fake_oci, alice):
    template = service.templates.create("Group", "", GROUP_TEMPLATE)
    fake_oci.reply(500)
    ack = service.submit(alice, template_id=template.id, parameters={"name": "ops", "description": "Ops"})

    service.templates.update(template.id, body={**GROUP_TEMPLATE, "description": "v2 ${description}"})
    service.reprocess(ack["requestId"], alice)

    assert json.loads(fake_oci.calls[1]["data"])["description"] == "v2 Ops"


def test_reprocess_after_template_deactivated_ends_in_error(service, fake_oci, alice):
    template = service.templates.create("Group", "", GROUP_TEMPLATE)
    fake_oci.reply(500)
    ack = service.submit(alice, template_id=template.id, parameters={"name": "ops", "description": "Ops"})
    assert _status(service, ack["requestId"]).status == RequestStatus.ERROR

    service.templates.update(template.id, active=False)
    result = service.reprocess(ack["requestId"], alice)

    assert result["attempt"] == 2
    stored = _status(service, ack["requestId"])
    assert stored.status == RequestStatus.ERROR
    assert stored.result["kind"] == "template_inactive"
    assert stored.attempt == 2
    assert len(fake_oci.calls) == 1


def _stopped_executor():
    executor = ThreadPoolExecutor(max_workers=1)
    executor.shutdown()
    return executor


def test_submit_when_executor_rejects_marks_error(service, fake_oci, alice, audit_sink):
    service.executor = _stopped_executor()

    with pytest.raises(RuntimeError):
        service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)

    total, page = service.store.list_by_filter(owner_user_id=alice.user_id)
    assert total == 1
    assert page[0].status == RequestStatus.ERROR
    assert page[0].result["kind"] == "internal_error"
    assert fake_oci.calls == []
    assert audit_sink.names()[-1] == "request_failed"


def test_reprocess_when_executor_rejects_marks_error(service, fake_oci, alice):
    fake_oci.reply(500)
    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)
    service.executor = _stopped_executor()

    with pytest.raises(RuntimeError):
        service.reprocess(ack["requestId"], alice)

    stored = _status(service, ack["requestId"])
    assert stored.status == RequestStatus.ERROR
    assert stored.result["kind"] == "internal_error"
    assert stored.attempt == 2
    assert len(fake_oci.calls) == 1


def test_reprocess_completed_conflicts(service, fake_oci, alice):
    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)
    before = _status(service, ack["requestId"])

    with pytest.raises(ConflictError):
        service.reprocess(ack["requestId"], alice)

    after = _status(service, ack["requestId"])
    assert after.status == RequestStatus.COMPLETED
    assert after.result == before.result
    assert after.attempt == 1


def test_reprocess_by_other_user_forbidden(service, fake_oci, alice, bob):
    fake_oci.reply(500)
    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)
    with pytest.raises(AuthorizationError):
        service.reprocess(ack["requestId"], bob)


def test_cancel_error_conflicts(service, fake_oci, alice):
    fake_oci.reply(400, {"code": "InvalidParameter"})
    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)

    with pytest.raises(ConflictError, match="ERROR"):
        service.cancel(ack["requestId"], alice)
    assert _status(service, ack["requestId"]).status == RequestStatus.ERROR


def test_cancel_before_dispatch(signer, fake_oci, alice, audit_sink, service):
    deferred = DeferredExecutor()
    service.executor = deferred

    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)
    result = service.cancel(ack["requestId"], alice)
    deferred.run_all()

    assert result["status"] == "CANCELLED"
    assert _status(service, ack["requestId"]).status == RequestStatus.CANCELLED
    assert fake_oci.calls == []
    assert audit_sink.names() == ["request_submitted", "request_cancelled"]


def test_late_completion_after_cancel_is_ignored(service, alice):
    deferred = DeferredExecutor()
    service.executor = deferred
    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)
    request_id = ack["requestId"]

    service.cancel(request_id, alice)
    assert service.tracker.complete(request_id, 1, {"status": 200}, "system") is None
    assert _status(service, request_id).status == RequestStatus.CANCELLED


def test_cancel_while_dispatching_conflicts(service, alice):
    deferred = DeferredExecutor()
    service.executor = deferred
    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)
    service.store.begin_dispatch(ack["requestId"], 1)

    with pytest.raises(ConflictError, match="dispatch already started"):
        service.cancel(ack["requestId"], alice)


# ─────────────────────────────────────────────────────────────────────────────
# Status and listing
# ─────────────────────────────────────────────────────────────────────────────

def test_get_status_projection(service, fake_oci, alice, manager):
    template = service.templates.create("Group", "Creates a group", GROUP_TEMPLATE)
    ack = service.submit(alice, template_id=template.id, parameters={"name": "ops", "description": "Ops"})

    view = service.get_status(ack["requestId"], manager)

    assert view["status"] == "COMPLETED"
    assert view["template"] == {"id": template.id, "name": "Group", "description": "Creates a group"}
    assert view["parameters"] == {"name": "ops", "description": "Ops"}


def test_get_status_access_rules(service, fake_oci, alice, bob, eve, admin):
    ack = service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)
    assert service.get_status(ack["requestId"], admin)["id"] == ack["requestId"]
    with pytest.raises(AuthorizationError):
        service.get_status(ack["requestId"], bob)
    with pytest.raises(AuthorizationError):
        service.get_status(ack["requestId"], eve)


def test_get_status_unknown(service, alice):
    with pytest.raises(RequestNotFoundError):
        service.get_status("nope", alice)


def test_list_requests_scoping(service, fake_oci, alice, bob, manager, admin, eve):
    service.submit(alice, request_type="CREATE_POLICY", parameters=POLICY_DATA)
    service.submit(bob, request_type="CREATE_POLICY", parameters=POLICY_DATA)
    service.submit(eve, request_type="CREATE_POLICY", parameters=POLICY_DATA)

    assert service.list_requests(alice)["total"] == 1
    assert service.list_requests(manager)["total"] == 2
    assert service.list_requests(admin)["total"] == 3
    assert service.list_requests(admin, status="error")["total"] == 0
    page = service.list_requests(admin, limit=2, offset=0)
    assert len(page["requests"]) == 2


def test_list_requests_rejects_unknown_status(service, admin):
    with pytest.raises(ValidationError):
        service.list_requests(admin, status="DONE")


# ─────────────────────────────────────────────────────────────────────────────
# Template management
# ─────────────────────────────────────────────────────────────────────────────

def test_only_admin_saves_templates(service, alice):
    with pytest.raises(AuthorizationError):
        service.save_template(alice, name="x", body={"a": 1})


def test_save_and_update_template(service, admin, audit_sink):
    created = service.save_template(admin, name="Group", description="d", body=json.dumps(GROUP_TEMPLATE))
    assert created["parameters"] == ["description", "name"]

    updated = service.save_template(admin, template_id=created["id"], request_type="CREATE_GROUP")
    assert updated["requestType"] == "CREATE_GROUP"
    assert updated["name"] == "Group"
    assert audit_sink.names() == ["template_created", "template_updated"]


def test_save_template_validates(service, admin):
    with pytest.raises(ValidationError):
        service.save_template(admin, name="", body={"a": 1})
    with pytest.raises(ValidationError):
        service.save_template(admin, name="bad", body="not json")
    with pytest.raises(UnsupportedRequestTypeError):
        service.save_template(admin, name="bad", body={"a": 1}, request_type="NOPE")


def test_get_template_visibility(service, admin, alice):
    template = service.templates.create("Group", "", GROUP_TEMPLATE, active=False)
    assert service.get_template(template.id, admin)["active"] is False
    with pytest.raises(TemplateInactiveError):
        service.get_template(template.id, alice)


def test_deactivate_template(service, fake_oci, admin, alice):
    template = service.templates.create("Group", "", GROUP_TEMPLATE)
    summary = service.deactivate_template(template.id, admin)
    assert summary["active"] is False
    assert service.list_templates() == []
    with pytest.raises(TemplateInactiveError):
        service.submit(alice, template_id=template.id, parameters={"name": "a", "description": "b"})


def test_deactivate_template_with_pending_requests(service, admin, alice):
    service.executor = DeferredExecutor()
    template = service.templates.create("Group", "", GROUP_TEMPLATE)
    service.submit(alice, template_id=template.id, parameters={"name": "a", "description": "b"})

    with pytest.raises(ConflictError):
        service.deactivate_template(template.id, admin)
    assert service.templates.get_by_id(template.id).active is True


def test_build_service_from_settings(cfg, tmp_path):
    from app.core.provisioning_service import build_service

    seed = tmp_path / "templates.json"
    seed.write_text(json.dumps([{"name": "Group", "template": GROUP_TEMPLATE}]))
    cfg.templates_file = str(seed)

    built = build_service(cfg, audit_sink=RecordingAuditSink())
    try:
        assert [t["name"] for t in built.list_templates()] == ["Group"]
        assert built.client.signer is not None
        assert built.transformer.compartment_id == COMPARTMENT_ID
    finally:
        built.shutdown()


def test_build_service_without_identity(cfg):
    from app.core.provisioning_service import build_service

    cfg.oci_private_key = ""
    built = build_service(cfg, audit_sink=RecordingAuditSink())
    try:
        assert built.client.signer is None
    finally:
        built.shutdown()
