"""Request type registry: validation and provider wire transforms.

Each logical request type maps to one registry entry holding its endpoint,
HTTP method, required fields and the transform onto OCI Identity API field
names. Supporting a new type means adding one entry to ``REQUEST_TYPES``.

Usage:
    transformer = RequestTransformer(compartment_id="ocid1.compartment.oc1..aaa")
    plan = transformer.resolve("CREATE_GROUP", {"name": "ops", "description": "Ops team"})
    wire_payload = plan.transform(data)
"""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote

from app.core.exceptions import UnsupportedRequestTypeError, ValidationError

IDENTITY_API_VERSION = "/20160918"

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class RequestPlan:
    """Resolved semantics of one request."""
    request_type: str
    endpoint: str
    method: str
    required_fields: Tuple[str, ...]
    transform: Callable[[Mapping[str, Any]], Dict[str, Any]]


@dataclass(frozen=True)
class RequestType:
    """Registry entry for a logical request type."""
    name: str
    method: str
    endpoint: str
    required_fields: Tuple[str, ...]
    build_payload: Callable[[Mapping[str, Any], Optional[str]], Dict[str, Any]]
    checks: Tuple[Callable[[Mapping[str, Any]], None], ...] = field(default=())


# ─────────────────────────────────────────────────────────────────────────────
# Field checks
# ─────────────────────────────────────────────────────────────────────────────

def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, dict)) and len(value) == 0)


def missing_fields(data: Mapping[str, Any], required: Sequence[str]) -> List[str]:
    """Return every required field absent from ``data`` (in declaration order)."""
    return [name for name in required if _is_missing(data.get(name))]


def _check_email(data: Mapping[str, Any]) -> None:
    email = data.get("email")
    if email is None:
        return
    if not isinstance(email, str) or not EMAIL_PATTERN.match(email):
        raise ValidationError("email format is invalid")


def _check_statements(data: Mapping[str, Any]) -> None:
    statements = data.get("statements")
    if not isinstance(statements, list) or not statements:
        raise ValidationError("statements must be a non-empty list")
    if not all(isinstance(s, str) and s.strip() for s in statements):
        raise ValidationError("statements must contain only non-empty strings")


def _tags(data: Mapping[str, Any]) -> Dict[str, Any]:
    tags = data.get("tags")
    if tags is None:
        return {}
    if not isinstance(tags, dict):
        raise ValidationError("tags must be an object")
    return dict(tags)


# ─────────────────────────────────────────────────────────────────────────────
# Wire payloads (logical field names -> OCI Identity API field names)
# ─────────────────────────────────────────────────────────────────────────────

def _create_user(data: Mapping[str, Any], compartment_id: Optional[str]) -> Dict[str, Any]:
    return {
        "compartmentId": compartment_id,
        "name": data["name"],
        "description": data["description"],
        "email": data["email"],
        "freeformTags": _tags(data),
    }


def _update_user(data: Mapping[str, Any], compartment_id: Optional[str]) -> Dict[str, Any]:
    # UpdateUser takes no compartmentId; only provided attributes are sent
    payload: Dict[str, Any] = {}
    for name in ("description", "email"):
        if not _is_missing(data.get(name)):
            payload[name] = data[name]
    return payload


def _create_group(data: Mapping[str, Any], compartment_id: Optional[str]) -> Dict[str, Any]:
    return {
        "compartmentId": compartment_id,
        "name": data["name"],
        "description": data["description"],
        "freeformTags": _tags(data),
    }


def _add_user_to_group(data: Mapping[str, Any], compartment_id: Optional[str]) -> Dict[str, Any]:
    return {
        "compartmentId": compartment_id,
        "userId": data["userId"],
        "groupId": data["groupId"],
    }


def _create_policy(data: Mapping[str, Any], compartment_id: Optional[str]) -> Dict[str, Any]:
    return {
        "compartmentId": compartment_id,
        "name": data["name"],
        "description": data["description"],
        "statements": list(data["statements"]),
        "freeformTags": _tags(data),
    }


REQUEST_TYPES: Dict[str, RequestType] = {
    entry.name: entry
    for entry in (
        RequestType(
            name="CREATE_USER",
            method="POST",
            endpoint=f"{IDENTITY_API_VERSION}/users",
            required_fields=("name", "description", "email"),
            build_payload=_create_user,
            checks=(_check_email,),
        ),
        RequestType(
            name="UPDATE_USER",
            method="PUT",
            endpoint=f"{IDENTITY_API_VERSION}/users/{{userId}}",
            required_fields=("userId",),
            build_payload=_update_user,
            checks=(_check_email,),
        ),
        RequestType(
            name="CREATE_GROUP",
            method="POST",
            endpoint=f"{IDENTITY_API_VERSION}/groups",
            required_fields=("name", "description"),
            build_payload=_create_group,
        ),
        RequestType(
            name="ADD_USER_TO_GROUP",
            method="POST",
            endpoint=f"{IDENTITY_API_VERSION}/userGroupMemberships",
            required_fields=("userId", "groupId"),
            build_payload=_add_user_to_group,
        ),
        RequestType(
            name="CREATE_POLICY",
            method="POST",
            endpoint=f"{IDENTITY_API_VERSION}/policies",
            required_fields=("name", "description", "statements"),
            build_payload=_create_policy,
            checks=(_check_statements,),
        ),
    )
}


def supported_request_types() -> List[str]:
    return sorted(REQUEST_TYPES)


class RequestTransformer:
    """Resolves request types against the registry for one compartment."""

    def __init__(self, compartment_id: Optional[str] = None, registry: Optional[Mapping[str, RequestType]] = None):
        self.compartment_id = compartment_id
        self.registry = registry if registry is not None else REQUEST_TYPES

    def resolve(self, request_type: str, data: Optional[Mapping[str, Any]]) -> RequestPlan:
        """Validate ``data`` for ``request_type`` and return its plan.

        Args:
            request_type: Logical request type (e.g. "CREATE_USER")
            data: Caller's logical fields

        Returns:
            RequestPlan with endpoint, method, required fields and transform

        Raises:
            UnsupportedRequestTypeError: Type not in the registry
            ValidationError: Data missing, required fields absent (all of
                them are named) or a field check failed
        """
        entry = self.registry.get(request_type) if isinstance(request_type, str) else None
        if entry is None:
            raise UnsupportedRequestTypeError(request_type)

        if not isinstance(data, Mapping):
            raise ValidationError("Request data must be a JSON object")

        missing = missing_fields(data, entry.required_fields)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        for check in entry.checks:
            check(data)
        _tags(data)

        endpoint = entry.endpoint
        if "{" in endpoint:
            endpoint = endpoint.format(**{
                name: quote(str(data[name]), safe="") for name in entry.required_fields
            })

        compartment_id = self.compartment_id

        def transform(values: Mapping[str, Any]) -> Dict[str, Any]:
            return entry.build_payload(values, compartment_id)

        return RequestPlan(
            request_type=entry.name,
            endpoint=endpoint,
            method=entry.method,
            required_fields=entry.required_fields,
            transform=transform,
        )


def resolve(request_type: str, data: Optional[Mapping[str, Any]], compartment_id: Optional[str] = None) -> RequestPlan:
    """Module-level shortcut for ``RequestTransformer(compartment_id).resolve``."""
    return RequestTransformer(compartment_id).resolve(request_type, data)
