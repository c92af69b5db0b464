"""Role-Based Access Control for provisioning requests.

Roles (from the bearer token's ``role`` claim):
    - admin   : every request and template operation
    - manager : requests owned by any user of the same company
    - user    : only requests the user owns
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Protocol

ADMIN_ROLE = "admin"
MANAGER_ROLE = "manager"
USER_ROLE = "user"

ROLE_ALIASES = {
    "administrator": ADMIN_ROLE,
    "company_manager": MANAGER_ROLE,
    "gerente": MANAGER_ROLE,
}


def normalize_role(role: Optional[str]) -> str:
    role = (role or USER_ROLE).strip().lower()
    return ROLE_ALIASES.get(role, role)


@dataclass(frozen=True)
class Actor:
    """Authenticated caller."""
    user_id: Any
    role: str = USER_ROLE
    company_id: Any = None
    username: str = ""

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "Actor":
        """Build an actor from validated token claims (``sub``, ``role``, ``company_id``)."""
        return cls(
            user_id=claims.get("sub"),
            role=normalize_role(claims.get("role")),
            company_id=claims.get("company_id"),
            username=claims.get("preferred_username") or claims.get("email") or "",
        )

    @property
    def is_admin(self) -> bool:
        return normalize_role(self.role) == ADMIN_ROLE

    @property
    def is_manager(self) -> bool:
        return normalize_role(self.role) == MANAGER_ROLE


class CompanyDirectory(Protocol):
    def is_active(self, company_id: Any) -> bool: ...


class InMemoryCompanyDirectory:
    """Company activity lookup backed by a fixed set of ids.

    ``allow_all`` treats every company as active (demo mode).
    """

    def __init__(self, active_ids: Optional[Iterable[Any]] = None, allow_all: bool = False):
        self.allow_all = allow_all
        self._active = {str(company_id) for company_id in (active_ids or [])}

    def is_active(self, company_id: Any) -> bool:
        if company_id is None:
            return False
        return self.allow_all or str(company_id) in self._active

    def activate(self, company_id: Any) -> None:
        self._active.add(str(company_id))

    def deactivate(self, company_id: Any) -> None:
        self._active.discard(str(company_id))


class AuthorizationOracle:
    """Answers ownership and company questions for the request service."""

    def __init__(self, companies: CompanyDirectory):
        self.companies = companies

    def is_owner_or_authorized(self, actor: Actor, request: Any) -> bool:
        """Owner, a manager of the owner's company, or an admin."""
        if actor is None:
            return False
        if actor.is_admin:
            return True
        if actor.user_id is not None and str(actor.user_id) == str(request.owner_user_id):
            return True
        if actor.is_manager and actor.company_id is not None:
            return str(actor.company_id) == str(request.owner_company_id)
        return False

    def is_company_active(self, company_id: Any) -> bool:
        return self.companies.is_active(company_id)

    def can_manage_templates(self, actor: Actor) -> bool:
        return actor is not None and actor.is_admin

    def list_scope(self, actor: Actor) -> Dict[str, Any]:
        """Store filter limiting a listing to what ``actor`` may see."""
        if actor.is_admin:
            return {}
        if actor.is_manager and actor.company_id is not None:
            return {"owner_company_id": actor.company_id}
        return {"owner_user_id": actor.user_id}
