"""JSON request templates and parameter substitution.

A template is a stored JSON document whose string leaves may contain
``${name}`` placeholders. Substitution always works on a private copy so a
cached template can be shared by concurrent requests.

Usage:
    store = InMemoryTemplateStore()
    tpl = store.create("new-user", "Create user", {"email": "${email}"}, request_type="CREATE_USER")
    payload = substitute(store.get_active_template_by_id(tpl.id).body, {"email": "a@b.com"})
"""
from __future__ import annotations
import copy
import json
import logging
import re
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set

from app.core.exceptions import (
    TemplateInactiveError,
    TemplateNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Template:
    """Stored request template."""
    id: int
    name: str
    description: str
    body: Any
    active: bool = True
    request_type: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def summary(self) -> Dict[str, Any]:
        """Listing projection (no body)."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "requestType": self.request_type,
            "active": self.active,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.summary()
        data["template"] = copy.deepcopy(self.body)
        data["parameters"] = sorted(find_placeholders(self.body))
        return data


# ─────────────────────────────────────────────────────────────────────────────
# Substitution Engine
# ─────────────────────────────────────────────────────────────────────────────

def _substitute_string(value: str, parameters: Mapping[str, Any]) -> str:
    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in parameters and parameters[key] is not None:
            return str(parameters[key])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, value)


def _walk(node: Any, parameters: Mapping[str, Any]) -> Any:
    if isinstance(node, str):
        return _substitute_string(node, parameters)
    if isinstance(node, dict):
        return {key: _walk(value, parameters) for key, value in node.items()}
    if isinstance(node, list):
        return [_walk(item, parameters) for item in node]
    if node is None or isinstance(node, (bool, int, float)):
        return node
    return copy.deepcopy(node)


def substitute(template: Any, parameters: Optional[Mapping[str, Any]] = None) -> Any:
    """Replace ``${key}`` placeholders in every string leaf of ``template``.

    Placeholders whose key is absent from ``parameters`` are left verbatim.
    Dictionary keys, non-string leaves and container structure are copied
    unchanged. The result is a freshly built tree that shares no containers
    with ``template``; the input is never mutated.

    Args:
        template: Parsed JSON tree (dict, list or scalar)
        parameters: Flat key -> value mapping

    Returns:
        Concrete payload with placeholders resolved

    Example:
        >>> substitute({"email": "${email}"}, {"email": "a@b.com"})
        {'email': 'a@b.com'}
    """
    return _walk(template, parameters or {})


def find_placeholders(template: Any) -> Set[str]:
    """Collect every placeholder name used anywhere in ``template``."""
    names: Set[str] = set()
    if isinstance(template, str):
        names.update(PLACEHOLDER_PATTERN.findall(template))
    elif isinstance(template, dict):
        for value in template.values():
            names.update(find_placeholders(value))
    elif isinstance(template, list):
        for item in template:
            names.update(find_placeholders(item))
    return names


def parse_template_body(raw: Any) -> Any:
    """Parse and check a template body.

    Accepts a JSON string or an already parsed object/array.

    Raises:
        ValidationError: If the body is not a JSON object or array
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise ValidationError(f"Template is not valid JSON: {exc}")
    if not isinstance(raw, (dict, list)):
        raise ValidationError("Template must be a JSON object or array")
    return copy.deepcopy(raw)


# ─────────────────────────────────────────────────────────────────────────────
# Template Store
# ─────────────────────────────────────────────────────────────────────────────

class TemplateStore(Protocol):
    def get_active_template_by_id(self, template_id: int) -> Template: ...

    def get_by_id(self, template_id: int) -> Template: ...

    def list_active(self) -> List[Template]: ...

    def create(self, name: str, description: str, body: Any, *, request_type: Optional[str] = None,
               active: bool = True) -> Template: ...

    def update(self, template_id: int, **changes: Any) -> Template: ...


class InMemoryTemplateStore:
    """Thread-safe template store.

    Reads return copies, so callers never hold a reference to stored state.
    """

    def __init__(self, templates: Optional[List[Template]] = None):
        self._lock = threading.Lock()
        self._templates: Dict[int, Template] = {}
        self._next_id = 1
        for template in templates or []:
            self._templates[template.id] = copy.deepcopy(template)
            self._next_id = max(self._next_id, template.id + 1)

    def create(
        self,
        name: str,
        description: str,
        body: Any,
        *,
        request_type: Optional[str] = None,
        active: bool = True,
    ) -> Template:
        parsed = parse_template_body(body)
        with self._lock:
            template = Template(
                id=self._next_id,
                name=name,
                description=description,
                body=parsed,
                active=active,
                request_type=request_type,
            )
            self._templates[template.id] = template
            self._next_id += 1
            return copy.deepcopy(template)

    def update(self, template_id: int, **changes: Any) -> Template:
        """Apply field changes to an existing template.

        Raises:
            TemplateNotFoundError: If the template does not exist
        """
        if "body" in changes and changes["body"] is not None:
            changes["body"] = parse_template_body(changes["body"])
        changes = {key: value for key, value in changes.items() if value is not None}
        with self._lock:
            current = self._templates.get(template_id)
            if current is None:
                raise TemplateNotFoundError(template_id)
            updated = replace(current, updated_at=_utcnow(), **changes)
            self._templates[template_id] = updated
            return copy.deepcopy(updated)

    def get_by_id(self, template_id: int) -> Template:
        with self._lock:
            template = self._templates.get(template_id)
            if template is None:
                raise TemplateNotFoundError(template_id)
            return copy.deepcopy(template)

    def get_active_template_by_id(self, template_id: int) -> Template:
        """Fetch a template that is currently active.

        Raises:
            TemplateNotFoundError: Unknown id
            TemplateInactiveError: Template exists but was deactivated
        """
        template = self.get_by_id(template_id)
        if not template.active:
            raise TemplateInactiveError(template_id)
        return template

    def list_active(self) -> List[Template]:
        with self._lock:
            return [
                copy.deepcopy(t)
                for t in sorted(self._templates.values(), key=lambda t: t.id)
                if t.active
            ]

    def load_file(self, path: Path) -> int:
        """Seed templates from a JSON file holding a list of template objects.

        Each entry needs ``name`` and ``template``; ``description``,
        ``requestType`` and ``active`` are optional.

        Returns:
            Number of templates loaded
        """
        entries = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(entries, list):
            raise ValidationError(f"{path}: expected a JSON array of templates")
        for entry in entries:
            self.create(
                entry["name"],
                entry.get("description", ""),
                entry["template"],
                request_type=entry.get("requestType"),
                active=entry.get("active", True),
            )
        logger.info("Loaded %d templates from %s", len(entries), path)
        return len(entries)
