"""Access checkers consulted before entity data operations."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable

logger = logging.getLogger("stratum.access")

OPERATIONS = ("view", "create", "update", "delete", "manage")

_OPERATIONS_BY_ROLE: Dict[str, set[str]] = {
    "admin": {"view", "create", "update", "delete", "manage"},
    "editor": {"view", "create", "update", "delete"},
    "member": {"view", "create", "update"},
    "readonly": {"view"},
}


def _normalize_role(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    role = value.strip().lower()
    if role == "owner":
        role = "admin"
    return role or None


class AccessChecker(ABC):
    @abstractmethod
    def check_access(self, tenant_id: str, project_id: str | None, entity_type: str, operation: str, principal: dict | None) -> bool:
        ...


class RoleAccessChecker(AccessChecker):
    """Grants by role, limited to the tenants listed on the principal."""

    def __init__(self, operations_by_role: Dict[str, Iterable[str]] | None = None) -> None:
        source = operations_by_role if operations_by_role is not None else _OPERATIONS_BY_ROLE
        self._operations = {role: set(ops) for role, ops in source.items()}

    def _member_of(self, principal: dict, tenant_id: str) -> bool:
        tenants = principal.get("tenants")
        if tenants is None:
            return False
        return "*" in tenants or tenant_id in tenants

    def check_access(self, tenant_id: str, project_id: str | None, entity_type: str, operation: str, principal: dict | None) -> bool:
        if not isinstance(principal, dict) or not principal.get("id"):
            return False
        if principal.get("platform_role") == "superadmin":
            return True
        if not self._member_of(principal, tenant_id):
            logger.info("access_denied reason=tenant principal=%s tenant_id=%s", principal.get("id"), tenant_id)
            return False
        roles = [_normalize_role(r) for r in principal.get("roles") or []]
        allowed = any(operation in self._operations.get(role, set()) for role in roles if role)
        if not allowed:
            logger.info(
                "access_denied reason=role principal=%s tenant_id=%s entity_type=%s operation=%s",
                principal.get("id"),
                tenant_id,
                entity_type,
                operation,
            )
        return allowed


class AllowAllAccessChecker(AccessChecker):
    """Grants everything. Only wired when auth is disabled explicitly."""

    def check_access(self, tenant_id: str, project_id: str | None, entity_type: str, operation: str, principal: dict | None) -> bool:
        return True


class DenyAllAccessChecker(AccessChecker):
    def check_access(self, tenant_id: str, project_id: str | None, entity_type: str, operation: str, principal: dict | None) -> bool:
        return False
