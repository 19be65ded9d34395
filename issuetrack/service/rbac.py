from __future__ import annotations

from typing import AbstractSet, Iterable

from issuetrack.service.errors import AuthorizationError
from issuetrack.storage.models import Role

# Role sets are spelled out; there is no implied hierarchy between roles.
ALL_ROLES: frozenset[Role] = frozenset(Role)
MANAGER_OR_ADMIN: frozenset[Role] = frozenset({Role.MANAGER, Role.ADMIN})
ADMIN_ONLY: frozenset[Role] = frozenset({Role.ADMIN})

# Issue attributes a plain USER may change on PATCH.
USER_EDITABLE_ISSUE_FIELDS: frozenset[str] = frozenset({"status"})


def authorize(role: Role | str, allowed_roles: AbstractSet[Role] | Iterable[Role]) -> bool:
    """Pure permit/deny decision for ``role`` against ``allowed_roles``.

    Unknown role strings are denied rather than raising.
    """
    try:
        resolved = Role(role)
    except ValueError:
        return False
    return resolved in frozenset(allowed_roles)


def ensure_role(role: Role | str, allowed_roles: AbstractSet[Role] | Iterable[Role]) -> None:
    allowed = frozenset(allowed_roles)
    if not authorize(role, allowed):
        raise AuthorizationError(
            "You do not have permission to perform this action",
            details={"requiredRoles": sorted(r.value for r in allowed)},
        )


def disallowed_issue_fields(role: Role | str, fields: Iterable[str]) -> list[str]:
    """Fields in ``fields`` that ``role`` may not modify on an issue."""
    if authorize(role, MANAGER_OR_ADMIN):
        return []
    return sorted(set(fields) - USER_EDITABLE_ISSUE_FIELDS)


def ensure_issue_fields_allowed(role: Role | str, fields: Iterable[str]) -> None:
    """Reject the whole update if any field needs a higher role."""
    blocked = disallowed_issue_fields(role, fields)
    if blocked:
        raise AuthorizationError(
            "Users can only update issue status",
            details={"fields": blocked},
        )
