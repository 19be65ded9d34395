"""Tests for the role gate and field-level issue permissions."""

import pytest

from issuetrack.service.errors import AuthorizationError
from issuetrack.service.rbac import (
    ADMIN_ONLY,
    ALL_ROLES,
    MANAGER_OR_ADMIN,
    authorize,
    disallowed_issue_fields,
    ensure_issue_fields_allowed,
    ensure_role,
)
from issuetrack.storage.models import Role


class TestAuthorize:
    @pytest.mark.parametrize(
        "role,allowed,expected",
        [
            (Role.USER, MANAGER_OR_ADMIN, False),
            (Role.MANAGER, MANAGER_OR_ADMIN, True),
            (Role.ADMIN, MANAGER_OR_ADMIN, True),
            (Role.MANAGER, ADMIN_ONLY, False),
            (Role.USER, ALL_ROLES, True),
            ("ADMIN", ADMIN_ONLY, True),
        ],
    )
    def test_membership(self, role, allowed, expected):
        assert authorize(role, allowed) is expected

    def test_unknown_role_is_denied(self):
        assert authorize("SUPERUSER", ALL_ROLES) is False

    def test_no_implicit_hierarchy(self):
        """ADMIN is not implied to satisfy a USER-only gate."""
        assert authorize(Role.ADMIN, {Role.USER}) is False


class TestEnsureRole:
    def test_denied_role_raises_403(self):
        with pytest.raises(AuthorizationError) as exc_info:
            ensure_role(Role.USER, MANAGER_OR_ADMIN)

        err = exc_info.value
        assert err.status_code == 403
        assert err.error_code == "AUTHORIZATION_ERROR"
        assert err.details == {"requiredRoles": ["ADMIN", "MANAGER"]}

    def test_allowed_role_passes(self):
        ensure_role(Role.MANAGER, MANAGER_OR_ADMIN)

    def test_accepts_generator_of_roles(self):
        ensure_role(Role.ADMIN, (r for r in [Role.ADMIN]))


class TestIssueFieldPermissions:
    def test_user_may_change_status_only(self):
        assert disallowed_issue_fields(Role.USER, ["status"]) == []
        assert disallowed_issue_fields(Role.USER, ["status", "priority", "title"]) == [
            "priority",
            "title",
        ]

    @pytest.mark.parametrize("role", [Role.MANAGER, Role.ADMIN])
    def test_elevated_roles_may_change_anything(self, role):
        assert disallowed_issue_fields(role, ["priority", "assigned_to", "title"]) == []

    def test_mixed_update_is_rejected_whole(self):
        with pytest.raises(AuthorizationError, match="Users can only update issue status"):
            ensure_issue_fields_allowed(Role.USER, ["status", "priority"])
