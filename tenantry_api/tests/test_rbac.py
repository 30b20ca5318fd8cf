"""Tests for the role hierarchy and permission guards."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from tenantry_api.errors import Forbidden, Unauthorized
from tenantry_api.middleware.rbac import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    get_user_role,
    parse_role,
    require_permission,
    role_has_permission,
)


def _request(**state) -> SimpleNamespace:
    return SimpleNamespace(state=SimpleNamespace(**state))


class TestRoleHierarchy:
    def test_ordering(self):
        assert Role.MEMBER < Role.ADMIN < Role.OWNER

    @pytest.mark.parametrize("raw,expected", [("owner", Role.OWNER), (" Admin ", Role.ADMIN), ("MEMBER", Role.MEMBER)])
    def test_parse_role(self, raw: str, expected: Role):
        assert parse_role(raw) is expected

    def test_parse_unknown_role(self):
        with pytest.raises(ValueError, match="Unknown role"):
            parse_role("superuser")

    def test_each_role_inherits_lower_permissions(self):
        assert ROLE_PERMISSIONS[Role.MEMBER] <= ROLE_PERMISSIONS[Role.ADMIN] <= ROLE_PERMISSIONS[Role.OWNER]

    def test_member_permissions(self):
        assert role_has_permission(Role.MEMBER, Permission.ACCESS_DATA_PLANE)
        assert not role_has_permission(Role.MEMBER, Permission.MANAGE_BILLING)

    def test_admin_manages_billing_but_not_onboarding(self):
        assert role_has_permission(Role.ADMIN, Permission.MANAGE_BILLING)
        assert not role_has_permission(Role.ADMIN, Permission.MANAGE_ONBOARDING)
        assert not role_has_permission(Role.ADMIN, Permission.PROVISION_TENANT)

    def test_owner_has_everything(self):
        assert all(role_has_permission(Role.OWNER, p) for p in Permission)


class TestGuards:
    def test_unauthenticated_request(self):
        with pytest.raises(Unauthorized):
            get_user_role(_request())

    def test_missing_role_claim(self):
        with pytest.raises(Forbidden):
            get_user_role(_request(user_id="u1", role=None))

    def test_unknown_role_claim(self):
        with pytest.raises(Forbidden, match="Unrecognised"):
            get_user_role(_request(user_id="u1", role="root"))

    def test_require_permission_allows(self):
        check = require_permission(Permission.MANAGE_BILLING)
        assert check(role=Role.ADMIN) is Role.ADMIN

    def test_require_permission_denies(self):
        check = require_permission(Permission.PROVISION_TENANT)
        with pytest.raises(Forbidden, match="provision:tenant"):
            check(role=Role.ADMIN)
