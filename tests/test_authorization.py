import pytest

from gymauth.service.authorization import (
    PermissionMode,
    check_permissions,
    is_public_route,
    missing_permissions,
    role_allowed,
    route_permissions,
    ADMIN_ROLES,
    TRAINER_ROLES,
)


class TestPermissionGate:
    def test_any_mode(self):
        granted = ["members.view", "plans.view"]
        assert check_permissions(granted, ["members.view", "users.view"], PermissionMode.ANY)
        assert not check_permissions(granted, ["users.view", "users.edit"], PermissionMode.ANY)

    def test_all_mode(self):
        granted = ["members.view", "plans.view"]
        assert check_permissions(granted, ["members.view", "plans.view"], PermissionMode.ALL)
        assert not check_permissions(granted, ["members.view", "users.view"], PermissionMode.ALL)

    @pytest.mark.parametrize("mode", [PermissionMode.ANY, PermissionMode.ALL, "any", "all"])
    def test_empty_requirement_always_passes(self, mode):
        assert check_permissions([], [], mode)

    def test_missing_permissions(self):
        assert missing_permissions(["a"], ["a", "b", "c"]) == ["b", "c"]

    def test_roles(self):
        assert role_allowed("admin", ADMIN_ROLES)
        assert not role_allowed("trainer", ADMIN_ROLES)
        assert role_allowed("trainer", TRAINER_ROLES)
        assert not role_allowed("member", TRAINER_ROLES)
        assert role_allowed("member", ())


class TestRouteTable:
    def test_longest_prefix_wins(self):
        assert route_permissions("/memberships/bulk-import") == ["memberships.bulk_import"]
        assert route_permissions("/memberships/42") == ["memberships.view"]
        assert route_permissions("/members") == ["members.view"]

    def test_prefix_matches_whole_segments(self):
        # "/membersarea" is not under "/members"
        assert route_permissions("/membersarea") is None

    def test_unmatched_route_needs_only_login(self):
        assert route_permissions("/dashboard") is None

    def test_public_routes(self):
        assert is_public_route("/login")
        assert is_public_route("/unauthorized")
        assert is_public_route("/setup/step-2")
        assert not is_public_route("/loginx")
        assert not is_public_route("/members")
