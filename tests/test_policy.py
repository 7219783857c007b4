"""Tests for the pure group decision rules."""

import pytest

from app.features.permissions.policy import (
    UNRESTRICTED,
    AllowList,
    GroupGrants,
    PermissionRef,
    Principal,
    any_group_authorizes,
    find_authorizing_group,
    group_authorizes,
    page_override_decision,
    restriction_from,
)


READ = PermissionRef("p-read", "wiki", "page", "read")
UPDATE = PermissionRef("p-update", "wiki", "page", "update")
SETTINGS = PermissionRef("p-settings", "system", "settings", "read")


def group(name, permission_ids=(), modules=(), actions=()):
    return GroupGrants(
        group_id=f"g-{name}",
        name=name,
        permission_ids=frozenset(permission_ids),
        modules=restriction_from(modules),
        actions=restriction_from(actions),
    )


class TestPrincipal:
    def test_guest(self):
        assert Principal.guest().is_guest
        assert str(Principal.guest()) == "guest"

    def test_user(self):
        principal = Principal.for_user("u1")
        assert not principal.is_guest
        assert principal == Principal.for_user("u1")


class TestRestrictions:
    def test_empty_allow_list_is_unrestricted(self):
        assert restriction_from([]) is UNRESTRICTED
        assert restriction_from([]).permits("anything")

    def test_allow_list_permits_only_members(self):
        restriction = restriction_from(["wiki", "assets"])
        assert isinstance(restriction, AllowList)
        assert restriction.permits("wiki")
        assert not restriction.permits("system")


class TestGroupAuthorization:
    def test_grant_without_restrictions_authorizes(self):
        assert group_authorizes(group("editors", ["p-read"]), READ)

    def test_no_grant_never_authorizes(self):
        assert not group_authorizes(group("editors", [], modules=["wiki"], actions=["read"]), READ)

    def test_module_restriction_vetoes_grant(self):
        assert not group_authorizes(group("limited", ["p-settings"], modules=["wiki"]), SETTINGS)

    def test_action_restriction_vetoes_grant(self):
        assert not group_authorizes(group("readers", ["p-update"], actions=["read"]), UPDATE)

    def test_restrictions_pass_when_both_include_permission(self):
        assert group_authorizes(group("readers", ["p-read"], modules=["wiki"], actions=["read"]), READ)

    def test_groups_are_ored(self):
        restricted = group("restricted", ["p-update"], actions=["read"])
        editors = group("editors", ["p-update"])
        assert any_group_authorizes([restricted, editors], UPDATE)
        assert find_authorizing_group([restricted, editors], UPDATE) is editors

    def test_restriction_does_not_leak_across_groups(self):
        # One group's allow-list never narrows another group's grant.
        restricted = group("restricted", [], modules=["assets"])
        admins = group("admins", ["p-settings"])
        assert any_group_authorizes([restricted, admins], SETTINGS)

    def test_no_groups_denies(self):
        assert not any_group_authorizes([], READ)
        assert find_authorizing_group([], READ) is None


class TestPageOverrideDecision:
    @pytest.mark.parametrize(
        "types, expected",
        [
            ([], None),
            (["allow"], True),
            (["deny"], False),
            (["allow", "deny"], False),
            (["deny", "allow", "allow"], False),
        ],
    )
    def test_deny_beats_allow_beats_nothing(self, types, expected):
        assert page_override_decision(types) is expected
