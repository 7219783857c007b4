"""Tests for the authorization engine against a real database."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import delete
from sqlalchemy.exc import OperationalError

from app.features.permissions.authorization import AuthorizationService
from app.features.permissions.groups import GroupService
from app.features.permissions.models import Permission, PageOverrideType
from app.features.permissions.overrides import PageOverrideService
from app.features.permissions.policy import Principal
from app.features.permissions.registry import PermissionDefinition, WIKI_PERMISSIONS, build_registry
from tests.factories import make_group, make_page, make_user


READ_ONLY = ["wiki:page:read", "assets:asset:read"]


@pytest.fixture
def authz(db, registry):
    return AuthorizationService(db, registry)


class TestHasPermission:
    @pytest.mark.asyncio
    async def test_editor_scenario(self, db, catalog, authz):
        user = await make_user(db, "erin")
        await make_group(db, "Editors", catalog, permissions=["wiki:page:update"], users=[user])

        principal = Principal.for_user(user.id)
        assert await authz.has_permission(principal, "wiki:page:update")
        assert not await authz.has_permission(principal, "assets:asset:delete")

    @pytest.mark.asyncio
    async def test_viewer_scenario(self, db, catalog, authz):
        user = await make_user(db, "vic")
        await make_group(
            db, "Viewers", catalog,
            permissions=READ_ONLY, modules=["wiki", "assets"], actions=["read"], users=[user],
        )

        principal = Principal.for_user(user.id)
        assert await authz.has_permission(principal, "wiki:page:read")
        assert await authz.has_permission(principal, "assets:asset:read")
        assert not await authz.has_permission(principal, "wiki:page:create")

    @pytest.mark.asyncio
    async def test_action_restriction_vetoes_an_explicit_grant(self, db, catalog, authz):
        user = await make_user(db, "rita")
        await make_group(
            db, "Readers", catalog,
            permissions=["wiki:page:read", "wiki:page:create"], actions=["read"], users=[user],
        )

        assert not await authz.has_permission(Principal.for_user(user.id), "wiki:page:create")

    @pytest.mark.asyncio
    async def test_module_restriction_vetoes_an_explicit_grant(self, db, catalog, authz):
        user = await make_user(db, "max")
        await make_group(
            db, "Wiki only", catalog,
            permissions=["wiki:page:read", "system:settings:read"], modules=["wiki"], users=[user],
        )

        principal = Principal.for_user(user.id)
        assert await authz.has_permission(principal, "wiki:page:read")
        assert not await authz.has_permission(principal, "system:settings:read")

    @pytest.mark.asyncio
    async def test_any_group_can_authorize(self, db, catalog, authz):
        user = await make_user(db, "gus")
        await make_group(
            db, "Readers", catalog, permissions=["wiki:page:update"], actions=["read"], users=[user],
        )
        await make_group(db, "Editors", catalog, permissions=["wiki:page:update"], users=[user])

        assert await authz.has_permission(Principal.for_user(user.id), "wiki:page:update")

    @pytest.mark.asyncio
    async def test_user_without_groups_is_denied(self, db, catalog, authz):
        user = await make_user(db, "nobody")
        assert not await authz.has_permission(Principal.for_user(user.id), "wiki:page:read")

    @pytest.mark.asyncio
    async def test_malformed_identifier_is_denied(self, db, catalog, authz):
        user = await make_user(db, "ada")
        await make_group(db, "Everything", catalog, permissions=list(catalog), users=[user])

        principal = Principal.for_user(user.id)
        assert not await authz.has_permission(principal, "wiki:page")
        assert not await authz.has_permission(principal, "wiki:page:read:now")
        assert not await authz.has_permission(principal, "")

    @pytest.mark.asyncio
    async def test_identifier_unknown_to_registry_is_denied(self, db, catalog, authz):
        user = await make_user(db, "ada")
        await make_group(db, "Everything", catalog, permissions=list(catalog), users=[user])

        assert not await authz.has_permission(Principal.for_user(user.id), "wiki:page:publish")

    @pytest.mark.asyncio
    async def test_catalog_drift_is_denied(self, db, catalog):
        # The registry knows wiki:page:publish but reconciliation has not added it yet.
        registry = build_registry(WIKI_PERMISSIONS + (PermissionDefinition("wiki", "page", "publish", "Publish"),))
        user = await make_user(db, "ada")
        await make_group(db, "Everything", catalog, permissions=list(catalog), users=[user])

        authz = AuthorizationService(db, registry)
        principal = Principal.for_user(user.id)
        assert not await authz.has_permission(principal, "wiki:page:publish")
        assert await authz.has_permission(principal, "wiki:page:read")

    @pytest.mark.asyncio
    async def test_removed_catalog_row_is_denied(self, db, catalog, authz):
        user = await make_user(db, "ada")
        await make_group(db, "Everything", catalog, permissions=list(catalog), users=[user])
        await db.execute(delete(Permission).where(Permission.id == catalog["wiki:page:move"]))
        await db.commit()

        assert not await authz.has_permission(Principal.for_user(user.id), "wiki:page:move")


class TestHasAnyPermission:
    @pytest.mark.asyncio
    async def test_empty_list_is_false(self, db, catalog, authz):
        user = await make_user(db, "ada")
        await make_group(db, "Everything", catalog, permissions=list(catalog), users=[user])

        assert not await authz.has_any_permission(Principal.for_user(user.id), [])

    @pytest.mark.asyncio
    async def test_is_or_of_single_checks(self, db, catalog, authz):
        user = await make_user(db, "erin")
        await make_group(db, "Editors", catalog, permissions=["wiki:page:update"], users=[user])
        principal = Principal.for_user(user.id)

        assert await authz.has_any_permission(principal, ["system:settings:read", "wiki:page:update"])
        assert await authz.has_any_permission(principal, ["bad", "wiki:page:update"])
        assert not await authz.has_any_permission(principal, ["system:settings:read", "assets:asset:delete"])


class TestGuests:
    @pytest.mark.asyncio
    async def test_guest_is_evaluated_as_guests_group(self, db, catalog, authz):
        await make_group(
            db, "Guests", catalog,
            permissions=READ_ONLY, modules=["wiki", "assets"], actions=["read"],
            allow_user_assignment=False,
        )

        guest = Principal.guest()
        assert await authz.has_permission(guest, "wiki:page:read")
        assert not await authz.has_permission(guest, "wiki:page:update")
        assert await authz.get_principal_permissions(guest) == sorted(READ_ONLY)

    @pytest.mark.asyncio
    async def test_guest_without_guests_group_is_denied(self, db, catalog, authz):
        assert not await authz.has_permission(Principal.guest(), "wiki:page:read")
        assert await authz.get_principal_permissions(Principal.guest()) == []

    @pytest.mark.asyncio
    async def test_guest_group_name_is_configurable(self, db, catalog, registry):
        await make_group(db, "Anonymous", catalog, permissions=["wiki:page:read"])

        assert await AuthorizationService(db, registry, guest_group_name="Anonymous").has_permission(
            Principal.guest(), "wiki:page:read"
        )
        assert not await AuthorizationService(db, registry, guest_group_name="Guests").has_permission(
            Principal.guest(), "wiki:page:read"
        )


class TestPagePermission:
    @pytest.mark.asyncio
    async def test_null_group_deny_beats_administrator(self, db, catalog, authz):
        admin = await make_user(db, "root")
        await make_group(db, "Administrators", catalog, permissions=list(catalog), users=[admin])
        page = await make_page(db, "/secret")
        await PageOverrideService(db).set_override(page.id, "wiki:page:read", PageOverrideType.DENY)

        principal = Principal.for_user(admin.id)
        assert await authz.has_permission(principal, "wiki:page:read")
        assert not await authz.has_page_permission(principal, page.id, "wiki:page:read")

    @pytest.mark.asyncio
    async def test_group_allow_grants_without_a_global_grant(self, db, catalog, authz):
        user = await make_user(db, "ted")
        team = await make_group(db, "Team", catalog, users=[user])
        page = await make_page(db, "/team")
        await PageOverrideService(db).set_override(
            page.id, "wiki:page:update", PageOverrideType.ALLOW, group_id=team.id
        )

        principal = Principal.for_user(user.id)
        assert not await authz.has_permission(principal, "wiki:page:update")
        assert await authz.has_page_permission(principal, page.id, "wiki:page:update")

    @pytest.mark.asyncio
    async def test_deny_wins_over_allow(self, db, catalog, authz):
        user = await make_user(db, "ted")
        team = await make_group(db, "Team", catalog, permissions=["wiki:page:read"], users=[user])
        page = await make_page(db, "/mixed")
        overrides = PageOverrideService(db)
        await overrides.set_override(page.id, "wiki:page:read", PageOverrideType.ALLOW, group_id=team.id)
        await overrides.set_override(page.id, "wiki:page:read", PageOverrideType.DENY)

        assert not await authz.has_page_permission(Principal.for_user(user.id), page.id, "wiki:page:read")

    @pytest.mark.asyncio
    async def test_overrides_for_other_groups_do_not_apply(self, db, catalog, authz):
        user = await make_user(db, "ted")
        await make_group(db, "Team", catalog, permissions=["wiki:page:read"], users=[user])
        other = await make_group(db, "Other", catalog)
        page = await make_page(db, "/other")
        await PageOverrideService(db).set_override(
            page.id, "wiki:page:read", PageOverrideType.DENY, group_id=other.id
        )

        assert await authz.has_page_permission(Principal.for_user(user.id), page.id, "wiki:page:read")

    @pytest.mark.asyncio
    async def test_without_overrides_matches_global_decision(self, db, catalog, authz):
        user = await make_user(db, "erin")
        await make_group(db, "Editors", catalog, permissions=["wiki:page:update"], users=[user])
        page = await make_page(db, "/plain")
        principal = Principal.for_user(user.id)

        for identifier in ["wiki:page:update", "wiki:page:delete", "system:settings:read"]:
            assert await authz.has_page_permission(principal, page.id, identifier) == \
                await authz.has_permission(principal, identifier)

    @pytest.mark.asyncio
    async def test_overrides_are_per_permission(self, db, catalog, authz):
        user = await make_user(db, "erin")
        await make_group(db, "Editors", catalog, permissions=["wiki:page:read", "wiki:page:update"], users=[user])
        page = await make_page(db, "/locked")
        await PageOverrideService(db).set_override(page.id, "wiki:page:update", PageOverrideType.DENY)

        principal = Principal.for_user(user.id)
        assert await authz.has_page_permission(principal, page.id, "wiki:page:read")
        assert not await authz.has_page_permission(principal, page.id, "wiki:page:update")

    @pytest.mark.asyncio
    async def test_null_group_allow_applies_to_principal_without_groups(self, db, catalog, authz):
        page = await make_page(db, "/public")
        await PageOverrideService(db).set_override(page.id, "wiki:page:read", PageOverrideType.ALLOW)

        assert await authz.has_page_permission(Principal.guest(), page.id, "wiki:page:read")

    @pytest.mark.asyncio
    async def test_malformed_identifier_is_denied(self, db, catalog, authz):
        page = await make_page(db, "/public")
        await PageOverrideService(db).set_override(page.id, "wiki:page:read", PageOverrideType.ALLOW)

        assert not await authz.has_page_permission(Principal.guest(), page.id, "wiki-page-read")


class TestPrincipalPermissions:
    @pytest.mark.asyncio
    async def test_lists_effective_permissions_only(self, db, catalog, authz):
        user = await make_user(db, "vic")
        await make_group(
            db, "Viewers", catalog,
            permissions=READ_ONLY + ["wiki:page:update"], modules=["wiki", "assets"], actions=["read"], users=[user],
        )
        await make_group(db, "Settings", catalog, permissions=["system:settings:read"], users=[user])

        assert await authz.get_principal_permissions(Principal.for_user(user.id)) == [
            "assets:asset:read",
            "system:settings:read",
            "wiki:page:read",
        ]


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_store_error_degrades_to_deny(self, registry):
        db = MagicMock()
        db.execute = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("database is locked")))
        authz = AuthorizationService(db, registry)
        principal = Principal.for_user("u1")

        assert not await authz.has_permission(principal, "wiki:page:read")
        assert not await authz.has_any_permission(principal, ["wiki:page:read", "wiki:page:update"])
        assert not await authz.has_page_permission(principal, "page-1", "wiki:page:read")
        assert await authz.get_principal_permissions(principal) == []

    @pytest.mark.asyncio
    async def test_store_timeout_degrades_to_deny(self, registry):
        async def slow_execute(*args, **kwargs):
            await asyncio.sleep(5)

        db = MagicMock()
        db.execute = slow_execute
        authz = AuthorizationService(db, registry, query_timeout=0.01)

        assert not await authz.has_permission(Principal.for_user("u1"), "wiki:page:read")

    @pytest.mark.asyncio
    async def test_failed_decisions_are_not_memoized(self, registry):
        db = MagicMock()
        db.execute = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("database is locked")))
        authz = AuthorizationService(db, registry)
        principal = Principal.for_user("u1")

        await authz.has_permission(principal, "wiki:page:read")
        await authz.has_permission(principal, "wiki:page:read")
        assert db.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_page_fallback_is_not_memoized(self, db, catalog, authz, monkeypatch):
        user = await make_user(db, "erin")
        await make_group(db, "Readers", catalog, permissions=["wiki:page:read"], users=[user])
        page = await make_page(db, "/team")
        principal = Principal.for_user(user.id)

        evaluate = authz._evaluate
        failures = [OperationalError("SELECT 1", {}, Exception("database is locked"))]

        async def flaky_evaluate(*args):
            if failures:
                raise failures.pop()
            return await evaluate(*args)

        monkeypatch.setattr(authz, "_evaluate", flaky_evaluate)

        assert not await authz.has_page_permission(principal, page.id, "wiki:page:read")
        assert await authz.has_permission(principal, "wiki:page:read")
        assert await authz.has_page_permission(principal, page.id, "wiki:page:read")


class TestMemoization:
    @pytest.mark.asyncio
    async def test_repeated_checks_reuse_loaded_state(self, db, catalog, authz, monkeypatch):
        user = await make_user(db, "erin")
        await make_group(db, "Editors", catalog, permissions=["wiki:page:update", "wiki:page:read"], users=[user])
        await make_group(db, "Readers", catalog, permissions=["wiki:page:read"], actions=["read"], users=[user])
        principal = Principal.for_user(user.id)

        calls = []
        execute = db.execute

        async def counting_execute(*args, **kwargs):
            calls.append(args[0])
            return await execute(*args, **kwargs)

        monkeypatch.setattr(db, "execute", counting_execute)

        assert await authz.has_permission(principal, "wiki:page:update")
        first = len(calls)

        assert await authz.has_permission(principal, "wiki:page:update")
        assert len(calls) == first

        # A different permission needs only its catalog row; the group snapshot is reused.
        assert await authz.has_permission(principal, "wiki:page:read")
        assert len(calls) == first + 1

    @pytest.mark.asyncio
    async def test_group_loading_does_not_grow_with_group_count(self, db, catalog, authz, monkeypatch):
        user = await make_user(db, "many")
        for i in range(6):
            await make_group(db, f"Group {i}", catalog, permissions=["wiki:page:read"], users=[user])

        calls = []
        execute = db.execute

        async def counting_execute(*args, **kwargs):
            calls.append(args[0])
            return await execute(*args, **kwargs)

        monkeypatch.setattr(db, "execute", counting_execute)

        await authz.has_permission(Principal.for_user(user.id), "wiki:page:update")
        # catalog row, memberships, then one read each for names, grants, modules, actions
        assert len(calls) == 6

    @pytest.mark.asyncio
    async def test_new_instance_sees_membership_changes(self, db, catalog, registry):
        user = await make_user(db, "late")
        editors = await make_group(db, "Editors", catalog, permissions=["wiki:page:update"])
        principal = Principal.for_user(user.id)

        assert not await AuthorizationService(db, registry).has_permission(principal, "wiki:page:update")
        await GroupService(db).add_users(editors.id, [user.id])
        assert await AuthorizationService(db, registry).has_permission(principal, "wiki:page:update")
