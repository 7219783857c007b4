"""Tests for the default group seed."""

import pytest

from app.features.permissions.authorization import AuthorizationService
from app.features.permissions.groups import GroupService
from app.features.permissions.policy import Principal
from scripts.seed_permissions import DEFAULT_GROUPS, seed_groups
from tests.factories import make_user


@pytest.mark.asyncio
async def test_seed_creates_default_groups_once(db, registry, catalog):
    assert await seed_groups(db, registry) == len(DEFAULT_GROUPS)
    assert await seed_groups(db, registry) == 0

    groups = GroupService(db)
    admins = await groups.find_by_name("Administrators")
    assert admins.is_system and not admins.is_editable
    assert len(await groups.get_group_permissions(admins.id)) == len(registry)

    viewers = await groups.find_by_name("Viewers")
    assert await groups.get_module_restrictions(viewers.id) == ["assets", "wiki"]
    assert await groups.get_action_restrictions(viewers.id) == ["read"]

    guests = await groups.find_by_name("Guests")
    assert not guests.allow_user_assignment


@pytest.mark.asyncio
async def test_seeded_groups_drive_decisions(db, registry, catalog):
    await seed_groups(db, registry)
    user = await make_user(db, "newcomer")
    await GroupService(db).add_user_to_default_group(user.id)
    authz = AuthorizationService(db, registry)

    assert await authz.has_permission(Principal.guest(), "wiki:page:read")
    assert not await authz.has_permission(Principal.guest(), "wiki:page:create")
    assert await authz.get_principal_permissions(Principal.for_user(user.id)) == [
        "assets:asset:read",
        "wiki:page:read",
    ]
