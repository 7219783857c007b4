"""
Seed script to populate the permission catalog and default groups.

Run this script after database initialization to create:
- The permission catalog, reconciled from the registry
- Default groups (Administrators, Editors, Viewers, Guests)
- Initial group grants and module/action allow-lists

Usage:
    uv run python -m scripts.seed_permissions
"""
import asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import AsyncSessionLocal, init_db
from app.features.permissions.groups import GroupService
from app.features.permissions.models import Permission
from app.features.permissions.reconciliation import sync_permissions
from app.features.permissions.registry import PermissionRegistry, build_registry
from app.utils import get_logger


log = get_logger(__name__)


READ_ONLY_PERMISSIONS = ["wiki:page:read", "assets:asset:read"]

DEFAULT_GROUPS = {
    "Administrators": {
        "description": "Full access to the wiki and its administration",
        "is_system": True,
        "is_editable": False,
        "allow_user_assignment": True,
        "permissions": "ALL",  # Special case - gets every registry permission
    },
    "Editors": {
        "description": "Can create and edit wiki pages",
        "is_system": False,
        "is_editable": True,
        "allow_user_assignment": True,
        "permissions": ["wiki:page:create", "wiki:page:read", "wiki:page:update", "assets:asset:read"],
    },
    "Viewers": {
        "description": "Read-only access to wiki pages and assets",
        "is_system": True,
        "is_editable": True,
        "allow_user_assignment": True,
        "permissions": READ_ONLY_PERMISSIONS,
        "modules": ["wiki", "assets"],
        "actions": ["read"],
    },
    config.GUEST_GROUP_NAME: {
        "description": "Permissions for visitors who are not signed in",
        "is_system": True,
        "is_editable": True,
        "allow_user_assignment": False,
        "permissions": READ_ONLY_PERMISSIONS,
        "modules": ["wiki", "assets"],
        "actions": ["read"],
    },
}


async def seed_groups(db: AsyncSession, registry: PermissionRegistry) -> int:
    """
    Create default groups with their grants and allow-lists.

    Groups that already exist are left untouched, so edits made by
    administrators survive a re-run.

    Returns:
        Number of groups created
    """
    log.info("Creating default groups...")
    result = await db.execute(select(Permission))
    permissions_map = {p.identifier: p.id for p in result.scalars().all()}
    groups = GroupService(db)
    created = 0

    for group_name, group_config in DEFAULT_GROUPS.items():
        if await groups.find_by_name(group_name):
            log.debug(f"Group '{group_name}' already exists, skipping")
            continue

        group = await groups.create_group(
            name=group_name,
            description=group_config["description"],
            is_system=group_config["is_system"],
            is_editable=group_config["is_editable"],
            allow_user_assignment=group_config["allow_user_assignment"],
        )
        created += 1

        if group_config["permissions"] == "ALL":
            identifiers = [d.identifier for d in registry.list_all()]
        else:
            identifiers = group_config["permissions"]

        permission_ids = []
        for identifier in identifiers:
            if identifier in permissions_map:
                permission_ids.append(permissions_map[identifier])
            else:
                log.warning(f"Permission '{identifier}' not found for group '{group_name}'")
        await groups.add_permissions(group.id, permission_ids)

        if group_config.get("modules"):
            await groups.add_module_restrictions(group.id, group_config["modules"])
        if group_config.get("actions"):
            await groups.add_action_restrictions(group.id, group_config["actions"])

        log.info(f"Created group '{group_name}' with {len(permission_ids)} permissions")

    return created


async def main():
    """Main function to seed permissions and groups."""
    log.info("Starting permission seeding...")
    registry = build_registry()

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    await sync_permissions(AsyncSessionLocal, registry, remove_extras=config.REMOVE_EXTRA_PERMISSIONS)

    async with AsyncSessionLocal() as db:
        try:
            await seed_groups(db, registry)
        except Exception as e:
            log.error(f"Error seeding groups: {e}", exc_info=True)
            await db.rollback()
            raise

    log.info("Permission seeding completed successfully!")
    log.info("")
    log.info("Default groups:")
    for group_name, group_config in DEFAULT_GROUPS.items():
        log.info(f"  - {group_name}: {group_config['description']}")


if __name__ == "__main__":
    asyncio.run(main())
