"""
Group directory.

CRUD over groups and their memberships, permission grants and module/action
allow-lists. Adds are idempotent (already-present rows are not counted),
removes report the number of rows actually deleted, and every mutating call
commits its own work.
"""
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select, delete, insert, and_, Table
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.features.users.models import User
from app.features.permissions.exceptions import GroupNotFoundError, ForbiddenOperationError
from app.features.permissions.models import (
    Permission,
    Group,
    PagePermission,
    user_groups,
    group_permissions,
    group_module_restrictions,
    group_action_restrictions,
)
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class AssociationResult:
    added: int = 0
    removed: int = 0


class GroupService:
    """
    Usage:
        groups = GroupService(db)
        editors = await groups.create_group("Editors", "Can edit wiki content")
        await groups.add_users(editors.id, [user.id])
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ========================================================================
    # Groups
    # ========================================================================

    async def list_groups(self) -> list[Group]:
        result = await self.db.execute(select(Group).order_by(Group.name))
        return list(result.scalars().all())

    async def get_group(self, group_id: str) -> Optional[Group]:
        result = await self.db.execute(select(Group).where(Group.id == group_id))
        return result.scalars().first()

    async def find_by_name(self, name: str) -> Optional[Group]:
        result = await self.db.execute(select(Group).where(Group.name == name))
        return result.scalars().first()

    async def _require_group(self, group_id: str) -> Group:
        group = await self.get_group(group_id)
        if group is None:
            raise GroupNotFoundError(group_id)
        return group

    async def create_group(
        self,
        name: str,
        description: Optional[str] = None,
        is_system: bool = False,
        is_editable: bool = True,
        allow_user_assignment: bool = True,
    ) -> Group:
        group = Group(
            name=name,
            description=description,
            is_system=is_system,
            is_editable=is_editable,
            allow_user_assignment=allow_user_assignment,
        )
        self.db.add(group)
        await self.db.commit()
        await self.db.refresh(group)
        log.info(f"Created group {group.name!r} ({group.id})")
        return group

    async def update_group(
        self,
        group_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        allow_user_assignment: Optional[bool] = None,
    ) -> Group:
        """
        Update group fields. Name and description of a non-editable group are fixed.

        Raises:
            GroupNotFoundError: unknown group
            ForbiddenOperationError: renaming or re-describing a non-editable group
        """
        group = await self._require_group(group_id)

        if (name is not None or description is not None) and not group.is_editable:
            raise ForbiddenOperationError(f"Group {group.name!r} cannot be edited.")

        if name is not None:
            group.name = name
        if description is not None:
            group.description = description
        if allow_user_assignment is not None:
            group.allow_user_assignment = allow_user_assignment

        await self.db.commit()
        await self.db.refresh(group)
        return group

    async def delete_group(self, group_id: str) -> Group:
        """
        Delete a group and every row that references it.

        Raises:
            GroupNotFoundError: unknown group
            ForbiddenOperationError: the group is a system group
        """
        group = await self._require_group(group_id)
        if group.is_system:
            raise ForbiddenOperationError("Cannot delete a system group.")

        for table in (user_groups, group_permissions, group_module_restrictions, group_action_restrictions):
            await self.db.execute(delete(table).where(table.c.group_id == group_id))
        await self.db.execute(delete(PagePermission).where(PagePermission.group_id == group_id))
        await self.db.execute(delete(Group).where(Group.id == group_id))
        await self.db.commit()

        log.info(f"Deleted group {group.name!r} ({group_id})")
        return group

    # ========================================================================
    # Memberships
    # ========================================================================

    async def get_group_users(self, group_id: str) -> list[User]:
        result = await self.db.execute(
            select(User)
            .join(user_groups, user_groups.c.user_id == User.id)
            .where(user_groups.c.group_id == group_id)
            .order_by(User.name)
        )
        return list(result.scalars().all())

    async def get_user_groups(self, user_id: str) -> list[Group]:
        result = await self.db.execute(
            select(Group)
            .join(user_groups, user_groups.c.group_id == Group.id)
            .where(user_groups.c.user_id == user_id)
            .order_by(Group.name)
        )
        return list(result.scalars().all())

    async def add_users(self, group_id: str, user_ids: Iterable[str]) -> AssociationResult:
        """
        Raises:
            GroupNotFoundError: unknown group
            ForbiddenOperationError: the group does not accept user assignment
        """
        group = await self._require_group(group_id)
        if not group.allow_user_assignment:
            raise ForbiddenOperationError(f'Users cannot be assigned to the group "{group.name}".')

        added = await self._add_values(user_groups, "user_id", group_id, user_ids)
        return AssociationResult(added=added)

    async def remove_users(self, group_id: str, user_ids: Iterable[str], acting_user_id: Optional[str]) -> AssociationResult:
        """
        Raises:
            GroupNotFoundError: unknown group
            ForbiddenOperationError: the acting user is in the removal set
        """
        await self._require_group(group_id)

        user_ids = set(user_ids)
        if acting_user_id is not None and acting_user_id in user_ids:
            raise ForbiddenOperationError("You cannot remove yourself from a group.")

        removed = await self._remove_values(user_groups, "user_id", group_id, user_ids)
        return AssociationResult(removed=removed)

    async def add_user_to_default_group(self, user_id: str) -> bool:
        """Put a newly registered user in the default group, if that group exists."""
        group = await self.find_by_name(config.DEFAULT_USER_GROUP_NAME)
        if group is None:
            log.warning(f"Default group {config.DEFAULT_USER_GROUP_NAME!r} not found; user {user_id} has no groups")
            return False
        added = await self._add_values(user_groups, "user_id", group.id, [user_id])
        return added > 0

    # ========================================================================
    # Permission Grants
    # ========================================================================

    async def get_group_permissions(self, group_id: str) -> list[Permission]:
        result = await self.db.execute(
            select(Permission)
            .join(group_permissions, group_permissions.c.permission_id == Permission.id)
            .where(group_permissions.c.group_id == group_id)
            .order_by(Permission.module, Permission.resource, Permission.action)
        )
        return list(result.scalars().all())

    async def add_permissions(self, group_id: str, permission_ids: Iterable[str]) -> AssociationResult:
        await self._require_group(group_id)
        added = await self._add_values(group_permissions, "permission_id", group_id, permission_ids)
        return AssociationResult(added=added)

    async def remove_permissions(self, group_id: str, permission_ids: Iterable[str]) -> AssociationResult:
        await self._require_group(group_id)
        removed = await self._remove_values(group_permissions, "permission_id", group_id, permission_ids)
        return AssociationResult(removed=removed)

    async def set_permissions(self, group_id: str, permission_ids: Iterable[str]) -> AssociationResult:
        """Make the group's grants exactly ``permission_ids``."""
        await self._require_group(group_id)
        return await self._replace_values(group_permissions, "permission_id", group_id, permission_ids)

    # ========================================================================
    # Module / Action Restrictions
    # ========================================================================

    async def get_module_restrictions(self, group_id: str) -> list[str]:
        return sorted(await self._get_values(group_module_restrictions, "module", group_id))

    async def add_module_restrictions(self, group_id: str, modules: Iterable[str]) -> AssociationResult:
        await self._require_group(group_id)
        added = await self._add_values(group_module_restrictions, "module", group_id, modules)
        return AssociationResult(added=added)

    async def remove_module_restrictions(self, group_id: str, modules: Iterable[str]) -> AssociationResult:
        await self._require_group(group_id)
        removed = await self._remove_values(group_module_restrictions, "module", group_id, modules)
        return AssociationResult(removed=removed)

    async def set_module_restrictions(self, group_id: str, modules: Iterable[str]) -> AssociationResult:
        """Replace the module allow-list. An empty list lifts the restriction."""
        await self._require_group(group_id)
        return await self._replace_values(group_module_restrictions, "module", group_id, modules)

    async def get_action_restrictions(self, group_id: str) -> list[str]:
        return sorted(await self._get_values(group_action_restrictions, "action", group_id))

    async def add_action_restrictions(self, group_id: str, actions: Iterable[str]) -> AssociationResult:
        await self._require_group(group_id)
        added = await self._add_values(group_action_restrictions, "action", group_id, actions)
        return AssociationResult(added=added)

    async def remove_action_restrictions(self, group_id: str, actions: Iterable[str]) -> AssociationResult:
        await self._require_group(group_id)
        removed = await self._remove_values(group_action_restrictions, "action", group_id, actions)
        return AssociationResult(removed=removed)

    async def set_action_restrictions(self, group_id: str, actions: Iterable[str]) -> AssociationResult:
        """Replace the action allow-list. An empty list lifts the restriction."""
        await self._require_group(group_id)
        return await self._replace_values(group_action_restrictions, "action", group_id, actions)

    # ========================================================================
    # Association helpers
    # ========================================================================

    async def _get_values(self, table: Table, column: str, group_id: str) -> set[str]:
        result = await self.db.execute(select(table.c[column]).where(table.c.group_id == group_id))
        return set(result.scalars().all())

    async def _add_values(
        self, table: Table, column: str, group_id: str, values: Iterable[str], commit: bool = True
    ) -> int:
        existing = await self._get_values(table, column, group_id)
        new_values = sorted(set(values) - existing)
        if not new_values:
            return 0

        await self.db.execute(
            insert(table),
            [{"group_id": group_id, column: value} for value in new_values],
        )
        if commit:
            await self.db.commit()
        return len(new_values)

    async def _remove_values(
        self, table: Table, column: str, group_id: str, values: Iterable[str], commit: bool = True
    ) -> int:
        values = set(values)
        if not values:
            return 0

        result = await self.db.execute(
            delete(table).where(
                and_(
                    table.c.group_id == group_id,
                    table.c[column].in_(values),
                )
            )
        )
        if commit:
            await self.db.commit()
        return result.rowcount or 0

    async def _replace_values(self, table: Table, column: str, group_id: str, values: Iterable[str]) -> AssociationResult:
        """Delete and insert in one transaction; on failure the old values stay."""
        wanted = set(values)
        try:
            existing = await self._get_values(table, column, group_id)
            removed = await self._remove_values(table, column, group_id, existing - wanted, commit=False)
            added = await self._add_values(table, column, group_id, wanted, commit=False)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        return AssociationResult(added=added, removed=removed)
