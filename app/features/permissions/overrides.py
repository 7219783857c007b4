"""
Page override administration.
"""
from typing import Optional

from sqlalchemy import select, delete, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.pages.models import WikiPage
from app.features.permissions.exceptions import PageNotFoundError, PermissionNotFoundError, GroupNotFoundError
from app.features.permissions.models import Permission, Group, PagePermission, PageOverrideType
from app.features.permissions.registry import parse_permission_id
from app.utils import get_logger


log = get_logger(__name__)


class PageOverrideService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_overrides(self, page_id: str) -> list[tuple[PagePermission, Permission]]:
        result = await self.db.execute(
            select(PagePermission, Permission)
            .join(Permission, Permission.id == PagePermission.permission_id)
            .where(PagePermission.page_id == page_id)
            .order_by(Permission.module, Permission.resource, Permission.action, PagePermission.group_id)
        )
        return [(override, permission) for override, permission in result.all()]

    async def set_override(
        self,
        page_id: str,
        permission_id: str,
        override_type: PageOverrideType,
        group_id: Optional[str] = None,
    ) -> PagePermission:
        """
        Create or update the override for (page, permission, group).

        ``group_id=None`` makes the override apply to every principal.

        Raises:
            PageNotFoundError, PermissionNotFoundError, GroupNotFoundError
        """
        if await self.db.get(WikiPage, page_id) is None:
            raise PageNotFoundError(page_id)

        module, resource, action = parse_permission_id(permission_id)
        permission = (
            await self.db.execute(
                select(Permission).where(
                    and_(Permission.module == module, Permission.resource == resource, Permission.action == action)
                )
            )
        ).scalars().first()
        if permission is None:
            raise PermissionNotFoundError(permission_id)

        if group_id is not None and await self.db.get(Group, group_id) is None:
            raise GroupNotFoundError(group_id)

        group_filter = PagePermission.group_id.is_(None) if group_id is None else PagePermission.group_id == group_id
        existing = (
            await self.db.execute(
                select(PagePermission).where(
                    and_(
                        PagePermission.page_id == page_id,
                        PagePermission.permission_id == permission.id,
                        group_filter,
                    )
                )
            )
        ).scalars().first()

        if existing is None:
            existing = PagePermission(
                page_id=page_id,
                group_id=group_id,
                permission_id=permission.id,
                permission_type=override_type.value,
            )
            self.db.add(existing)
        else:
            existing.permission_type = override_type.value

        await self.db.commit()
        await self.db.refresh(existing)
        log.info(f"Page {page_id}: {override_type.value} {permission_id} for group {group_id or '*'}")
        return existing

    async def remove_override(self, override_id: str) -> bool:
        result = await self.db.execute(delete(PagePermission).where(PagePermission.id == override_id))
        await self.db.commit()
        return (result.rowcount or 0) > 0
