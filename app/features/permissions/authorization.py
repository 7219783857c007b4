"""
Authorization engine.

Decides whether a principal may use a capability, globally or on one page.

Implements:
- Group grants narrowed by module/action allow-lists (see policy.py)
- Page overrides where deny beats allow beats group-derived decisions
- Guest evaluation through the configured guest group
- Request-scoped memoization of group snapshots, catalog rows and decisions

Decision methods never raise. Malformed identifiers, catalog drift, store
errors and store timeouts all end in a logged deny.
"""
import asyncio
from collections import defaultdict
from typing import Awaitable, Iterable, Optional, TypeVar

from sqlalchemy import select, or_, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.features.permissions.models import (
    Permission,
    Group,
    PagePermission,
    user_groups,
    group_permissions,
    group_module_restrictions,
    group_action_restrictions,
)
from app.features.permissions.policy import (
    Principal,
    PermissionRef,
    GroupGrants,
    restriction_from,
    find_authorizing_group,
    group_authorizes,
    page_override_decision,
)
from app.features.permissions.registry import PermissionRegistry, parse_permission_id
from app.utils import get_logger


log = get_logger(__name__)

T = TypeVar("T")


class AuthorizationService:
    """
    Per-request permission checker.

    Create one instance per inbound request; the memo it keeps must not
    outlive the request because group and permission data are mutable.

    Usage:
        authz = AuthorizationService(db, registry)
        if await authz.has_permission(Principal.for_user(user.id), "wiki:page:update"):
            ...
    """

    def __init__(
        self,
        db: AsyncSession,
        registry: PermissionRegistry,
        guest_group_name: str = config.GUEST_GROUP_NAME,
        query_timeout: Optional[float] = config.PERMISSION_QUERY_TIMEOUT,
    ):
        self.db = db
        self.registry = registry
        self.guest_group_name = guest_group_name
        self.query_timeout = query_timeout or None

        self._permission_rows: dict[str, Optional[PermissionRef]] = {}
        self._group_snapshots: dict[Principal, tuple[GroupGrants, ...]] = {}
        self._decisions: dict[tuple, bool] = {}

    # ========================================================================
    # Public decisions
    # ========================================================================

    async def has_permission(self, principal: Principal, permission_id: str) -> bool:
        """
        Check whether any of the principal's groups authorizes the permission.

        A group authorizes when it grants the permission and its module and
        action allow-lists (if any) include the permission's module and action.
        """
        if not self._is_valid_identifier(permission_id):
            return False

        cache_key = ("global", principal, permission_id)
        if cache_key in self._decisions:
            return self._decisions[cache_key]

        try:
            decision = await self._evaluate(principal, permission_id)
        except (SQLAlchemyError, asyncio.TimeoutError):
            log.error(f"Permission store unavailable while checking {permission_id} for {principal}", exc_info=True)
            return False

        self._decisions[cache_key] = decision
        return decision

    async def has_any_permission(self, principal: Principal, permission_ids: Iterable[str]) -> bool:
        """True if the principal holds at least one of the permissions. Empty input is False."""
        for permission_id in permission_ids:
            if await self.has_permission(principal, permission_id):
                return True
        return False

    async def has_page_permission(self, principal: Principal, page_id: str, permission_id: str) -> bool:
        """
        Check a permission on a single page.

        Override rows for the page that target one of the principal's groups,
        or no group at all, are consulted first: any deny refuses, otherwise
        any allow grants. Without applicable overrides this is has_permission.
        """
        if not self._is_valid_identifier(permission_id):
            return False

        cache_key = ("page", principal, page_id, permission_id)
        if cache_key in self._decisions:
            return self._decisions[cache_key]

        try:
            permission = await self._get_permission(permission_id)
            if permission is None:
                return False

            groups = await self._get_groups(principal)
            override = page_override_decision(
                await self._get_page_override_types(page_id, permission.id, [g.group_id for g in groups])
            )

            if override is None:
                global_key = ("global", principal, permission_id)
                if global_key not in self._decisions:
                    self._decisions[global_key] = await self._evaluate(principal, permission_id)
                decision = self._decisions[global_key]
            else:
                log.debug(
                    f"Page override on {page_id} for {permission_id} ({principal}): {'allow' if override else 'deny'}"
                )
                decision = override
        except (SQLAlchemyError, asyncio.TimeoutError):
            log.error(
                f"Permission store unavailable while checking {permission_id} on page {page_id} for {principal}",
                exc_info=True,
            )
            return False

        self._decisions[cache_key] = decision
        return decision

    async def get_principal_permissions(self, principal: Principal) -> list[str]:
        """
        Identifiers of every catalog permission the principal effectively holds.

        Restrictions are applied, so a grant vetoed by an allow-list is not listed.
        """
        try:
            groups = await self._get_groups(principal)
            granted_ids = set().union(*(g.permission_ids for g in groups)) if groups else set()
            if not granted_ids:
                return []
            result = await self._run(
                self.db.execute(select(Permission).where(Permission.id.in_(granted_ids)))
            )
            rows = result.scalars().all()
        except (SQLAlchemyError, asyncio.TimeoutError):
            log.error(f"Permission store unavailable while listing permissions for {principal}", exc_info=True)
            return []

        identifiers = []
        for row in rows:
            ref = PermissionRef(row.id, row.module, row.resource, row.action)
            if any(group_authorizes(g, ref) for g in groups):
                identifiers.append(row.identifier)
        return sorted(identifiers)

    # ========================================================================
    # Evaluation
    # ========================================================================

    def _is_valid_identifier(self, permission_id: str) -> bool:
        if self.registry.validate_identifier(permission_id, strict=True):
            return True
        log.error(f"Invalid permission identifier: {permission_id!r}")
        return False

    async def _evaluate(self, principal: Principal, permission_id: str) -> bool:
        permission = await self._get_permission(permission_id)
        if permission is None:
            return False

        groups = await self._get_groups(principal)
        if not groups:
            log.debug(f"{principal} belongs to no groups - denied {permission_id}")
            return False

        group = find_authorizing_group(groups, permission)
        if group is None:
            log.debug(f"{principal} denied {permission_id}")
            return False

        log.debug(f"{principal} granted {permission_id} via group {group.name!r}")
        return True

    async def _run(self, awaitable: Awaitable[T]) -> T:
        if self.query_timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self.query_timeout)

    async def _get_permission(self, permission_id: str) -> Optional[PermissionRef]:
        if permission_id in self._permission_rows:
            return self._permission_rows[permission_id]

        module, resource, action = parse_permission_id(permission_id)
        result = await self._run(
            self.db.execute(
                select(Permission.id, Permission.module, Permission.resource, Permission.action).where(
                    and_(
                        Permission.module == module,
                        Permission.resource == resource,
                        Permission.action == action,
                    )
                )
            )
        )
        row = result.first()

        if row is None:
            # Registry knows it but the catalog does not: reconciliation has not run yet
            log.warning(f"Permission {permission_id} not found in the permission catalog")
            ref = None
        else:
            ref = PermissionRef(row.id, row.module, row.resource, row.action)

        self._permission_rows[permission_id] = ref
        return ref

    async def _get_group_ids(self, principal: Principal) -> list[str]:
        if principal.is_guest:
            stmt = select(Group.id).where(Group.name == self.guest_group_name)
        else:
            stmt = select(user_groups.c.group_id).where(user_groups.c.user_id == principal.user_id)
        result = await self._run(self.db.execute(stmt))
        return list(result.scalars().all())

    async def _get_groups(self, principal: Principal) -> tuple[GroupGrants, ...]:
        """
        Load the principal's groups with grants and restrictions.

        One query per table regardless of how many groups the principal has;
        the snapshot is reused for every check made through this instance.
        """
        if principal in self._group_snapshots:
            return self._group_snapshots[principal]

        group_ids = await self._get_group_ids(principal)
        if not group_ids:
            self._group_snapshots[principal] = ()
            return ()

        names_result = await self._run(
            self.db.execute(select(Group.id, Group.name).where(Group.id.in_(group_ids)).order_by(Group.name))
        )
        grants_result = await self._run(
            self.db.execute(
                select(group_permissions.c.group_id, group_permissions.c.permission_id).where(
                    group_permissions.c.group_id.in_(group_ids)
                )
            )
        )
        modules_result = await self._run(
            self.db.execute(
                select(group_module_restrictions.c.group_id, group_module_restrictions.c.module).where(
                    group_module_restrictions.c.group_id.in_(group_ids)
                )
            )
        )
        actions_result = await self._run(
            self.db.execute(
                select(group_action_restrictions.c.group_id, group_action_restrictions.c.action).where(
                    group_action_restrictions.c.group_id.in_(group_ids)
                )
            )
        )

        permissions_by_group: dict[str, set[str]] = defaultdict(set)
        for group_id, permission_id in grants_result.all():
            permissions_by_group[group_id].add(permission_id)

        modules_by_group: dict[str, set[str]] = defaultdict(set)
        for group_id, module in modules_result.all():
            modules_by_group[group_id].add(module)

        actions_by_group: dict[str, set[str]] = defaultdict(set)
        for group_id, action in actions_result.all():
            actions_by_group[group_id].add(action)

        snapshots = tuple(
            GroupGrants(
                group_id=group_id,
                name=name,
                permission_ids=frozenset(permissions_by_group[group_id]),
                modules=restriction_from(modules_by_group[group_id]),
                actions=restriction_from(actions_by_group[group_id]),
            )
            for group_id, name in names_result.all()
        )
        self._group_snapshots[principal] = snapshots
        return snapshots

    async def _get_page_override_types(self, page_id: str, permission_id: str, group_ids: list[str]) -> list[str]:
        if group_ids:
            group_filter = or_(PagePermission.group_id.in_(group_ids), PagePermission.group_id.is_(None))
        else:
            # No groups: only overrides that apply to everyone
            group_filter = PagePermission.group_id.is_(None)

        result = await self._run(
            self.db.execute(
                select(PagePermission.permission_type).where(
                    and_(
                        PagePermission.page_id == page_id,
                        PagePermission.permission_id == permission_id,
                        group_filter,
                    )
                )
            )
        )
        return list(result.scalars().all())
