"""
Pure decision rules for group-based authorization.

Nothing here touches the database: the engine loads a principal's groups into
GroupGrants snapshots once, then these predicates are evaluated in memory.
Within a group the predicates are ANDed; across groups the results are ORed.
"""
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Union

from app.features.permissions.models import PageOverrideType


# ============================================================================
# Principal
# ============================================================================

@dataclass(frozen=True)
class Principal:
    """The actor a decision is made for: an authenticated user id or a guest."""
    user_id: Optional[str] = None

    @classmethod
    def guest(cls) -> "Principal":
        return cls(user_id=None)

    @classmethod
    def for_user(cls, user_id: str) -> "Principal":
        return cls(user_id=user_id)

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    def __str__(self) -> str:
        return "guest" if self.is_guest else f"user {self.user_id}"


# ============================================================================
# Restrictions
# ============================================================================

@dataclass(frozen=True)
class Unrestricted:
    def permits(self, value: str) -> bool:
        return True


@dataclass(frozen=True)
class AllowList:
    values: frozenset[str]

    def permits(self, value: str) -> bool:
        return value in self.values


Restriction = Union[Unrestricted, AllowList]

UNRESTRICTED = Unrestricted()


def restriction_from(values: Iterable[str]) -> Restriction:
    """An empty allow-list means no restriction at all."""
    values = frozenset(values)
    if not values:
        return UNRESTRICTED
    return AllowList(values)


# ============================================================================
# Group Snapshots and Predicates
# ============================================================================

@dataclass(frozen=True)
class PermissionRef:
    """The parts of a catalog row a decision needs."""
    id: str
    module: str
    resource: str
    action: str


@dataclass(frozen=True)
class GroupGrants:
    group_id: str
    name: str
    permission_ids: frozenset[str] = field(default_factory=frozenset)
    modules: Restriction = UNRESTRICTED
    actions: Restriction = UNRESTRICTED


GroupPredicate = Callable[[GroupGrants, PermissionRef], bool]


def grants(group: GroupGrants, permission: PermissionRef) -> bool:
    return permission.id in group.permission_ids


def module_allowed(group: GroupGrants, permission: PermissionRef) -> bool:
    return group.modules.permits(permission.module)


def action_allowed(group: GroupGrants, permission: PermissionRef) -> bool:
    return group.actions.permits(permission.action)


GROUP_PREDICATES: tuple[GroupPredicate, ...] = (grants, module_allowed, action_allowed)


def group_authorizes(group: GroupGrants, permission: PermissionRef) -> bool:
    return all(predicate(group, permission) for predicate in GROUP_PREDICATES)


def find_authorizing_group(groups: Iterable[GroupGrants], permission: PermissionRef) -> Optional[GroupGrants]:
    """First group that authorizes the permission, or None. Stops at the first match."""
    return next((group for group in groups if group_authorizes(group, permission)), None)


def any_group_authorizes(groups: Iterable[GroupGrants], permission: PermissionRef) -> bool:
    return find_authorizing_group(groups, permission) is not None


# ============================================================================
# Page Overrides
# ============================================================================

def page_override_decision(override_types: Iterable[str]) -> Optional[bool]:
    """
    Combine the override rows that apply to a principal on one page.

    Returns:
        False if any row denies, True if any row allows, None when no row applies
    """
    types = set(override_types)
    if PageOverrideType.DENY.value in types:
        return False
    if PageOverrideType.ALLOW.value in types:
        return True
    return None
