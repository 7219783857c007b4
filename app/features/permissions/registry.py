"""
Code-defined permission registry.

The registry is the canonical catalog of every capability the wiki defines.
It is built once at startup from WIKI_PERMISSIONS, never mutated, and passed
explicitly to whatever needs it (the authorization engine and reconciliation).
"""
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from app.features.permissions.exceptions import PermissionConfigurationError


SEPARATOR = ":"


@dataclass(frozen=True)
class PermissionDefinition:
    module: str
    resource: str
    action: str
    description: str = ""

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.module, self.resource, self.action)

    @property
    def identifier(self) -> str:
        return make_permission_id(self.module, self.resource, self.action)


def make_permission_id(module: str, resource: str, action: str) -> str:
    return SEPARATOR.join((module, resource, action))


def parse_permission_id(permission_id: str) -> tuple[str, str, str]:
    """
    Split ``module:resource:action`` into its three segments.

    Raises:
        ValueError: if the identifier is not exactly three non-empty segments
    """
    if not isinstance(permission_id, str):
        raise ValueError(f"Permission identifier must be a string, got {type(permission_id).__name__}")
    parts = permission_id.split(SEPARATOR)
    if len(parts) != 3 or not all(part.strip() for part in parts):
        raise ValueError(f"Invalid permission identifier: {permission_id!r} (expected module:resource:action)")
    module, resource, action = parts
    return module, resource, action


def is_well_formed(permission_id: str) -> bool:
    try:
        parse_permission_id(permission_id)
    except ValueError:
        return False
    return True


# ============================================================================
# Wiki Permission Catalog
# ============================================================================

WIKI_PERMISSIONS: tuple[PermissionDefinition, ...] = (
    # Wiki pages
    PermissionDefinition("wiki", "page", "create", "Create new wiki pages"),
    PermissionDefinition("wiki", "page", "read", "Read wiki pages"),
    PermissionDefinition("wiki", "page", "update", "Update wiki pages"),
    PermissionDefinition("wiki", "page", "delete", "Delete wiki pages"),
    PermissionDefinition("wiki", "page", "move", "Move or rename wiki pages"),

    # System settings
    PermissionDefinition("system", "settings", "read", "View system settings"),
    PermissionDefinition("system", "settings", "update", "Update system settings"),

    # Permission catalog
    PermissionDefinition("system", "permissions", "read", "View system permissions"),
    PermissionDefinition("system", "permissions", "update", "Update system permissions"),

    # User management
    PermissionDefinition("system", "users", "read", "View user list"),
    PermissionDefinition("system", "users", "create", "Create new users"),
    PermissionDefinition("system", "users", "update", "Update existing users"),
    PermissionDefinition("system", "users", "delete", "Delete users"),

    # Group management
    PermissionDefinition("system", "groups", "read", "View group list"),
    PermissionDefinition("system", "groups", "create", "Create new groups"),
    PermissionDefinition("system", "groups", "update", "Update existing groups"),
    PermissionDefinition("system", "groups", "delete", "Delete groups"),

    # Assets
    PermissionDefinition("assets", "asset", "create", "Upload assets (images, files, etc.)"),
    PermissionDefinition("assets", "asset", "read", "View assets"),
    PermissionDefinition("assets", "asset", "update", "Update assets"),
    PermissionDefinition("assets", "asset", "delete", "Delete assets"),
)


class PermissionRegistry:
    """
    Immutable catalog of permission definitions keyed by identifier.

    Usage:
        registry = PermissionRegistry(WIKI_PERMISSIONS)
        registry.validate_identifier("wiki:page:read")   # True
        registry.validate_identifier("wiki:page")        # False
    """

    __slots__ = ("_by_id", "_ordered")

    def __init__(self, definitions: Iterable[PermissionDefinition]):
        by_id: dict[str, PermissionDefinition] = {}
        for definition in definitions:
            identifier = definition.identifier
            if not is_well_formed(identifier):
                raise PermissionConfigurationError(f"Malformed permission definition: {definition!r}")
            if identifier in by_id:
                raise PermissionConfigurationError(f"Duplicate permission definition: {identifier}")
            by_id[identifier] = definition

        self._by_id = by_id
        self._ordered = tuple(sorted(by_id.values(), key=lambda d: d.key))

    def list_all(self) -> tuple[PermissionDefinition, ...]:
        """All definitions ordered by module, then resource, then action."""
        return self._ordered

    def validate_identifier(self, permission_id: str, strict: bool = True) -> bool:
        """
        Check a permission identifier.

        Args:
            permission_id: candidate ``module:resource:action`` string
            strict: also require the identifier to be defined in this registry

        Returns:
            True if the identifier is well formed (and known, when strict)
        """
        if not is_well_formed(permission_id):
            return False
        return not strict or permission_id in self._by_id

    def get(self, permission_id: str) -> Optional[PermissionDefinition]:
        return self._by_id.get(permission_id)

    def descriptions(self) -> dict[tuple[str, str, str], str]:
        return {d.key: d.description for d in self._ordered}

    def modules(self) -> list[str]:
        return sorted({d.module for d in self._ordered})

    def resources(self) -> list[str]:
        return sorted({d.resource for d in self._ordered})

    def actions(self) -> list[str]:
        return sorted({d.action for d in self._ordered})

    def __contains__(self, permission_id: object) -> bool:
        return permission_id in self._by_id

    def __iter__(self) -> Iterator[PermissionDefinition]:
        return iter(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)

    def __repr__(self) -> str:
        return f"<PermissionRegistry(permissions={len(self)})>"


def build_registry(definitions: Iterable[PermissionDefinition] = WIKI_PERMISSIONS) -> PermissionRegistry:
    return PermissionRegistry(definitions)
