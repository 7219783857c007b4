"""
Permission catalog, groups and page override models.

This module implements the persisted side of wiki access control:
- The permission catalog mirrored from the code-defined registry
- Groups with permission grants
- Module and action allow-lists narrowing a group's grants
- Per-page allow/deny overrides
"""
import enum
from sqlalchemy import String, ForeignKey, Table, Column, Text, Boolean, DateTime, UniqueConstraint, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid


# ============================================================================
# Association Tables for Many-to-Many Relationships
# ============================================================================

# User-Group membership
user_groups = Table(
    "user_groups",
    Base.metadata,
    Column("user_id", String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("group_id", String(26), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

# Group-Permission grants
group_permissions = Table(
    "group_permissions",
    Base.metadata,
    Column("group_id", String(26), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

# Module allow-list: no rows means the group is not restricted by module
group_module_restrictions = Table(
    "group_module_restrictions",
    Base.metadata,
    Column("group_id", String(26), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
    Column("module", String(50), primary_key=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

# Action allow-list: no rows means the group is not restricted by action
group_action_restrictions = Table(
    "group_action_restrictions",
    Base.metadata,
    Column("group_id", String(26), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
    Column("action", String(50), primary_key=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)


# ============================================================================
# Core Models
# ============================================================================

class Permission(Base, TimestampMixin):
    """
    A capability in the persisted catalog.

    Identified by the (module, resource, action) triple, rendered as
    ``module:resource:action``. Rows are created and corrected by
    reconciliation against the registry; only the description ever changes.
    """
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("module", "resource", "action", name="uq_permission_triple"),
    )

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Permission definition
    module: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def identifier(self) -> str:
        return f"{self.module}:{self.resource}:{self.action}"

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.module, self.resource, self.action)

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, identifier={self.identifier!r})>"


class Group(Base, TimestampMixin):
    """
    Group model for granting permissions to many principals at once.

    Examples: Administrators, Editors, Viewers, Guests
    """
    __tablename__ = "groups"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Group definition
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # System groups cannot be deleted
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Name and description can be changed
    is_editable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Users can be added to the group
    allow_user_assignment: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Group(id={self.id}, name={self.name!r}, system={self.is_system})>"


class PageOverrideType(str, enum.Enum):
    ALLOW = "allow"
    DENY = "deny"


class PagePermission(Base, TimestampMixin):
    """
    Per-page override of group-derived decisions.

    A null group_id applies to every principal. For a given page and
    permission, any matching deny wins over any matching allow.
    """
    __tablename__ = "page_permissions"
    __table_args__ = (
        Index("ix_page_permissions_lookup", "page_id", "permission_id", "group_id"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    page_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("wiki_pages.id", ondelete="CASCADE"),
        nullable=False,
    )
    group_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("groups.id", ondelete="CASCADE"),
        nullable=True,
    )
    permission_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
    )
    permission_type: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=PageOverrideType.ALLOW.value,
    )

    def __repr__(self) -> str:
        return (
            f"<PagePermission(page={self.page_id}, group={self.group_id}, "
            f"permission={self.permission_id}, type={self.permission_type})>"
        )
