"""
Pydantic schemas for permission management.

Request and response models for the permission catalog, groups, page
overrides, permission checks and reconciliation.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.permissions.models import PageOverrideType
from app.features.permissions.registry import parse_permission_id


def _validate_identifier(v: str) -> str:
    parse_permission_id(v)
    return v


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionResponse(BaseModel):
    """A row of the persisted permission catalog."""
    id: str
    identifier: str
    module: str
    resource: str
    action: str
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PermissionDefinitionResponse(BaseModel):
    """An entry of the code-defined registry."""
    identifier: str
    module: str
    resource: str
    action: str
    description: str

    model_config = ConfigDict(from_attributes=True)


class RegistryResponse(BaseModel):
    permissions: List[PermissionDefinitionResponse]
    modules: List[str]
    resources: List[str]
    actions: List[str]


# ============================================================================
# Group Schemas
# ============================================================================

class GroupBase(BaseModel):
    """Base group schema."""
    name: str = Field(..., min_length=3, max_length=100, description="Unique group name")
    description: Optional[str] = Field(None, max_length=1000, description="Group description")


class GroupCreate(GroupBase):
    """Schema for creating a new group."""
    allow_user_assignment: bool = Field(True, description="Whether users can be added to the group")


class GroupUpdate(BaseModel):
    """Schema for updating a group."""
    name: Optional[str] = Field(None, min_length=3, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    allow_user_assignment: Optional[bool] = None


class GroupResponse(GroupBase):
    """Schema for group response."""
    id: str
    is_system: bool
    is_editable: bool
    allow_user_assignment: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GroupDetail(GroupResponse):
    """Group with its grants and allow-lists."""
    permissions: List[PermissionResponse] = []
    modules: List[str] = []
    actions: List[str] = []


class GroupMember(BaseModel):
    id: str
    name: str
    email: str

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Assignment Schemas
# ============================================================================

class UserIdsRequest(BaseModel):
    user_ids: List[str] = Field(..., description="User IDs")


class PermissionIdsRequest(BaseModel):
    permission_ids: List[str] = Field(..., description="Permission catalog row IDs")


class ModulesRequest(BaseModel):
    modules: List[str] = Field(..., description="Module names for the allow-list")


class ActionsRequest(BaseModel):
    actions: List[str] = Field(..., description="Action names for the allow-list")


class AssociationResponse(BaseModel):
    added: int = 0
    removed: int = 0

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Page Override Schemas
# ============================================================================

class PageOverrideSet(BaseModel):
    """Create or update one override. A null group applies to everyone."""
    permission: str = Field(..., description="Permission identifier (module:resource:action)")
    group_id: Optional[str] = Field(None, description="Group ID, or null for all principals")
    type: PageOverrideType = Field(PageOverrideType.ALLOW, description="allow or deny")

    _check_permission = field_validator("permission")(_validate_identifier)


class PageOverrideResponse(BaseModel):
    id: str
    page_id: str
    group_id: Optional[str]
    permission: str
    type: PageOverrideType


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Schema for checking if the caller has a permission."""
    permission: str = Field(..., description="Permission identifier (module:resource:action)")


class AnyPermissionCheckRequest(BaseModel):
    """Schema for checking if the caller has any of several permissions."""
    permissions: List[str] = Field(..., description="Permission identifiers")


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    has_permission: bool
    reason: Optional[str] = None


class PrincipalPermissionsResponse(BaseModel):
    """Effective permission identifiers for the caller."""
    user_id: Optional[str]
    is_guest: bool
    permissions: List[str] = []


# ============================================================================
# Reconciliation Schemas
# ============================================================================

class ValidationResponse(BaseModel):
    is_valid: bool
    missing_count: int
    extras_count: int
    mismatched_count: int
    missing: List[str] = []
    extras: List[str] = []
    mismatched: List[str] = []


class FixResponse(BaseModel):
    added: int
    updated: int
    removed: int

    model_config = ConfigDict(from_attributes=True)
