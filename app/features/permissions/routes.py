"""
Permission management API routes.

Provides endpoints for the permission catalog and its reconciliation, groups
and their assignments, page overrides and permission checks.
"""
from typing import List
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from app.core.database.engine import get_db
from app.features.users.dependencies import get_current_principal
from app.features.permissions.authorization import AuthorizationService
from app.features.permissions.exceptions import ForbiddenOperationError
from app.features.permissions.groups import GroupService
from app.features.permissions.models import Permission, PageOverrideType
from app.features.permissions.overrides import PageOverrideService
from app.features.permissions.policy import Principal
from app.features.permissions.reconciliation import PermissionReconciler, log_validation_report
from app.features.permissions.registry import PermissionRegistry
from app.features.permissions.schemas import (
    PermissionResponse,
    PermissionDefinitionResponse,
    RegistryResponse,
    GroupCreate,
    GroupUpdate,
    GroupResponse,
    GroupDetail,
    GroupMember,
    UserIdsRequest,
    PermissionIdsRequest,
    ModulesRequest,
    ActionsRequest,
    AssociationResponse,
    PageOverrideSet,
    PageOverrideResponse,
    PermissionCheckRequest,
    AnyPermissionCheckRequest,
    PermissionCheckResponse,
    ValidationResponse,
    FixResponse,
)
from app.features.permissions.dependencies import (
    get_permission_registry,
    get_authorization_service,
    require_permission,
)
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def _to_http(e: Exception) -> HTTPException:
    if isinstance(e, ForbiddenOperationError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, LookupError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


async def _unknown_reference(db: AsyncSession, detail: str) -> HTTPException:
    await db.rollback()
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


# ============================================================================
# Permission Catalog Routes
# ============================================================================

@router.get("", response_model=List[PermissionResponse])
async def list_permissions(
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:permissions:read"))
):
    """List the persisted permission catalog."""
    result = await db.execute(
        select(Permission).order_by(Permission.module, Permission.resource, Permission.action)
    )
    return result.scalars().all()


@router.get("/registry", response_model=RegistryResponse)
async def get_registry(
    registry: PermissionRegistry = Depends(get_permission_registry),
    _principal: Principal = Depends(require_permission("system:permissions:read"))
):
    """List the permissions defined in code."""
    return RegistryResponse(
        permissions=[PermissionDefinitionResponse.model_validate(d) for d in registry.list_all()],
        modules=registry.modules(),
        resources=registry.resources(),
        actions=registry.actions(),
    )


def _validation_response(report) -> ValidationResponse:
    return ValidationResponse(
        is_valid=report.is_valid,
        missing_count=report.missing_count,
        extras_count=report.extras_count,
        mismatched_count=report.mismatched_count,
        missing=[d.identifier for d in report.missing],
        extras=[p.identifier for p in report.extras],
        mismatched=[p.identifier for p in report.mismatched],
    )


@router.get("/validate", response_model=ValidationResponse)
async def validate_permissions(
    db: AsyncSession = Depends(get_db),
    registry: PermissionRegistry = Depends(get_permission_registry),
    _principal: Principal = Depends(require_permission("system:permissions:read"))
):
    """Compare the catalog with the registry without changing anything."""
    report = await PermissionReconciler(db, registry).validate()
    log_validation_report(report)
    return _validation_response(report)


@router.post("/fix", response_model=FixResponse)
async def fix_permissions(
    remove_extras: bool = False,
    db: AsyncSession = Depends(get_db),
    registry: PermissionRegistry = Depends(get_permission_registry),
    principal: Principal = Depends(require_permission("system:permissions:update"))
):
    """Bring the catalog in line with the registry."""
    log.info(f"Permission fix requested by {principal} (remove_extras={remove_extras})")
    return await PermissionReconciler(db, registry).fix(remove_extras=remove_extras)


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check_request: PermissionCheckRequest,
    principal: Principal = Depends(get_current_principal),
    authz: AuthorizationService = Depends(get_authorization_service)
):
    """Check if the caller has a specific permission."""
    has_perm = await authz.has_permission(principal, check_request.permission)
    return PermissionCheckResponse(
        has_permission=has_perm,
        reason=None if has_perm else "Permission denied"
    )


@router.post("/check-any", response_model=PermissionCheckResponse)
async def check_any_permission(
    check_request: AnyPermissionCheckRequest,
    principal: Principal = Depends(get_current_principal),
    authz: AuthorizationService = Depends(get_authorization_service)
):
    """Check if the caller has at least one of the given permissions."""
    has_perm = await authz.has_any_permission(principal, check_request.permissions)
    return PermissionCheckResponse(
        has_permission=has_perm,
        reason=None if has_perm else "Permission denied"
    )


@router.post("/pages/{page_id}/check", response_model=PermissionCheckResponse)
async def check_page_permission(
    page_id: str,
    check_request: PermissionCheckRequest,
    principal: Principal = Depends(get_current_principal),
    authz: AuthorizationService = Depends(get_authorization_service)
):
    """Check a permission on one page, honouring its overrides."""
    has_perm = await authz.has_page_permission(principal, page_id, check_request.permission)
    return PermissionCheckResponse(
        has_permission=has_perm,
        reason=None if has_perm else "Permission denied"
    )


# ============================================================================
# Page Override Routes
# ============================================================================

def _override_response(override, permission: Permission) -> PageOverrideResponse:
    return PageOverrideResponse(
        id=override.id,
        page_id=override.page_id,
        group_id=override.group_id,
        permission=permission.identifier,
        type=PageOverrideType(override.permission_type),
    )


@router.get("/pages/{page_id}/overrides", response_model=List[PageOverrideResponse])
async def list_page_overrides(
    page_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:permissions:read"))
):
    """List the allow/deny overrides of a page."""
    overrides = await PageOverrideService(db).list_overrides(page_id)
    return [_override_response(o, p) for o, p in overrides]


@router.put("/pages/{page_id}/overrides", response_model=PageOverrideResponse)
async def set_page_override(
    page_id: str,
    override: PageOverrideSet,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:permissions:update"))
):
    """Create or update the override for a permission and group on a page."""
    try:
        row = await PageOverrideService(db).set_override(
            page_id, override.permission, override.type, group_id=override.group_id
        )
    except LookupError as e:
        raise _to_http(e) from e

    return PageOverrideResponse(
        id=row.id,
        page_id=row.page_id,
        group_id=row.group_id,
        permission=override.permission,
        type=PageOverrideType(row.permission_type),
    )


@router.delete("/pages/overrides/{override_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_page_override(
    override_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:permissions:update"))
):
    """Delete a page override."""
    if not await PageOverrideService(db).remove_override(override_id):
        raise HTTPException(status_code=404, detail="Page override not found")
    return None


# ============================================================================
# Group Routes
# ============================================================================

@router.get("/groups", response_model=List[GroupResponse])
async def list_groups(
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:read"))
):
    """List all groups."""
    return await GroupService(db).list_groups()


@router.post("/groups", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    group: GroupCreate,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:create"))
):
    """Create a new group."""
    try:
        return await GroupService(db).create_group(
            name=group.name,
            description=group.description,
            allow_user_assignment=group.allow_user_assignment,
        )
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Group with this name already exists"
        )


@router.get("/groups/{group_id}", response_model=GroupDetail)
async def get_group(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:read"))
):
    """Get a group with its grants and allow-lists."""
    groups = GroupService(db)
    group = await groups.get_group(group_id)
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")

    detail = GroupDetail.model_validate(group)
    detail.permissions = [PermissionResponse.model_validate(p) for p in await groups.get_group_permissions(group_id)]
    detail.modules = await groups.get_module_restrictions(group_id)
    detail.actions = await groups.get_action_restrictions(group_id)
    return detail


@router.put("/groups/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: str,
    group_update: GroupUpdate,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:update"))
):
    """Update a group."""
    update_data = group_update.model_dump(exclude_unset=True)
    try:
        return await GroupService(db).update_group(group_id, **update_data)
    except (LookupError, ForbiddenOperationError) as e:
        raise _to_http(e) from e
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Group with this name already exists"
        )


@router.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:delete"))
):
    """Delete a group with its memberships, grants, allow-lists and page overrides."""
    try:
        await GroupService(db).delete_group(group_id)
    except (LookupError, ForbiddenOperationError) as e:
        raise _to_http(e) from e
    return None


# ============================================================================
# Group Membership Routes
# ============================================================================

@router.get("/groups/{group_id}/users", response_model=List[GroupMember])
async def list_group_users(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:read"))
):
    return await GroupService(db).get_group_users(group_id)


@router.post("/groups/{group_id}/users", response_model=AssociationResponse)
async def add_group_users(
    group_id: str,
    assignment: UserIdsRequest,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:update"))
):
    """Add users to a group. Users already in the group are skipped."""
    try:
        return await GroupService(db).add_users(group_id, assignment.user_ids)
    except (LookupError, ForbiddenOperationError) as e:
        raise _to_http(e) from e
    except IntegrityError:
        raise await _unknown_reference(db, "Unknown user id")


@router.delete("/groups/{group_id}/users", response_model=AssociationResponse)
async def remove_group_users(
    group_id: str,
    assignment: UserIdsRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission("system:groups:update"))
):
    """Remove users from a group. Callers cannot remove themselves."""
    try:
        return await GroupService(db).remove_users(group_id, assignment.user_ids, principal.user_id)
    except (LookupError, ForbiddenOperationError) as e:
        raise _to_http(e) from e


# ============================================================================
# Group Permission Routes
# ============================================================================

@router.get("/groups/{group_id}/permissions", response_model=List[PermissionResponse])
async def list_group_permissions(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:read"))
):
    return await GroupService(db).get_group_permissions(group_id)


@router.post("/groups/{group_id}/permissions", response_model=AssociationResponse)
async def add_group_permissions(
    group_id: str,
    assignment: PermissionIdsRequest,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:update"))
):
    """Grant permissions to a group."""
    try:
        return await GroupService(db).add_permissions(group_id, assignment.permission_ids)
    except LookupError as e:
        raise _to_http(e) from e
    except IntegrityError:
        raise await _unknown_reference(db, "Unknown permission id")


@router.delete("/groups/{group_id}/permissions", response_model=AssociationResponse)
async def remove_group_permissions(
    group_id: str,
    assignment: PermissionIdsRequest,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:update"))
):
    """Revoke permissions from a group."""
    try:
        return await GroupService(db).remove_permissions(group_id, assignment.permission_ids)
    except LookupError as e:
        raise _to_http(e) from e


@router.put("/groups/{group_id}/permissions", response_model=AssociationResponse)
async def set_group_permissions(
    group_id: str,
    assignment: PermissionIdsRequest,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:update"))
):
    """Replace the group's grants."""
    try:
        return await GroupService(db).set_permissions(group_id, assignment.permission_ids)
    except LookupError as e:
        raise _to_http(e) from e
    except IntegrityError:
        raise await _unknown_reference(db, "Unknown permission id")


# ============================================================================
# Group Restriction Routes
# ============================================================================

@router.get("/groups/{group_id}/modules", response_model=List[str])
async def list_group_modules(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:read"))
):
    """List the module allow-list. Empty means unrestricted."""
    return await GroupService(db).get_module_restrictions(group_id)


@router.post("/groups/{group_id}/modules", response_model=AssociationResponse)
async def add_group_modules(
    group_id: str,
    request: ModulesRequest,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:update"))
):
    try:
        return await GroupService(db).add_module_restrictions(group_id, request.modules)
    except LookupError as e:
        raise _to_http(e) from e


@router.delete("/groups/{group_id}/modules", response_model=AssociationResponse)
async def remove_group_modules(
    group_id: str,
    request: ModulesRequest,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:update"))
):
    try:
        return await GroupService(db).remove_module_restrictions(group_id, request.modules)
    except LookupError as e:
        raise _to_http(e) from e


@router.put("/groups/{group_id}/modules", response_model=AssociationResponse)
async def set_group_modules(
    group_id: str,
    request: ModulesRequest,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:update"))
):
    """Replace the module allow-list. An empty list lifts the restriction."""
    try:
        return await GroupService(db).set_module_restrictions(group_id, request.modules)
    except LookupError as e:
        raise _to_http(e) from e


@router.get("/groups/{group_id}/actions", response_model=List[str])
async def list_group_actions(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:read"))
):
    """List the action allow-list. Empty means unrestricted."""
    return await GroupService(db).get_action_restrictions(group_id)


@router.post("/groups/{group_id}/actions", response_model=AssociationResponse)
async def add_group_actions(
    group_id: str,
    request: ActionsRequest,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:update"))
):
    try:
        return await GroupService(db).add_action_restrictions(group_id, request.actions)
    except LookupError as e:
        raise _to_http(e) from e


@router.delete("/groups/{group_id}/actions", response_model=AssociationResponse)
async def remove_group_actions(
    group_id: str,
    request: ActionsRequest,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:update"))
):
    try:
        return await GroupService(db).remove_action_restrictions(group_id, request.actions)
    except LookupError as e:
        raise _to_http(e) from e


@router.put("/groups/{group_id}/actions", response_model=AssociationResponse)
async def set_group_actions(
    group_id: str,
    request: ActionsRequest,
    db: AsyncSession = Depends(get_db),
    _principal: Principal = Depends(require_permission("system:groups:update"))
):
    """Replace the action allow-list. An empty list lifts the restriction."""
    try:
        return await GroupService(db).set_action_restrictions(group_id, request.actions)
    except LookupError as e:
        raise _to_http(e) from e
