"""
FastAPI dependencies for route protection.

Implements:
- Access to the process-wide PermissionRegistry kept on app.state
- A request-scoped AuthorizationService (FastAPI caches it per request, so
  every guard in one request shares its memo)
- require_permission / require_any_permission / require_page_permission guards
"""
from typing import Annotated, Iterable
from fastapi import Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.dependencies import get_current_principal
from app.features.permissions.authorization import AuthorizationService
from app.features.permissions.exceptions import PermissionConfigurationError
from app.features.permissions.policy import Principal
from app.features.permissions.registry import PermissionRegistry, parse_permission_id


def get_permission_registry(request: Request) -> PermissionRegistry:
    return request.app.state.permission_registry


async def get_authorization_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    registry: Annotated[PermissionRegistry, Depends(get_permission_registry)],
) -> AuthorizationService:
    return AuthorizationService(db, registry)


def _check_identifier(permission_id: str) -> str:
    try:
        parse_permission_id(permission_id)
    except ValueError as e:
        raise PermissionConfigurationError(str(e)) from e
    return permission_id


def require_permission(permission_id: str):
    """
    FastAPI dependency to require a specific permission.

    The identifier is checked when the route is declared, so a typo fails at
    import time instead of silently denying every request.

    Usage:
        @router.post("/pages")
        async def create_page(
            principal: Principal = Depends(require_permission("wiki:page:create"))
        ):
            ...

    Raises:
        PermissionConfigurationError: malformed identifier (at definition time)
        HTTPException: 403 if the principal lacks the permission (at request time)
    """
    _check_identifier(permission_id)

    async def permission_dependency(
        principal: Annotated[Principal, Depends(get_current_principal)],
        authz: Annotated[AuthorizationService, Depends(get_authorization_service)],
    ) -> Principal:
        if not await authz.has_permission(principal, permission_id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {permission_id}"
            )
        return principal

    return permission_dependency


def require_any_permission(permission_ids: Iterable[str]):
    """
    FastAPI dependency to require ANY of the specified permissions.

    Usage:
        @router.get("/admin")
        async def admin_dashboard(
            principal: Principal = Depends(require_any_permission(["system:settings:read", "system:users:read"]))
        ):
            ...
    """
    permission_ids = [_check_identifier(p) for p in permission_ids]
    if not permission_ids:
        raise PermissionConfigurationError("require_any_permission needs at least one permission")

    async def permission_dependency(
        principal: Annotated[Principal, Depends(get_current_principal)],
        authz: Annotated[AuthorizationService, Depends(get_authorization_service)],
    ) -> Principal:
        if not await authz.has_any_permission(principal, permission_ids):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: requires one of {permission_ids}"
            )
        return principal

    return permission_dependency


def require_page_permission(permission_id: str):
    """
    FastAPI dependency to require a permission on the page named by the
    ``page_id`` path parameter, honouring page overrides.

    Usage:
        @router.get("/pages/{page_id}")
        async def read_page(
            page_id: str,
            principal: Principal = Depends(require_page_permission("wiki:page:read"))
        ):
            ...
    """
    _check_identifier(permission_id)

    async def permission_dependency(
        page_id: str,
        principal: Annotated[Principal, Depends(get_current_principal)],
        authz: Annotated[AuthorizationService, Depends(get_authorization_service)],
    ) -> Principal:
        if not await authz.has_page_permission(principal, page_id, permission_id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {permission_id} on page {page_id}"
            )
        return principal

    return permission_dependency
