"""
User feature routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.models import User
from app.features.users.schemas import UserResponse, UserGroupSummary
from app.features.users.dependencies import get_current_user, get_current_principal
from app.features.permissions.authorization import AuthorizationService
from app.features.permissions.dependencies import get_authorization_service
from app.features.permissions.groups import GroupService
from app.features.permissions.policy import Principal
from app.features.permissions.schemas import PrincipalPermissionsResponse


router = APIRouter(tags=["users"])


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get current authenticated user's profile with group memberships."""
    response = UserResponse.model_validate(user)
    response.groups = [UserGroupSummary.model_validate(g) for g in await GroupService(db).get_user_groups(user.id)]
    return response


@router.get("/me/permissions", response_model=PrincipalPermissionsResponse)
async def get_current_user_permissions(
    principal: Annotated[Principal, Depends(get_current_principal)],
    authz: Annotated[AuthorizationService, Depends(get_authorization_service)]
):
    """
    Effective permissions of the caller.

    Anonymous callers get the permissions of the guest group.
    """
    return PrincipalPermissionsResponse(
        user_id=principal.user_id,
        is_guest=principal.is_guest,
        permissions=await authz.get_principal_permissions(principal),
    )
