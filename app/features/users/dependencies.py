"""
FastAPI dependencies resolving who the caller is.

get_current_user requires a bearer token; get_current_principal also accepts
anonymous requests and reports them as the guest principal.
"""
from typing import Annotated, Optional
from datetime import datetime
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.models import User
from app.features.users.auth import get_token_subject, get_appwrite_user
from app.features.permissions.groups import GroupService
from app.features.permissions.policy import Principal
from app.utils import get_logger


log = get_logger(__name__)

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


async def _load_user(token: str, db: AsyncSession) -> User:
    """
    Resolve a bearer token to the local user row.

    1. Extracts the Appwrite user id from the JWT
    2. Looks up the local user, creating it on first sight
    3. New users join the default group
    4. Updates last_login_at timestamp
    """
    appwrite_user_id = get_token_subject(token)

    result = await db.execute(
        select(User).where(User.appwrite_id == appwrite_user_id)
    )
    user = result.scalar_one_or_none()

    if user is None:
        appwrite_user = await get_appwrite_user(appwrite_user_id)

        user = User(
            appwrite_id=appwrite_user_id,
            email=appwrite_user.get("email", ""),
            name=appwrite_user.get("name", "Unknown"),
            last_login_at=datetime.utcnow(),
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
        log.info(f"Registered user {user.id} for Appwrite account {appwrite_user_id}")
        await GroupService(db).add_user_to_default_group(user.id)
    else:
        user.last_login_at = datetime.utcnow()
        await db.commit()
        await db.refresh(user)

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    return user


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Get the current authenticated user from JWT token.

    Usage:
        @router.get("/me")
        async def get_me(user: User = Depends(get_current_user)):
            return user
    """
    return await _load_user(credentials.credentials, db)


async def get_current_principal(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(optional_security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> Principal:
    """
    Get the principal for permission checks.

    Requests without an Authorization header are guests. A header that is
    present but invalid is still rejected with 401.
    """
    if credentials is None:
        return Principal.guest()
    user = await _load_user(credentials.credentials, db)
    return Principal.for_user(user.id)


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"
