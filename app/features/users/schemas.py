"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field


class UserBase(BaseModel):
    """Base user schema with common fields."""
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)


class UserGroupSummary(BaseModel):
    id: str
    name: str

    model_config = {"from_attributes": True}


class UserResponse(UserBase):
    """Schema for user responses."""
    id: str
    is_active: bool
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    groups: list[UserGroupSummary] = []

    model_config = {"from_attributes": True}
