from typing import Optional

from pydantic import BaseModel, Field


class UserRegisterRequest(BaseModel):
    """Schema for the user registration request body."""
    username: str = Field(..., min_length=3, max_length=50)
    email: str = Field(..., min_length=3, max_length=255)
    display_name: str = Field(..., min_length=1, max_length=100)
    avatar_url: Optional[str] = Field(None, max_length=500)


class UserUpdateRequest(BaseModel):
    """Partial profile update; omitted fields are left unchanged."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[str] = Field(None, min_length=3, max_length=255)
    avatar_url: Optional[str] = Field(None, max_length=500)


class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    display_name: str
    avatar_url: Optional[str] = None


class UserProfileResponse(BaseModel):
    """Locally cached profile, eventually consistent with the account side."""
    user_id: int
    username: str
    display_name: str
    email: str
    avatar_url: Optional[str] = None
    updated_at: str
