import re
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Event types published by the account side; also used as routing keys
USER_REGISTERED = "user.registered"
USER_CREATED = "user.created"
USER_UPDATED = "user.updated"
USER_DELETED = "user.deleted"

USER_AGGREGATE = "User"

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def to_snake_case(key: str) -> str:
    """'UserId' / 'userId' / 'user_id' -> 'user_id'."""
    return _CAMEL_BOUNDARY.sub("_", key).lower()


# --- Producer-side shapes (written into the outbox payload) ---

class UserRegisteredEvent(BaseModel):
    user_id: int
    username: str
    email: str
    timestamp: datetime


class UserCreatedEvent(BaseModel):
    user_id: int
    username: str
    display_name: str
    email: str
    avatar_url: Optional[str] = None
    created_at: datetime


class UserUpdatedEvent(BaseModel):
    user_id: int
    username: str
    display_name: str
    email: str
    avatar_url: Optional[str] = None
    updated_at: datetime


class UserDeletedEvent(BaseModel):
    user_id: int
    deleted_at: datetime


# --- Consumer-side shapes (read from envelope.data) ---

class _InboundPayload(BaseModel):
    """Accepts snake_case, camelCase and PascalCase keys; unknown keys are ignored."""
    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {to_snake_case(k) if isinstance(k, str) else k: v for k, v in value.items()}
        return value


class UserProfilePayload(_InboundPayload):
    """Data carried by user.created and user.updated."""
    user_id: int
    username: str = Field(..., min_length=1)
    display_name: str
    email: str
    avatar_url: Optional[str] = None


class UserDeletedPayload(_InboundPayload):
    user_id: int
