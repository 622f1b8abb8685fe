import uuid
from typing import Any, Optional

from pydantic import BaseModel, Field


def new_request_id() -> str:
    return uuid.uuid4().hex


class SuccessResponse(BaseModel):
    """Envelope for every successful API response."""
    success: Optional[bool] = Field(default=True)
    request_id: str = Field(default_factory=new_request_id)
    data: Optional[Any] = None


class ErrorDetail(BaseModel):
    code: str  # http_error, validation_error or server_error
    message: Any
    details: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Envelope written by the registered exception handlers."""
    success: bool = False
    request_id: str = Field(default_factory=new_request_id)
    error: ErrorDetail
