from pydantic import BaseModel, Field
from typing import Any, Optional
import uuid


def _rid():
    return uuid.uuid4().hex


class SuccessResponse(BaseModel):
    """Envelope for every admin endpoint: data, success flag and request_id"""
    success: bool = Field(default=True)
    request_id: str = Field(default_factory=_rid)
    data: Optional[Any] = None


class ErrorDetail(BaseModel):
    code: str
    message: Any
    details: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Body returned by the exception handlers; code is stable, message is for humans"""
    success: bool = Field(default=False)
    request_id: str = Field(default_factory=_rid)
    error: ErrorDetail
