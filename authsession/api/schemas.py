from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_PASSWORD_LENGTH = 1024
MAX_EMAIL_LENGTH = 320

_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "not_found",
        "conflict",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class Credentials(BaseModel):
    """Email and password as submitted to /signup and /login.

    Only shape is checked here; the credential verifier owns email syntax
    and the empty-password rule so both transports report them the same way.
    """

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=False)

    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class SessionBody(BaseModel):
    user_id: str
    expires_at: datetime


class LoginResponse(BaseModel):
    session: SessionBody
    token: str


class AuthenticateResponse(BaseModel):
    user_id: str
    expires_at: datetime
