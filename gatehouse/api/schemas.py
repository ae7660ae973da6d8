from __future__ import annotations

import re
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Field-level checks (required, format, length) happen in the flows so the
# messages match across REST and the operation endpoint; these models only
# bound sizes and types.
MAX_STRING_LENGTH = 2048

_VALID_ERROR_CODES = frozenset({
    "bad_request",
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "configuration_error",
    "server_error",
})

_SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9:_-]*$")


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

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


class RegisterRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=128)
    name: Optional[str] = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=128)
    token: Optional[str] = Field(default=None, max_length=10)

    @field_validator("token", mode="before")
    @classmethod
    def _coerce_token(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class TwoFactorTokenRequest(BaseModel):
    token: Optional[str] = Field(default=None, max_length=10)

    @field_validator("token", mode="before")
    @classmethod
    def _coerce_token(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class ForgotPasswordRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)


class ResetPasswordRequest(BaseModel):
    token: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    password: Optional[str] = Field(default=None, max_length=128)


class EmailVerificationRequest(BaseModel):
    token: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


class SocialAuthRequest(BaseModel):
    access_token: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


class RefreshTokenRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


class PageRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class _SlugModel(BaseModel):
    @field_validator("slug", check_fields=False)
    @classmethod
    def _validate_slug(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _SLUG_PATTERN.match(value):
            raise ValueError("slug must be lowercase letters, digits, ':', '_' or '-'")
        return value


class RoleCreateRequest(_SlugModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    permission_ids: List[str] = Field(default_factory=list, max_length=1000)


class RoleUpdateRequest(_SlugModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    permission_ids: Optional[List[str]] = Field(default=None, max_length=1000)


class PermissionCreateRequest(_SlugModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


class PermissionUpdateRequest(_SlugModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


class OperationRequest(BaseModel):
    """Body of the operation endpoint: ``{"operationName": ..., "variables": {...}}``."""

    model_config = ConfigDict(populate_by_name=True)

    operation_name: str = Field(..., alias="operationName", min_length=1, max_length=128)
    variables: dict[str, Any] = Field(default_factory=dict)
