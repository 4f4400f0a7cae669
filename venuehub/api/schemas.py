from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = {
    "validation_error",
    "precondition_failed",
    "unauthorized",
    "invalid_token",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
}

MAX_USERNAME_LENGTH = 64
MAX_PASSWORD_LENGTH = 128


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width / bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F)) | set(
        chr(c) for c in range(0x2066, 0x206A)
    )
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_username(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("username must be a string")
    # Usernames are case-sensitive, so no lower-casing here
    normalized = _normalize_unicode(value.strip())
    if not normalized:
        raise ValueError("username is required")
    if len(normalized) > MAX_USERNAME_LENGTH:
        raise ValueError(f"username must be at most {MAX_USERNAME_LENGTH} characters")
    if any(ch.isspace() for ch in normalized):
        raise ValueError("username must not contain whitespace")
    return normalized


def _validate_password(value: str) -> str:
    if not value:
        raise ValueError("password is required")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


def _strip_code(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.replace(" ", "").strip()
    return stripped or None


# Requests


class LoginRequest(BaseModel):
    username: str
    password: str
    code: Optional[str] = Field(default=None, max_length=10)

    @field_validator("username")
    @classmethod
    def _validate_login_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_login_password(cls, value: str) -> str:
        return _validate_password(value)

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: Optional[str]) -> Optional[str]:
        return _strip_code(value)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=10)

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        stripped = _strip_code(value)
        if not stripped:
            raise ValueError("code is required")
        return stripped


class TwoFactorDisableRequest(BaseModel):
    password: str
    code: str = Field(..., min_length=1, max_length=10, description="Current TOTP code")

    @field_validator("password")
    @classmethod
    def _validate_disable_password(cls, value: str) -> str:
        return _validate_password(value)

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        stripped = _strip_code(value)
        if not stripped:
            raise ValueError("code is required")
        return stripped


class EmergencyResetRequest(BaseModel):
    username: str
    password: str
    emergency_code: str = Field(..., min_length=1, max_length=64)

    @field_validator("username")
    @classmethod
    def _validate_reset_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_reset_password(cls, value: str) -> str:
        return _validate_password(value)


class AdminCreateUserRequest(BaseModel):
    username: str
    password: str
    role: Literal["admin", "user"] = "user"

    @field_validator("username")
    @classmethod
    def _validate_admin_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_admin_password(cls, value: str) -> str:
        return _validate_password(value)


class AdminUpdateUserRequest(BaseModel):
    password: Optional[str] = None
    role: Optional[Literal["admin", "user"]] = None
    new_username: Optional[str] = Field(
        default=None, description="Rejected when set; usernames cannot change"
    )

    @field_validator("password")
    @classmethod
    def _validate_update_password(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            return _validate_password(value)
        return value

    @field_validator("new_username")
    @classmethod
    def _reject_rename(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            raise ValueError("usernames are immutable")
        return value


# Responses


class IdentityResponse(BaseModel):
    account_id: str
    username: str
    role: str
    login_at: datetime


class LoginResponse(BaseModel):
    status: Literal["ok", "2fa_required"]
    requires_2fa: bool = False
    identity: Optional[IdentityResponse] = None


class TwoFactorSetupResponse(BaseModel):
    secret: str = Field(..., description="Base32 secret for manual entry")
    provisioning_uri: str
    qr_code: str = Field(..., description="PNG data URI of the provisioning QR code")
    emergency_code: Optional[str] = Field(
        default=None, description="One-time admin recovery code; shown once"
    )


class TwoFactorStatusResponse(BaseModel):
    two_factor_enabled: bool
    provisioning: bool = Field(
        default=False, description="Secret issued but not yet confirmed"
    )


class UserResponse(BaseModel):
    id: str
    username: str
    role: str
    two_factor_enabled: bool
    created_at: datetime


class UserListResponse(BaseModel):
    items: List[UserResponse]
