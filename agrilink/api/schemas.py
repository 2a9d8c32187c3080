from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from agrilink.service.rbac import ROLE_NAMES

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "token_invalid",
    "token_expired",
    "user_not_found",
    "authentication_required",
    "second_factor_required",
    "second_factor_invalid",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "configuration_error",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: str
    password: str
    phone: str = Field(..., min_length=7, max_length=20)
    role: Literal["buyer", "farmer"] = "buyer"
    location: str = Field(default="", max_length=200)
    farm_name: str = Field(default="", max_length=200)
    farm_location: str = Field(default="", max_length=200)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    role: str
    phone: str
    location: str = ""
    farm_name: str = ""
    farm_location: str = ""
    is_verified: bool = False
    is_active: bool = True


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    second_factor_verified: bool = False


class AccessResponse(BaseModel):
    role: str
    permissions: List[str]
    second_factor_verified: bool


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class MFASetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    qr_code: str
    backup_codes: List[str]


class MFAVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)


class MFAVerifyResponse(AuthResponse):
    method: str
    activated: bool = False
    backup_codes_remaining: Optional[int] = None


class MFADisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class MFAStatusResponse(BaseModel):
    enabled: bool = Field(..., description="Whether 2FA is currently enabled")
    state: str
    configured: bool = Field(..., description="Whether a secret exists (possibly pending verification)")
    backup_codes_remaining: int


class UserListResponse(BaseModel):
    items: List[UserResponse]


class RoleUpdateRequest(BaseModel):
    role: str = Field(..., max_length=64)

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        if value not in ROLE_NAMES:
            raise ValueError(f"role must be one of: {', '.join(sorted(ROLE_NAMES))}")
        return value


class UserStatusUpdateRequest(BaseModel):
    active: bool
    reason: str = Field(default="", max_length=500)


class ProfileUpdateRequest(BaseModel):
    """Partial profile update; omitted fields keep their value."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    phone: Optional[str] = Field(default=None, min_length=7, max_length=20)
    location: Optional[str] = Field(default=None, max_length=200)
    farm_name: Optional[str] = Field(default=None, max_length=200)
    farm_location: Optional[str] = Field(default=None, max_length=200)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)
