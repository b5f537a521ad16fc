from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from gatehouse.storage.models import User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_code",
    "not_found",
    "validation_error",
    "token_expired",
    "oauth_exchange_failed",
    "upstream_failure",
    "conflict",
    "server_error",
})

# Minimum length only; no composition rules are applied
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 128


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
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


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
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


def _validate_password(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


def _validate_name(value: str) -> str:
    value = _normalize_unicode(value).strip()
    if not value:
        raise ValueError("name must not be empty")
    return value


class RegisterRequest(BaseModel):
    name: str = Field(..., max_length=128)
    email: str
    password: str
    password_repeat: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password(value)

    @model_validator(mode="after")
    def _passwords_match(self) -> "RegisterRequest":
        if self.password_repeat is not None and self.password_repeat != self.password:
            raise ValueError("passwords do not match")
        return self


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailConfirmationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class NewPasswordRequest(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password(value)


class UpdateProfileRequest(BaseModel):
    name: str = Field(..., max_length=128)
    email: str
    is_two_factor_enabled: bool

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class UserResponse(BaseModel):
    id: str
    email: str
    display_name: str
    picture: Optional[str] = None
    auth_method: str
    role: str
    is_verified: bool
    is_two_factor_enabled: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            display_name=user.display_name,
            picture=user.picture,
            auth_method=user.auth_method.value,
            role=user.role.value,
            is_verified=user.is_verified,
            is_two_factor_enabled=user.is_two_factor_enabled,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class MessageResponse(BaseModel):
    message: str


class LoginResponse(BaseModel):
    state: str
    user: Optional[UserResponse] = None
    message: Optional[str] = None


class AuthorizationUrlResponse(BaseModel):
    url: str
