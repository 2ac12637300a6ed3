from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from familyhub.config import SUPPORTED_LOCALES
from familyhub.storage.models import OAuthProvider


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "oauth_only_account",
    "two_factor_expired",
    "invalid_two_factor_code",
    "email_not_verified",
    "invalid_token",
    "already_verified",
    "cannot_unlink_last",
    "password_already_set",
    "pin_required",
    "invalid_pin",
})


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


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


_PIN_PATTERN = re.compile(r"^\d{4,8}$")
_COLOR_PATTERN = re.compile(r"^#[0-9a-fA-F]{6}$")


def _validate_pin(value: str) -> str:
    if not _PIN_PATTERN.match(value):
        raise ValueError("PIN must be 4-8 digits")
    return value


Locale = Literal["en", "de"]


class RegisterRequest(BaseModel):
    email: str
    password: Optional[str] = None
    family_name: str = Field(..., min_length=1, max_length=100)
    admin_name: str = Field(..., min_length=1, max_length=50)
    admin_pin: str
    locale: Locale = "en"
    color: str = Field(default="#3b82f6")

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_password_strength(value)

    @field_validator("family_name", "admin_name")
    @classmethod
    def _normalize_names(cls, value: str) -> str:
        normalized = _normalize_unicode(value).strip()
        if not normalized:
            raise ValueError("name must not be blank")
        return normalized

    @field_validator("admin_pin")
    @classmethod
    def _validate_admin_pin(cls, value: str) -> str:
        return _validate_pin(value)

    @field_validator("color")
    @classmethod
    def _validate_color(cls, value: str) -> str:
        if not _COLOR_PATTERN.match(value):
            raise ValueError("color must be a hex value like #3b82f6")
        return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginResponse(BaseModel):
    family_id: str
    family_name: str
    requires_two_factor: bool = False
    two_factor_token: Optional[str] = None


class VerifyTwoFactorRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)
    code: Optional[str] = Field(default=None, min_length=6, max_length=9)
    recovery_code: Optional[str] = Field(default=None, min_length=8, max_length=12)

    @model_validator(mode="after")
    def _require_one_code(self):
        if not self.code and not self.recovery_code:
            raise ValueError("code or recovery_code is required")
        return self


class VerifyTwoFactorResponse(BaseModel):
    family_id: str
    family_name: str
    used_recovery_code: bool = False
    remaining_codes: Optional[int] = None


class SessionResponse(BaseModel):
    authenticated: bool
    family_id: Optional[str] = None
    family_name: Optional[str] = None
    member_id: Optional[str] = None
    role: Optional[str] = None
    original_member_id: Optional[str] = None
    is_impersonating: bool = False


class MemberResponse(BaseModel):
    id: str
    name: str
    role: str
    color: str
    locale: Optional[str] = None
    has_pin: bool = False


class SelectProfileRequest(BaseModel):
    member_id: str = Field(..., min_length=1, max_length=64)
    pin: Optional[str] = Field(default=None, max_length=8)


class ImpersonateRequest(BaseModel):
    member_id: str = Field(..., min_length=1, max_length=64)


class TotpCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=6)

    @field_validator("code")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        if not value.isdigit():
            raise ValueError("code must be 6 digits")
        return value


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    email_verified: bool
    recovery_codes_remaining: int
    recovery_codes_total: int


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    qr_code_data_url: str


class RecoveryCodesResponse(BaseModel):
    recovery_codes: List[str]


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


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class EmailChangeRequest(BaseModel):
    new_email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("new_email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        return _validate_email(value)


class SetPasswordRequest(BaseModel):
    new_password: str
    current_password: Optional[str] = Field(default=None, max_length=128)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LinkedAccountResponse(BaseModel):
    provider: OAuthProvider
    email: Optional[str] = None
    display_name: Optional[str] = None
    created_at: datetime


class LinkedAccountsResponse(BaseModel):
    accounts: List[LinkedAccountResponse]
    has_password: bool


class ActiveSessionResponse(BaseModel):
    id: str
    member_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    current: bool = False


class LoginAttemptResponse(BaseModel):
    id: str
    email: str
    success: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime


class OAuthPendingResponse(BaseModel):
    provider: OAuthProvider
    email: str
    email_verified: bool
    display_name: Optional[str] = None


class LocaleRequest(BaseModel):
    locale: str

    @field_validator("locale")
    @classmethod
    def _supported_locale(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SUPPORTED_LOCALES:
            raise ValueError(f"locale must be one of: {', '.join(SUPPORTED_LOCALES)}")
        return normalized
