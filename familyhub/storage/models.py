from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OAuthProvider(str, Enum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"


class MemberRole(str, Enum):
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class EmailTokenType(str, Enum):
    VERIFICATION = "verification"
    PASSWORD_RESET = "password_reset"
    EMAIL_CHANGE = "email_change"


@dataclass
class User:
    """A household account; its id is the session's ``family_id``."""

    id: str
    email: str
    name: str
    email_verified: bool = False
    default_locale: str = "en"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Member:
    id: str
    family_id: str
    name: str
    role: MemberRole = MemberRole.MEMBER
    pin_hash: Optional[str] = None
    locale: Optional[str] = None
    color: str = "#3b82f6"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OAuthAccount:
    id: str
    user_id: str
    provider: OAuthProvider
    provider_account_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class EmailToken:
    id: str
    user_id: str
    token_hash: str
    type: EmailTokenType
    expires_at: datetime
    used_at: Optional[datetime] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TwoFactorConfig:
    """TOTP configuration; ``secret`` is always the encrypted form."""

    user_id: str
    secret: str
    enabled: bool = False
    enabled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RecoveryCode:
    id: str
    user_id: str
    code_hash: str
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LoginAttempt:
    id: str
    email: str
    success: bool
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ActiveSession:
    id: str
    user_id: str
    session_token: str
    expires_at: datetime
    member_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
