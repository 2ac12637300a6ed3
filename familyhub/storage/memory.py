from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from familyhub.logging import get_logger
from familyhub.storage.errors import ConstraintViolation
from familyhub.storage.models import (
    ActiveSession,
    EmailToken,
    EmailTokenType,
    LoginAttempt,
    Member,
    MemberRole,
    OAuthAccount,
    OAuthProvider,
    RecoveryCode,
    TwoFactorConfig,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory record store for development and tests.

    Mirrors the uniqueness rules of the Postgres schema (case-folded user
    email, ``(provider, provider_account_id)``) so constraint handling can be
    exercised without a database.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.members: Dict[str, Member] = {}
        self.oauth_accounts: Dict[str, OAuthAccount] = {}
        self.email_tokens: Dict[str, EmailToken] = {}
        self.two_factor: Dict[str, TwoFactorConfig] = {}
        self.recovery_codes: Dict[str, List[RecoveryCode]] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.active_sessions: Dict[str, ActiveSession] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        name: str,
        *,
        default_locale: str = "en",
        email_verified: bool = False,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                email_verified=email_verified,
                default_locale=default_locale,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            return user

    def update_user_email(self, user_id: str, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if any(
                other.email == normalized and other.id != user_id
                for other in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user.email = normalized
            user.email_verified = True
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"field": "user_id"}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- members -----------------------------------------------------------

    def create_member(
        self,
        family_id: str,
        name: str,
        *,
        role: MemberRole = MemberRole.MEMBER,
        pin_hash: Optional[str] = None,
        locale: Optional[str] = None,
        color: str = "#3b82f6",
    ) -> Member:
        with self._data_lock:
            if family_id not in self.users:
                raise ConstraintViolation("household not found", {"field": "family_id"})
            member = Member(
                id=str(uuid.uuid4()),
                family_id=family_id,
                name=name,
                role=MemberRole(role),
                pin_hash=pin_hash,
                locale=locale,
                color=color,
            )
            self.members[member.id] = member
            return member

    def get_member(self, member_id: str) -> Optional[Member]:
        with self._data_lock:
            return self.members.get(member_id)

    def list_members(self, family_id: str) -> List[Member]:
        with self._data_lock:
            found = [m for m in self.members.values() if m.family_id == family_id]
            return sorted(found, key=lambda m: m.created_at)

    # -- oauth accounts ----------------------------------------------------

    def create_oauth_account(
        self,
        user_id: str,
        provider: OAuthProvider,
        provider_account_id: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> OAuthAccount:
        provider = OAuthProvider(provider)
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for oauth", {"field": "user_id"})
            for existing in self.oauth_accounts.values():
                if (
                    existing.provider == provider
                    and existing.provider_account_id == provider_account_id
                ):
                    raise ConstraintViolation(
                        "oauth account already linked",
                        {"field": "provider_account", "provider": provider.value},
                    )
            account = OAuthAccount(
                id=str(uuid.uuid4()),
                user_id=user_id,
                provider=provider,
                provider_account_id=provider_account_id,
                email=email,
                display_name=display_name,
            )
            self.oauth_accounts[account.id] = account
            return account

    def get_oauth_account(
        self, provider: OAuthProvider, provider_account_id: str
    ) -> Optional[OAuthAccount]:
        provider = OAuthProvider(provider)
        with self._data_lock:
            return next(
                (
                    acct
                    for acct in self.oauth_accounts.values()
                    if acct.provider == provider
                    and acct.provider_account_id == provider_account_id
                ),
                None,
            )

    def list_oauth_accounts(self, user_id: str) -> List[OAuthAccount]:
        with self._data_lock:
            found = [a for a in self.oauth_accounts.values() if a.user_id == user_id]
            return sorted(found, key=lambda a: a.created_at)

    def delete_oauth_account(self, user_id: str, provider: OAuthProvider) -> bool:
        provider = OAuthProvider(provider)
        with self._data_lock:
            for acct_id, acct in list(self.oauth_accounts.items()):
                if acct.user_id == user_id and acct.provider == provider:
                    self.oauth_accounts.pop(acct_id, None)
                    return True
            return False

    # -- email tokens ------------------------------------------------------

    def delete_unused_email_tokens(
        self, user_id: str, token_type: EmailTokenType
    ) -> int:
        with self._data_lock:
            stale = [
                tok_id
                for tok_id, tok in self.email_tokens.items()
                if tok.user_id == user_id and tok.type == token_type and tok.used_at is None
            ]
            for tok_id in stale:
                self.email_tokens.pop(tok_id, None)
            return len(stale)

    def create_email_token(
        self,
        user_id: str,
        token_hash: str,
        token_type: EmailTokenType,
        expires_at: datetime,
        *,
        metadata: Optional[dict] = None,
    ) -> EmailToken:
        with self._data_lock:
            if any(t.token_hash == token_hash for t in self.email_tokens.values()):
                raise ConstraintViolation("token hash collision", {"field": "token_hash"})
            token = EmailToken(
                id=str(uuid.uuid4()),
                user_id=user_id,
                token_hash=token_hash,
                type=EmailTokenType(token_type),
                expires_at=expires_at,
                metadata=dict(metadata) if metadata else None,
            )
            self.email_tokens[token.id] = token
            return token

    def get_email_token_by_hash(self, token_hash: str) -> Optional[EmailToken]:
        with self._data_lock:
            return next(
                (t for t in self.email_tokens.values() if t.token_hash == token_hash),
                None,
            )

    def mark_email_token_used(self, token_id: str, used_at: datetime) -> bool:
        with self._data_lock:
            token = self.email_tokens.get(token_id)
            if not token or token.used_at is not None:
                return False
            token.used_at = used_at
            return True

    # -- two-factor --------------------------------------------------------

    def set_two_factor_secret(self, user_id: str, encrypted_secret: str) -> TwoFactorConfig:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for 2fa", {"field": "user_id"})
            config = TwoFactorConfig(user_id=user_id, secret=encrypted_secret)
            self.two_factor[user_id] = config
            return config

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._data_lock:
            return self.two_factor.get(user_id)

    def enable_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._data_lock:
            config = self.two_factor.get(user_id)
            if not config:
                return None
            config.enabled = True
            config.enabled_at = utcnow()
            return config

    def disable_two_factor(self, user_id: str) -> None:
        with self._data_lock:
            self.two_factor.pop(user_id, None)
            self.recovery_codes.pop(user_id, None)

    def replace_recovery_codes(
        self, user_id: str, code_hashes: Iterable[str]
    ) -> List[RecoveryCode]:
        with self._data_lock:
            codes = [
                RecoveryCode(id=str(uuid.uuid4()), user_id=user_id, code_hash=code_hash)
                for code_hash in code_hashes
            ]
            self.recovery_codes[user_id] = codes
            return list(codes)

    def list_recovery_codes(self, user_id: str) -> List[RecoveryCode]:
        with self._data_lock:
            return list(self.recovery_codes.get(user_id, []))

    def mark_recovery_code_used(self, code_id: str, used_at: datetime) -> bool:
        with self._data_lock:
            for codes in self.recovery_codes.values():
                for code in codes:
                    if code.id == code_id:
                        if code.used_at is not None:
                            return False
                        code.used_at = used_at
                        return True
            return False

    # -- audit -------------------------------------------------------------

    def record_login_attempt(
        self,
        email: str,
        *,
        success: bool,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> LoginAttempt:
        attempt = LoginAttempt(
            id=str(uuid.uuid4()),
            email=email,
            success=success,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            failure_reason=failure_reason,
        )
        with self._data_lock:
            self.login_attempts.append(attempt)
        return attempt

    def list_login_attempts(self, user_id: str, limit: int = 20) -> List[LoginAttempt]:
        with self._data_lock:
            found = [a for a in reversed(self.login_attempts) if a.user_id == user_id]
        return found[:limit]

    def create_active_session(
        self,
        user_id: str,
        session_token: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ActiveSession:
        record = ActiveSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            session_token=session_token,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        with self._data_lock:
            self.active_sessions[session_token] = record
        return record

    def update_active_session_member(
        self, session_token: str, member_id: Optional[str]
    ) -> None:
        with self._data_lock:
            record = self.active_sessions.get(session_token)
            if record:
                record.member_id = member_id

    def delete_active_session(self, session_token: str) -> None:
        with self._data_lock:
            self.active_sessions.pop(session_token, None)

    def delete_user_active_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [
                token
                for token, record in self.active_sessions.items()
                if record.user_id == user_id
            ]
            for token in stale:
                self.active_sessions.pop(token, None)
            return len(stale)

    def list_active_sessions(self, user_id: str, now: datetime) -> List[ActiveSession]:
        with self._data_lock:
            found = [
                s
                for s in self.active_sessions.values()
                if s.user_id == user_id and s.expires_at > now
            ]
        return sorted(found, key=lambda s: s.created_at, reverse=True)

    def delete_user_active_session(self, user_id: str, session_id: str) -> bool:
        with self._data_lock:
            for token, record in list(self.active_sessions.items()):
                if record.id == session_id and record.user_id == user_id:
                    self.active_sessions.pop(token, None)
                    return True
        return False
