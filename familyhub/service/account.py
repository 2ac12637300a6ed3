from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from familyhub.config import Settings
from familyhub.logging import get_logger, redact_email
from familyhub.service.email import EmailService
from familyhub.service.encryption import DecryptionError, SecretCipher
from familyhub.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    OAuthOnlyAccountError,
    ServerError,
    ValidationError,
)
from familyhub.service.identity import OAuthIdentity
from familyhub.service.pending import PendingTwoFactorStore
from familyhub.service.tokens import TokenAlreadyUsed, TokenError, TokenVault
from familyhub.service.two_factor import (
    TwoFactorEngine,
    looks_like_totp,
    normalize_totp_code,
)
from familyhub.storage.errors import ConstraintViolation
from familyhub.storage.models import (
    ActiveSession,
    EmailTokenType,
    LoginAttempt,
    Member,
    MemberRole,
    OAuthProvider,
    User,
    utcnow,
)

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
INVALID_CREDENTIALS = "Invalid email or password"
PENDING_2FA_REJECTED = "Invalid or expired verification. Please log in again."


@dataclass
class LoginResult:
    user: User
    requires_two_factor: bool = False
    pending_token: Optional[str] = None


@dataclass
class TwoFactorLoginResult:
    user: User
    remember_me: bool
    used_recovery_code: bool
    remaining_codes: Optional[int] = None


class AccountService:
    """Household account flows: registration, password login, second factor,
    emailed-token flows, linked sign-in methods and profile selection."""

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        vault: TokenVault,
        pending: PendingTwoFactorStore,
        two_factor: TwoFactorEngine,
        cipher: SecretCipher,
        email: EmailService,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.vault = vault
        self.pending = pending
        self.two_factor = two_factor
        self.cipher = cipher
        self.email = email
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    # -- credentials -------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def has_password(self, user_id: str) -> bool:
        return self.store.get_password_record(user_id) is not None

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

    def _save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def _verify_pin(self, member: Member, pin: str) -> bool:
        try:
            return self._pwd_hasher.verify(member.pin_hash, pin)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("account not found")
        return user

    # -- registration & login ----------------------------------------------

    def register(
        self,
        *,
        email: str,
        password: Optional[str],
        family_name: str,
        admin_name: str,
        admin_pin: str,
        locale: str = "en",
        color: str = "#3b82f6",
        oauth_identity: Optional[OAuthIdentity] = None,
    ) -> Tuple[User, Member]:
        """Create a household with its first (admin) member.

        With ``oauth_identity`` the provider account is linked and the
        password becomes optional; a provider-verified email skips the
        verification mail.
        """
        if oauth_identity is None and not password:
            raise ValidationError("password is required")
        email_verified = bool(
            oauth_identity
            and oauth_identity.email_verified
            and oauth_identity.email.lower() == email.strip().lower()
        )
        try:
            user = self.store.create_user(
                email,
                family_name,
                default_locale=locale,
                email_verified=email_verified,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "email already registered", detail={"field": "email"}
            ) from exc
        if password:
            self._save_password(user.id, password)
        member = self.store.create_member(
            user.id,
            admin_name,
            role=MemberRole.ADMIN,
            pin_hash=self._pwd_hasher.hash(admin_pin),
            locale=locale,
            color=color,
        )
        if oauth_identity is not None:
            try:
                self.store.create_oauth_account(
                    user.id,
                    oauth_identity.provider,
                    oauth_identity.provider_account_id,
                    email=oauth_identity.email,
                    display_name=oauth_identity.display_name,
                )
            except ConstraintViolation as exc:
                raise ConflictError(
                    "this sign-in is already linked to another household",
                    detail={"provider": oauth_identity.provider.value},
                ) from exc
        if not email_verified:
            raw_token = self.vault.create(user.id, EmailTokenType.VERIFICATION)
            self.email.send_email_verification(user.email, raw_token, locale)
        logger.info(
            "household_registered",
            user_id=user.id,
            account=redact_email(user.email),
            via_oauth=oauth_identity is not None,
        )
        return user, member

    async def authenticate(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        normalized = email.strip().lower()
        user = self.store.get_user_by_email(normalized)
        if not user:
            self.store.record_login_attempt(
                normalized,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                failure_reason="UNKNOWN_EMAIL",
            )
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not self.has_password(user.id):
            raise OAuthOnlyAccountError("OAUTH_ONLY_ACCOUNT")
        if not self.verify_password(user.id, password):
            self.store.record_login_attempt(
                normalized,
                success=False,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                failure_reason="INVALID_PASSWORD",
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        self.store.record_login_attempt(
            normalized,
            success=True,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        config = self.store.get_two_factor(user.id)
        if config and config.enabled:
            pending_token = await self.pending.create(user.id, remember_me)
            logger.info("login_two_factor_required", user_id=user.id)
            return LoginResult(user, requires_two_factor=True, pending_token=pending_token)
        return LoginResult(user)

    def record_oauth_login(
        self,
        user_id: str,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.store.record_login_attempt(
            email,
            success=True,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def verify_two_factor(
        self,
        token: str,
        code: Optional[str] = None,
        recovery_code: Optional[str] = None,
    ) -> TwoFactorLoginResult:
        """Redeem a pending login with a TOTP or recovery code.

        The pending token is spent by this call whatever the outcome, so a
        wrong code sends the user back to the password step.
        """
        pending = await self.pending.consume(token)
        if not pending:
            raise AuthenticationError(PENDING_2FA_REJECTED, error_code="two_factor_expired")
        user = self.store.get_user(pending.user_id)
        config = self.store.get_two_factor(pending.user_id)
        if not user or not config or not config.enabled:
            logger.error("two_factor_state_missing", user_id=pending.user_id)
            raise ServerError("two-factor configuration unavailable")

        submitted = recovery_code or code or ""
        candidate = normalize_totp_code(submitted)
        if not recovery_code and looks_like_totp(candidate):
            if self.two_factor.verify_totp(self._decrypt_secret(config.secret), candidate):
                logger.info("two_factor_verified", user_id=user.id, method="totp")
                return TwoFactorLoginResult(
                    user, remember_me=pending.remember_me, used_recovery_code=False
                )

        codes = self.store.list_recovery_codes(user.id)
        matched = self.two_factor.match_recovery_code(submitted, codes)
        if matched and self.store.mark_recovery_code_used(matched, utcnow()):
            remaining = sum(1 for c in codes if c.used_at is None and c.id != matched)
            logger.info(
                "two_factor_verified",
                user_id=user.id,
                method="recovery",
                remaining=remaining,
            )
            return TwoFactorLoginResult(
                user,
                remember_me=pending.remember_me,
                used_recovery_code=True,
                remaining_codes=remaining,
            )

        logger.warning("two_factor_rejected", user_id=user.id)
        raise AuthenticationError("Invalid verification code.", error_code="invalid_two_factor_code")

    # -- two-factor management --------------------------------------------

    def _decrypt_secret(self, encrypted: str) -> str:
        try:
            return self.cipher.decrypt(encrypted)
        except DecryptionError as exc:
            logger.error("two_factor_secret_unreadable")
            raise ServerError("two-factor configuration unavailable") from exc

    def _require_enabled_secret(self, user_id: str, code: str) -> None:
        config = self.store.get_two_factor(user_id)
        if not config or not config.enabled:
            raise ValidationError("Two-factor authentication is not enabled.")
        if not self.two_factor.verify_totp(self._decrypt_secret(config.secret), code):
            raise AuthenticationError("Invalid code.", error_code="invalid_two_factor_code")

    def two_factor_status(self, user_id: str) -> dict:
        user = self._require_user(user_id)
        config = self.store.get_two_factor(user_id)
        codes = self.store.list_recovery_codes(user_id)
        return {
            "enabled": bool(config and config.enabled),
            "email_verified": user.email_verified,
            "recovery_codes_remaining": sum(1 for c in codes if c.used_at is None),
            "recovery_codes_total": len(codes),
        }

    def begin_two_factor_setup(self, user_id: str) -> dict:
        user = self._require_user(user_id)
        if not user.email_verified:
            raise ValidationError(
                "Email must be verified before enabling 2FA.",
                error_code="email_not_verified",
            )
        config = self.store.get_two_factor(user_id)
        if config and config.enabled:
            raise ConflictError("Two-factor authentication is already enabled.")
        secret = self.two_factor.generate_secret()
        provisioning = self.two_factor.build_provisioning(secret, user.email)
        self.store.set_two_factor_secret(user_id, self.cipher.encrypt(secret))
        return {
            "secret": secret,
            "otpauth_uri": provisioning.otpauth_uri,
            "qr_code_data_url": provisioning.qr_code_data_url,
        }

    def confirm_two_factor_setup(self, user_id: str, code: str) -> List[str]:
        user = self._require_user(user_id)
        config = self.store.get_two_factor(user_id)
        if not config:
            raise ValidationError("No 2FA setup in progress.")
        if config.enabled:
            raise ConflictError("Two-factor authentication is already enabled.")
        if not self.two_factor.verify_totp(self._decrypt_secret(config.secret), code):
            raise AuthenticationError("Invalid code. Please try again.", error_code="invalid_two_factor_code")
        codes = self.two_factor.generate_recovery_codes()
        self.store.enable_two_factor(user_id)
        self.store.replace_recovery_codes(user_id, codes.hashes)
        self._notify(self.email.send_two_factor_enabled, user)
        logger.info("two_factor_enabled", user_id=user_id)
        return codes.plain

    def disable_two_factor(self, user_id: str, code: str) -> None:
        user = self._require_user(user_id)
        self._require_enabled_secret(user_id, code)
        self.store.disable_two_factor(user_id)
        self._notify(self.email.send_two_factor_disabled, user)
        logger.info("two_factor_disabled", user_id=user_id)

    def regenerate_recovery_codes(self, user_id: str, code: str) -> List[str]:
        self._require_user(user_id)
        self._require_enabled_secret(user_id, code)
        codes = self.two_factor.generate_recovery_codes()
        self.store.replace_recovery_codes(user_id, codes.hashes)
        logger.info("recovery_codes_regenerated", user_id=user_id)
        return codes.plain

    # -- emailed tokens ----------------------------------------------------

    def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a reset token if the account exists; callers always report success."""
        user = self.store.get_user_by_email(email)
        if not user:
            return None
        raw_token = self.vault.create(user.id, EmailTokenType.PASSWORD_RESET)
        self.email.send_password_reset(user.email, raw_token, user.default_locale)
        return raw_token

    def request_password_change(self, user_id: str) -> str:
        """Email a reset link to the household's own address from account settings."""
        user = self._require_user(user_id)
        raw_token = self.vault.create(user.id, EmailTokenType.PASSWORD_RESET)
        self.email.send_password_reset(user.email, raw_token, user.default_locale)
        logger.info("password_change_requested", user_id=user.id)
        return raw_token

    def reset_password(self, raw_token: str, new_password: str) -> User:
        """Set a new password from a reset link; the link is spent only once the password is saved."""
        try:
            record = self.vault.validate(raw_token, EmailTokenType.PASSWORD_RESET)
        except TokenError as exc:
            logger.info("password_reset_token_rejected", reason=exc.reason)
            raise ValidationError("Invalid or expired reset link.", error_code="invalid_token") from exc
        user = self._require_user(record.user_id)
        self._save_password(user.id, new_password)
        revoked = self.store.delete_user_active_sessions(user.id)
        self._consume_token(record.id, "password_reset")
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return user

    def verify_email(self, raw_token: str) -> User:
        """Confirm a verification or email-change link.

        An email-change token carries the new address and applies it here.
        """
        record = None
        for token_type in (EmailTokenType.VERIFICATION, EmailTokenType.EMAIL_CHANGE):
            try:
                record = self.vault.validate(raw_token, token_type)
                break
            except TokenError as exc:
                last_error = exc
        if record is None:
            logger.info("email_verification_rejected", reason=last_error.reason)
            raise ValidationError(
                "Invalid or expired verification link.", error_code="invalid_token"
            )
        user = self._require_user(record.user_id)
        if record.type == EmailTokenType.EMAIL_CHANGE:
            new_email = (record.metadata or {}).get("new_email")
            if not new_email:
                raise ValidationError(
                    "Invalid or expired verification link.", error_code="invalid_token"
                )
            old_email = user.email
            try:
                updated = self.store.update_user_email(user.id, new_email)
            except ConstraintViolation as exc:
                raise ConflictError("Email already in use") from exc
            self._consume_token(record.id, "email_change")
            self._notify(self.email.send_email_changed_notice, old_email, new_email, user.default_locale)
            logger.info("email_change_completed", user_id=user.id)
            return updated or user
        updated = self.store.mark_email_verified(user.id)
        self._consume_token(record.id, "email_verification")
        logger.info("email_verified", user_id=user.id)
        return updated or user

    def resend_verification(self, user_id: str) -> str:
        user = self._require_user(user_id)
        if user.email_verified:
            raise ValidationError("Email is already verified.", error_code="already_verified")
        raw_token = self.vault.create(user.id, EmailTokenType.VERIFICATION)
        if not self.email.send_email_verification(user.email, raw_token, user.default_locale):
            raise ServerError("Failed to send verification email. Please try again later.")
        return raw_token

    def request_email_change(self, user_id: str, new_email: str, password: str) -> str:
        user = self._require_user(user_id)
        if not self.has_password(user_id):
            raise OAuthOnlyAccountError("OAUTH_ONLY_ACCOUNT")
        if not self.verify_password(user_id, password):
            raise AuthenticationError("Password is incorrect")
        normalized = new_email.strip().lower()
        if self.store.get_user_by_email(normalized):
            raise ConflictError("Email already in use")
        raw_token = self.vault.create(
            user.id, EmailTokenType.EMAIL_CHANGE, {"new_email": normalized}
        )
        self.email.send_email_change_verification(normalized, raw_token, user.default_locale)
        return raw_token

    # -- linked sign-in methods --------------------------------------------

    def linked_accounts(self, user_id: str) -> dict:
        self._require_user(user_id)
        return {
            "accounts": self.store.list_oauth_accounts(user_id),
            "has_password": self.has_password(user_id),
        }

    def unlink_account(self, user_id: str, provider: OAuthProvider) -> None:
        user = self._require_user(user_id)
        accounts = self.store.list_oauth_accounts(user_id)
        if not any(a.provider == provider for a in accounts):
            raise NotFoundError("linked account not found")
        if not self.has_password(user_id) and len(accounts) <= 1:
            raise ValidationError(
                "Cannot remove the last sign-in method.", error_code="cannot_unlink_last"
            )
        self.store.delete_oauth_account(user_id, provider)
        self._notify(self.email.send_account_unlinked, user, provider.value)
        logger.info("oauth_unlinked", user_id=user_id, provider=provider.value)

    def set_password(
        self, user_id: str, new_password: str, current_password: Optional[str] = None
    ) -> None:
        """Set a first password, or change it when the current one is supplied."""
        self._require_user(user_id)
        if self.has_password(user_id):
            if not current_password:
                raise ValidationError(
                    "Account already has a password. Use password reset instead.",
                    error_code="password_already_set",
                )
            if not self.verify_password(user_id, current_password):
                raise AuthenticationError("Password is incorrect")
        self._save_password(user_id, new_password)
        logger.info("password_updated", user_id=user_id)

    # -- sign-in activity --------------------------------------------------

    def active_sessions(self, user_id: str) -> List[ActiveSession]:
        self._require_user(user_id)
        return self.store.list_active_sessions(user_id, utcnow())

    def invalidate_session(self, user_id: str, session_id: str) -> None:
        if not self.store.delete_user_active_session(user_id, session_id):
            raise NotFoundError("Session not found")
        logger.info("session_invalidated", user_id=user_id, session_id=session_id)

    def login_attempts(self, user_id: str, limit: int = 20) -> List[LoginAttempt]:
        return self.store.list_login_attempts(user_id, limit)

    # -- profiles ----------------------------------------------------------

    def list_members(self, family_id: str) -> List[Member]:
        return self.store.list_members(family_id)

    def get_family_member(self, family_id: str, member_id: str) -> Member:
        member = self.store.get_member(member_id)
        if not member or member.family_id != family_id:
            raise NotFoundError("Member not found")
        return member

    def check_member_pin(self, member: Member, pin: Optional[str]) -> None:
        if not member.pin_hash:
            return
        if not pin:
            raise ValidationError("PIN required", error_code="pin_required")
        if not self._verify_pin(member, pin):
            raise AuthenticationError("Invalid PIN", error_code="invalid_pin")

    def member_locale(self, member: Member) -> str:
        if member.locale:
            return member.locale
        user = self.store.get_user(member.family_id)
        return user.default_locale if user else "en"

    # -- helpers -----------------------------------------------------------

    def _consume_token(self, token_id: str, purpose: str) -> None:
        try:
            self.vault.consume(token_id)
        except TokenAlreadyUsed as exc:
            # A concurrent request redeemed the same link first.
            logger.warning("email_token_replayed", purpose=purpose)
            raise ValidationError(
                "Invalid or expired link.", error_code="invalid_token"
            ) from exc

    def _notify(self, send, user_or_email, *args) -> None:
        """Send a security notice without failing the calling flow."""
        if isinstance(user_or_email, User):
            to_email = user_or_email.email
            args = args + (user_or_email.default_locale,)
        else:
            to_email = user_or_email
        try:
            send(to_email, *args)
        except Exception as exc:
            logger.warning("security_notice_failed", notice=send.__name__, error=str(exc))
