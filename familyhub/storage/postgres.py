from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
)

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "sql" / "001_auth_schema.sql"

REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "family_member",
    "oauth_account",
    "email_token",
    "user_two_factor",
    "recovery_code",
    "login_attempt",
    "active_session",
)


class PostgresStore:
    """Postgres-backed record store for accounts and identity links."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply {} to install the schema.".format(
                    ", ".join(sorted(missing_tables)), SCHEMA_PATH.name
                )
            )

    def close(self) -> None:
        self.pool.close()

    # -- row mappers -------------------------------------------------------

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            email_verified=bool(row.get("email_verified", False)),
            default_locale=row.get("default_locale") or "en",
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_member(row: dict) -> Member:
        return Member(
            id=str(row["id"]),
            family_id=str(row["family_id"]),
            name=row["name"],
            role=MemberRole(row.get("role") or MemberRole.MEMBER.value),
            pin_hash=row.get("pin_hash"),
            locale=row.get("locale"),
            color=row.get("color") or "#3b82f6",
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_oauth_account(row: dict) -> OAuthAccount:
        return OAuthAccount(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            provider=OAuthProvider(row["provider"]),
            provider_account_id=row["provider_account_id"],
            email=row.get("email"),
            display_name=row.get("display_name"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_email_token(row: dict) -> EmailToken:
        metadata = row.get("metadata")
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return EmailToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            type=EmailTokenType(row["type"]),
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            metadata=metadata,
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_recovery_code(row: dict) -> RecoveryCode:
        return RecoveryCode(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            code_hash=row["code_hash"],
            used_at=row.get("used_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_login_attempt(row: dict) -> LoginAttempt:
        user_id = row.get("user_id")
        return LoginAttempt(
            id=str(row["id"]),
            email=row["email"],
            success=bool(row["success"]),
            user_id=str(user_id) if user_id else None,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            failure_reason=row.get("failure_reason"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_active_session(row: dict) -> ActiveSession:
        member_id = row.get("member_id")
        return ActiveSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            session_token=row["session_token"],
            expires_at=row["expires_at"],
            member_id=str(member_id) if member_id else None,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        name: str,
        *,
        default_locale: str = "en",
        email_verified: bool = False,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, email_verified, default_locale)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalized, name, email_verified, default_locale),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s",
                (email.strip().lower(),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET email_verified = TRUE WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_email(self, user_id: str, email: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user SET email = %s, email_verified = TRUE
                    WHERE id = %s RETURNING *
                    """,
                    (email.strip().lower(), user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"field": "user_id"}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO family_member (id, family_id, name, role, pin_hash, locale, color)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        family_id,
                        name,
                        MemberRole(role).value,
                        pin_hash,
                        locale,
                        color,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("household not found", {"field": "family_id"})
        return self._row_to_member(row)

    def get_member(self, member_id: str) -> Optional[Member]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM family_member WHERE id = %s", (member_id,)
            ).fetchone()
        return self._row_to_member(row) if row else None

    def list_members(self, family_id: str) -> List[Member]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM family_member WHERE family_id = %s ORDER BY created_at",
                (family_id,),
            ).fetchall()
        return [self._row_to_member(row) for row in rows]

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO oauth_account (id, user_id, provider, provider_account_id, email, display_name)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        user_id,
                        provider.value,
                        provider_account_id,
                        email,
                        display_name,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "oauth account already linked",
                {"field": "provider_account", "provider": provider.value},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for oauth", {"field": "user_id"})
        return self._row_to_oauth_account(row)

    def get_oauth_account(
        self, provider: OAuthProvider, provider_account_id: str
    ) -> Optional[OAuthAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_account WHERE provider = %s AND provider_account_id = %s",
                (OAuthProvider(provider).value, provider_account_id),
            ).fetchone()
        return self._row_to_oauth_account(row) if row else None

    def list_oauth_accounts(self, user_id: str) -> List[OAuthAccount]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM oauth_account WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_oauth_account(row) for row in rows]

    def delete_oauth_account(self, user_id: str, provider: OAuthProvider) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM oauth_account WHERE user_id = %s AND provider = %s",
                (user_id, OAuthProvider(provider).value),
            )
            return cur.rowcount > 0

    # -- email tokens ------------------------------------------------------

    def delete_unused_email_tokens(
        self, user_id: str, token_type: EmailTokenType
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM email_token WHERE user_id = %s AND type = %s AND used_at IS NULL",
                (user_id, EmailTokenType(token_type).value),
            )
            return cur.rowcount

    def create_email_token(
        self,
        user_id: str,
        token_hash: str,
        token_type: EmailTokenType,
        expires_at: datetime,
        *,
        metadata: Optional[dict] = None,
    ) -> EmailToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO email_token (id, user_id, token_hash, type, expires_at, metadata)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        user_id,
                        token_hash,
                        EmailTokenType(token_type).value,
                        expires_at,
                        json.dumps(metadata) if metadata else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash collision", {"field": "token_hash"})
        return self._row_to_email_token(row)

    def get_email_token_by_hash(self, token_hash: str) -> Optional[EmailToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_email_token(row) if row else None

    def mark_email_token_used(self, token_id: str, used_at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE email_token SET used_at = %s WHERE id = %s AND used_at IS NULL",
                (used_at, token_id),
            )
            return cur.rowcount > 0

    # -- two-factor --------------------------------------------------------

    def set_two_factor_secret(self, user_id: str, encrypted_secret: str) -> TwoFactorConfig:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_two_factor (user_id, secret, enabled, enabled_at, created_at)
                VALUES (%s, %s, FALSE, NULL, now())
                ON CONFLICT (user_id) DO UPDATE
                SET secret = EXCLUDED.secret, enabled = FALSE, enabled_at = NULL
                """,
                (user_id, encrypted_secret),
            )
        return TwoFactorConfig(user_id=user_id, secret=encrypted_secret)

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_two_factor WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return TwoFactorConfig(
            user_id=str(row["user_id"]),
            secret=row["secret"],
            enabled=bool(row["enabled"]),
            enabled_at=row.get("enabled_at"),
            created_at=row["created_at"],
        )

    def enable_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_two_factor SET enabled = TRUE, enabled_at = now() WHERE user_id = %s",
                (user_id,),
            )
        return self.get_two_factor(user_id)

    def disable_two_factor(self, user_id: str) -> None:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute("DELETE FROM recovery_code WHERE user_id = %s", (user_id,))
                conn.execute("DELETE FROM user_two_factor WHERE user_id = %s", (user_id,))

    def replace_recovery_codes(
        self, user_id: str, code_hashes: Iterable[str]
    ) -> List[RecoveryCode]:
        created: List[RecoveryCode] = []
        with self._connect() as conn:
            with conn.transaction():
                conn.execute("DELETE FROM recovery_code WHERE user_id = %s", (user_id,))
                for code_hash in code_hashes:
                    row = conn.execute(
                        """
                        INSERT INTO recovery_code (id, user_id, code_hash)
                        VALUES (%s, %s, %s)
                        RETURNING *
                        """,
                        (str(uuid.uuid4()), user_id, code_hash),
                    ).fetchone()
                    created.append(self._row_to_recovery_code(row))
        return created

    def list_recovery_codes(self, user_id: str) -> List[RecoveryCode]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM recovery_code WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_recovery_code(row) for row in rows]

    def mark_recovery_code_used(self, code_id: str, used_at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE recovery_code SET used_at = %s WHERE id = %s AND used_at IS NULL",
                (used_at, code_id),
            )
            return cur.rowcount > 0

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
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempt (id, user_id, email, ip_address, user_agent, success, failure_reason)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    user_id,
                    email,
                    ip_address,
                    user_agent,
                    success,
                    failure_reason,
                ),
            )
        return attempt

    def list_login_attempts(self, user_id: str, limit: int = 20) -> List[LoginAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM login_attempt
                WHERE user_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [self._row_to_login_attempt(row) for row in rows]

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
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO active_session (id, user_id, session_token, ip_address, user_agent, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (session_token) DO NOTHING
                """,
                (record.id, user_id, session_token, ip_address, user_agent, expires_at),
            )
        return record

    def update_active_session_member(
        self, session_token: str, member_id: Optional[str]
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE active_session SET member_id = %s WHERE session_token = %s",
                (member_id, session_token),
            )

    def delete_active_session(self, session_token: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM active_session WHERE session_token = %s", (session_token,)
            )

    def delete_user_active_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM active_session WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount

    def list_active_sessions(self, user_id: str, now: datetime) -> List[ActiveSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM active_session
                WHERE user_id = %s AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._row_to_active_session(row) for row in rows]

    def delete_user_active_session(self, user_id: str, session_id: str) -> bool:
        try:
            uuid.UUID(session_id)
        except ValueError:
            return False
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM active_session WHERE id = %s AND user_id = %s",
                (session_id, user_id),
            )
            return cur.rowcount > 0
