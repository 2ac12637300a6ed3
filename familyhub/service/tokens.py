from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from familyhub.logging import get_logger
from familyhub.storage.models import EmailToken, EmailTokenType

logger = get_logger(__name__)

TOKEN_TTL = {
    EmailTokenType.VERIFICATION: timedelta(hours=24),
    EmailTokenType.PASSWORD_RESET: timedelta(hours=1),
    EmailTokenType.EMAIL_CHANGE: timedelta(hours=24),
}


class TokenError(Exception):
    """Base class for email token lifecycle failures."""

    reason = "token_invalid"


class TokenNotFound(TokenError):
    reason = "token_not_found"


class TokenTypeMismatch(TokenError):
    reason = "token_type_mismatch"


class TokenAlreadyUsed(TokenError):
    reason = "token_already_used"


class TokenExpired(TokenError):
    reason = "token_expired"


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode()).hexdigest()


class TokenVault:
    """Single-use emailed tokens; only the SHA-256 of a token is stored."""

    def __init__(self, store, *, clock: Callable[[], datetime] | None = None):
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def create(
        self,
        user_id: str,
        token_type: EmailTokenType,
        metadata: Optional[dict] = None,
    ) -> str:
        token_type = EmailTokenType(token_type)
        raw_token = generate_token()
        expires_at = self._clock() + TOKEN_TTL[token_type]
        removed = self.store.delete_unused_email_tokens(user_id, token_type)
        self.store.create_email_token(
            user_id, hash_token(raw_token), token_type, expires_at, metadata=metadata
        )
        logger.info(
            "email_token_created",
            user_id=user_id,
            purpose=token_type.value,
            superseded=removed,
        )
        return raw_token

    def validate(self, raw_token: str, expected_type: EmailTokenType) -> EmailToken:
        record = self.store.get_email_token_by_hash(hash_token(raw_token or ""))
        if record is None:
            raise TokenNotFound("token not found")
        if record.type != EmailTokenType(expected_type):
            raise TokenTypeMismatch("token type mismatch")
        if record.used_at is not None:
            raise TokenAlreadyUsed("token already used")
        expires_at = record.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at < self._clock():
            raise TokenExpired("token expired")
        return record

    def consume(self, token_id: str) -> None:
        if not self.store.mark_email_token_used(token_id, self._clock()):
            raise TokenAlreadyUsed("token already used")
