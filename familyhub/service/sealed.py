from __future__ import annotations

import base64
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Type

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from familyhub.logging import get_logger

logger = get_logger(__name__)

UNSEAL_INVALID = "invalid"
UNSEAL_EXPIRED = "expired"
UNSEAL_SCHEMA = "schema"


class SealedStateError(Exception):
    """Raised by ``SealedStateCodec.unseal`` with the failure reason."""

    def __init__(self, reason: str):
        super().__init__(f"sealed state rejected: {reason}")
        self.reason = reason


@dataclass(frozen=True)
class UnsealResult:
    ok: bool
    payload: Any = None
    error: Optional[str] = None


class SealedStateCodec:
    """Encrypt-and-authenticate small JSON payloads with an expiry.

    Used for the session cookie, OAuth CSRF state and the OAuth-pending
    cookie. Tokens are URL-safe strings; anything that fails authentication,
    is past its expiry or does not match the expected schema is rejected.
    """

    def __init__(self, secret: str, *, clock: Callable[[], float] = time.time):
        if not secret or len(secret) < 32:
            raise ValueError("sealing secret must be at least 32 characters")
        key = base64.urlsafe_b64encode(
            hashlib.sha256(b"sealed-state:" + secret.encode()).digest()
        )
        self._fernet = Fernet(key)
        self._clock = clock

    def seal(self, payload: Any, ttl_seconds: int) -> str:
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        now = self._clock()
        body = json.dumps(
            {"p": payload, "exp": now + int(ttl_seconds)}, separators=(",", ":")
        )
        return self._fernet.encrypt_at_time(body.encode(), int(now)).decode()

    def open(
        self, token: Optional[str], schema: Optional[Type[BaseModel]] = None
    ) -> UnsealResult:
        if not token:
            return UnsealResult(ok=False, error=UNSEAL_INVALID)
        try:
            raw = self._fernet.decrypt(token.encode())
            body = json.loads(raw)
        except (InvalidToken, ValueError, TypeError):
            return UnsealResult(ok=False, error=UNSEAL_INVALID)
        if not isinstance(body, dict) or "p" not in body:
            return UnsealResult(ok=False, error=UNSEAL_INVALID)
        expires_at = body.get("exp")
        if not isinstance(expires_at, (int, float)) or expires_at <= self._clock():
            return UnsealResult(ok=False, error=UNSEAL_EXPIRED)
        payload = body["p"]
        if schema is not None:
            try:
                payload = schema.model_validate(payload)
            except PydanticValidationError:
                logger.warning("sealed_state_schema_mismatch", schema=schema.__name__)
                return UnsealResult(ok=False, error=UNSEAL_SCHEMA)
        return UnsealResult(ok=True, payload=payload)

    def unseal(
        self, token: Optional[str], schema: Optional[Type[BaseModel]] = None
    ) -> Any:
        result = self.open(token, schema)
        if not result.ok:
            raise SealedStateError(result.error or UNSEAL_INVALID)
        return result.payload
