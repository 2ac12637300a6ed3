from __future__ import annotations

import base64
import io
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Union

import pyotp
import qrcode
import qrcode.image.svg
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from familyhub.logging import get_logger
from familyhub.storage.models import RecoveryCode

logger = get_logger(__name__)

ISSUER_NAME = "Family Hub"
RECOVERY_CODE_COUNT = 10
TOTP_VALID_WINDOW = 1


@dataclass(frozen=True)
class Provisioning:
    otpauth_uri: str
    qr_code_data_url: str


@dataclass(frozen=True)
class RecoveryCodeSet:
    plain: List[str]
    hashes: List[str]


def normalize_recovery_code(raw: str) -> str:
    """Canonicalize user input to ``XXXX-XXXX``; case, spaces and dashes are ignored."""
    compact = "".join(ch for ch in (raw or "").upper() if ch not in " -\t")
    if len(compact) == 8:
        return f"{compact[:4]}-{compact[4:]}"
    return compact


def normalize_totp_code(raw: str) -> str:
    return "".join(ch for ch in (raw or "") if ch not in " -")


def looks_like_totp(code: str) -> bool:
    return len(code) == 6 and code.isdigit()


class TwoFactorEngine:
    """TOTP enrolment/verification and one-time recovery codes."""

    def __init__(self, *, hasher: Optional[PasswordHasher] = None):
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    @staticmethod
    def generate_secret() -> str:
        return pyotp.random_base32()

    def build_provisioning(self, secret: str, account_email: str) -> Provisioning:
        uri = pyotp.TOTP(secret).provisioning_uri(
            name=account_email, issuer_name=ISSUER_NAME
        )
        image = qrcode.make(
            uri, image_factory=qrcode.image.svg.SvgPathImage, border=2
        )
        buffer = io.BytesIO()
        image.save(buffer)
        encoded = base64.b64encode(buffer.getvalue()).decode()
        return Provisioning(
            otpauth_uri=uri, qr_code_data_url=f"data:image/svg+xml;base64,{encoded}"
        )

    @staticmethod
    def verify_totp(
        secret: str, code: str, *, at: Union[datetime, int, None] = None
    ) -> bool:
        """Check ``code`` against ``secret`` allowing one time step of drift."""
        code = normalize_totp_code(code)
        if not looks_like_totp(code) or not secret:
            return False
        totp = pyotp.TOTP(secret)
        if at is None:
            return bool(totp.verify(code, valid_window=TOTP_VALID_WINDOW))
        return bool(totp.verify(code, for_time=at, valid_window=TOTP_VALID_WINDOW))

    def generate_recovery_codes(self) -> RecoveryCodeSet:
        plain: List[str] = []
        for _ in range(RECOVERY_CODE_COUNT):
            raw = secrets.token_hex(4).upper()
            plain.append(f"{raw[:4]}-{raw[4:]}")
        return RecoveryCodeSet(plain=plain, hashes=[self._hasher.hash(c) for c in plain])

    def _matches(self, candidate: str, code_hash: str) -> bool:
        try:
            return self._hasher.verify(code_hash, candidate)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

    def match_recovery_code(
        self, raw: str, codes: Iterable[RecoveryCode]
    ) -> Optional[str]:
        """Return the id of the single unused code matching ``raw``.

        A submission matching more than one stored code is rejected.
        """
        candidate = normalize_recovery_code(raw)
        if not candidate:
            return None
        matches = [
            code.id
            for code in codes
            if code.used_at is None and self._matches(candidate, code.code_hash)
        ]
        if len(matches) > 1:
            logger.error("recovery_code_ambiguous_match", matches=len(matches))
            return None
        return matches[0] if matches else None
