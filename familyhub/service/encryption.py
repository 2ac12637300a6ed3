from __future__ import annotations

import base64
import hashlib
from typing import Sequence

from cryptography.fernet import Fernet, InvalidToken, MultiFernet


class DecryptionError(Exception):
    """Ciphertext could not be authenticated with any configured key."""


class SecretCipher:
    """Authenticated encryption for secrets at rest (TOTP seeds).

    Keys are derived from arbitrary key material with SHA-256 so operators can
    supply passphrases. The first key encrypts; every key is tried on decrypt,
    which allows rotating ``TOKEN_ENCRYPTION_KEY`` by prepending a new value.
    """

    def __init__(self, key_material: Sequence[str]):
        materials = [m for m in key_material if m]
        if not materials:
            raise ValueError("at least one encryption key is required")
        self._cipher = MultiFernet(
            [Fernet(self._derive_cipher_key(m)) for m in materials]
        )

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: str) -> str:
        return self._cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._cipher.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, UnicodeError) as exc:
            raise DecryptionError("unable to decrypt secret") from exc

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt ``ciphertext`` under the primary key."""
        try:
            return self._cipher.rotate(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise DecryptionError("unable to decrypt secret") from exc
