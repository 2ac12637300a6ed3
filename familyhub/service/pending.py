from __future__ import annotations

import json
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from familyhub.logging import get_logger

logger = get_logger(__name__)

PENDING_TTL_SECONDS = 300
KEY_PREFIX = "2fa-pending:"


@dataclass(frozen=True)
class PendingTwoFactor:
    user_id: str
    remember_me: bool = False


class PendingTwoFactorStore:
    """Bridges a verified password to the second factor.

    A token is handed to the client after the password check and redeemed
    exactly once at verification. Redis holds tokens when configured; without
    Redis an in-process map with the same TTL is used.
    """

    def __init__(
        self,
        cache=None,
        *,
        ttl_seconds: int = PENDING_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._local: Dict[str, Tuple[str, float]] = {}

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, (_, exp) in self._local.items() if exp <= now]
        for key in expired:
            self._local.pop(key, None)

    async def create(self, user_id: str, remember_me: bool = False) -> str:
        token = secrets.token_hex(32)
        key = f"{KEY_PREFIX}{token}"
        value = json.dumps({"user_id": user_id, "remember_me": bool(remember_me)})
        if self.cache:
            await self.cache.set_value(key, value, self.ttl_seconds)
        else:
            now = self._clock()
            with self._lock:
                self._purge_expired(now)
                self._local[key] = (value, now + self.ttl_seconds)
        return token

    async def consume(self, token: str) -> Optional[PendingTwoFactor]:
        if not token:
            return None
        key = f"{KEY_PREFIX}{token}"
        if self.cache:
            raw = await self.cache.pop_value(key)
        else:
            now = self._clock()
            with self._lock:
                entry = self._local.pop(key, None)
                self._purge_expired(now)
            raw = entry[0] if entry and entry[1] > now else None
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return PendingTwoFactor(
                user_id=str(data["user_id"]),
                remember_me=bool(data.get("remember_me", False)),
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("pending_2fa_corrupt", error=str(exc))
            return None
