from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Request, Response
from pydantic import BaseModel, ConfigDict, model_validator

from familyhub.config import Settings
from familyhub.logging import get_logger
from familyhub.service.errors import AuthenticationError, ForbiddenError
from familyhub.service.sealed import SealedStateCodec
from familyhub.storage.models import MemberRole

logger = get_logger(__name__)

SESSION_COOKIE_NAME = "family-hub-session"


class SessionData(BaseModel):
    """Payload sealed into the session cookie."""

    model_config = ConfigDict(extra="ignore")

    family_id: Optional[str] = None
    member_id: Optional[str] = None
    role: Optional[MemberRole] = None
    original_member_id: Optional[str] = None
    session_token: Optional[str] = None

    @model_validator(mode="after")
    def _member_requires_family(self) -> "SessionData":
        if self.member_id and not self.family_id:
            raise ValueError("member_id requires family_id")
        if self.original_member_id and not self.member_id:
            raise ValueError("original_member_id requires member_id")
        return self

    @property
    def is_impersonating(self) -> bool:
        return bool(
            self.original_member_id and self.original_member_id != self.member_id
        )


def is_account_session(session: Optional[SessionData]) -> bool:
    return bool(session and session.family_id)


def is_full_session(session: Optional[SessionData]) -> bool:
    return bool(session and session.family_id and session.member_id)


def request_meta(request: Request) -> tuple[str, Optional[str]]:
    """Client IP (first forwarded hop) and user agent for audit records."""
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = None
    if forwarded:
        ip_address = forwarded.split(",")[0].strip() or None
    if not ip_address:
        ip_address = request.headers.get("x-real-ip")
    if not ip_address:
        ip_address = request.client.host if request.client else "unknown"
    return ip_address, request.headers.get("user-agent")


class SessionManager:
    """Reads and rewrites the sealed session cookie.

    Every mutation replaces the whole payload and refreshes the expiry.
    Reads never raise: an unreadable, expired or malformed cookie is
    treated as no session.
    """

    def __init__(self, codec: SealedStateCodec, store, settings: Settings):
        self.codec = codec
        self.store = store
        self.settings = settings

    # -- reads -------------------------------------------------------------

    def read_cookie(self, raw: Optional[str]) -> Optional[SessionData]:
        result = self.codec.open(raw, SessionData)
        if not result.ok:
            return None
        session = result.payload
        if not session.family_id:
            return None
        return session

    def get_session(self, request: Request) -> Optional[SessionData]:
        return self.read_cookie(request.cookies.get(SESSION_COOKIE_NAME))

    def get_account_session(self, request: Request) -> Optional[SessionData]:
        session = self.get_session(request)
        return session if is_account_session(session) else None

    def get_full_session(self, request: Request) -> Optional[SessionData]:
        session = self.get_session(request)
        return session if is_full_session(session) else None

    def require_account_session(self, request: Request) -> SessionData:
        session = self.get_account_session(request)
        if not session:
            raise AuthenticationError("session required")
        return session

    def require_full_session(self, request: Request) -> SessionData:
        session = self.get_full_session(request)
        if not session:
            if self.get_account_session(request):
                raise ForbiddenError("profile selection required")
            raise AuthenticationError("session required")
        return session

    # -- writes ------------------------------------------------------------

    def _write(self, response: Response, session: SessionData, ttl: int) -> None:
        response.set_cookie(
            SESSION_COOKIE_NAME,
            self.codec.seal(session, ttl),
            max_age=ttl,
            path="/",
            httponly=True,
            secure=self.settings.is_production,
            samesite="lax",
        )

    def set_account_session(
        self,
        request: Request,
        response: Response,
        family_id: str,
        *,
        remember_me: bool = False,
    ) -> SessionData:
        ttl = (
            self.settings.remember_me_ttl_seconds
            if remember_me
            else self.settings.session_ttl_seconds
        )
        session = SessionData(family_id=family_id, session_token=secrets.token_hex(32))
        self._write(response, session, ttl)
        ip_address, user_agent = request_meta(request)
        self.store.create_active_session(
            family_id,
            session.session_token,
            datetime.now(timezone.utc) + timedelta(seconds=ttl),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("session_created", family_id=family_id, remember_me=remember_me)
        return session

    def promote_to_full_session(
        self,
        request: Request,
        response: Response,
        member_id: str,
        role: MemberRole,
    ) -> SessionData:
        current = self.get_account_session(request)
        if not current:
            raise AuthenticationError("no account session to upgrade")
        session = SessionData(
            family_id=current.family_id,
            member_id=member_id,
            role=role,
            session_token=current.session_token or secrets.token_hex(32),
        )
        self._write(response, session, self.settings.session_ttl_seconds)
        if current.session_token:
            self.store.update_active_session_member(current.session_token, member_id)
        return session

    def switch_profile(
        self,
        request: Request,
        response: Response,
        member_id: str,
        role: MemberRole,
    ) -> SessionData:
        """Act as another member while remembering who started impersonating.

        Switching back to the original member ends impersonation.
        """
        current = self.get_full_session(request)
        if not current:
            raise AuthenticationError("no profile session to switch")
        original = current.original_member_id or current.member_id
        session = SessionData(
            family_id=current.family_id,
            member_id=member_id,
            role=role,
            original_member_id=None if member_id == original else original,
            session_token=current.session_token,
        )
        self._write(response, session, self.settings.session_ttl_seconds)
        if current.session_token:
            self.store.update_active_session_member(current.session_token, member_id)
        logger.info(
            "session_profile_switched",
            family_id=current.family_id,
            member_id=member_id,
            impersonating=session.is_impersonating,
        )
        return session

    def downgrade_session(self, request: Request, response: Response) -> SessionData:
        current = self.get_account_session(request)
        if not current:
            raise AuthenticationError("no session to downgrade")
        session = SessionData(
            family_id=current.family_id, session_token=current.session_token
        )
        self._write(response, session, self.settings.session_ttl_seconds)
        if current.session_token:
            self.store.update_active_session_member(current.session_token, None)
        return session

    def clear_session(self, request: Request, response: Response) -> None:
        current = self.get_session(request)
        if current and current.session_token:
            self.store.delete_active_session(current.session_token)
        response.delete_cookie(
            SESSION_COOKIE_NAME,
            path="/",
            httponly=True,
            secure=self.settings.is_production,
            samesite="lax",
        )
