from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from fastapi import Request
from fastapi.responses import RedirectResponse

from familyhub.logging import get_logger
from familyhub.service.session import (
    SESSION_COOKIE_NAME,
    SessionData,
    is_account_session,
    is_full_session,
)

logger = get_logger(__name__)

PUBLIC_PREFIXES = (
    "/setup",
    "/hub",
    "/api",
    "/v1",
    "/static",
    "/icons",
    "/offline",
    "/healthz",
    "/favicon.ico",
    "/manifest.json",
    "/sw.js",
)
TOKEN_PATHS = ("/verify-email", "/reset-password", "/forgot-password", "/verify-2fa")
AUTH_PATHS = ("/login", "/register")
ACCOUNT_ONLY_PATHS = ("/profiles",)

LOGIN_PATH = "/login"
PROFILES_PATH = "/profiles"
HOME_PATH = "/"


class PathCategory(str, Enum):
    PUBLIC = "public"
    TOKEN = "token"
    AUTH = "auth"
    ACCOUNT_ONLY = "account_only"
    PROTECTED = "protected"


class SessionLevel(int, Enum):
    NONE = 0
    ACCOUNT = 1
    FULL = 2


@dataclass(frozen=True)
class GateDecision:
    allow: bool
    redirect_to: Optional[str] = None


ALLOW = GateDecision(True)

_TABLE = {
    PathCategory.AUTH: {
        SessionLevel.NONE: ALLOW,
        SessionLevel.ACCOUNT: GateDecision(False, PROFILES_PATH),
        SessionLevel.FULL: GateDecision(False, HOME_PATH),
    },
    PathCategory.ACCOUNT_ONLY: {
        SessionLevel.NONE: GateDecision(False, LOGIN_PATH),
        SessionLevel.ACCOUNT: ALLOW,
        SessionLevel.FULL: GateDecision(False, HOME_PATH),
    },
    PathCategory.PROTECTED: {
        SessionLevel.NONE: GateDecision(False, LOGIN_PATH),
        SessionLevel.ACCOUNT: GateDecision(False, PROFILES_PATH),
        SessionLevel.FULL: ALLOW,
    },
}


def _matches(path: str, prefixes: Iterable[str]) -> bool:
    """Segment-aware prefix match: ``/hub`` covers ``/hub`` and ``/hub/x`` but not ``/hubs``."""
    for prefix in prefixes:
        if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
            return True
    return False


def classify_path(path: str) -> PathCategory:
    if _matches(path, PUBLIC_PREFIXES):
        return PathCategory.PUBLIC
    if _matches(path, TOKEN_PATHS):
        return PathCategory.TOKEN
    if _matches(path, AUTH_PATHS):
        return PathCategory.AUTH
    if _matches(path, ACCOUNT_ONLY_PATHS):
        return PathCategory.ACCOUNT_ONLY
    return PathCategory.PROTECTED


def session_level(session: Optional[SessionData]) -> SessionLevel:
    if is_full_session(session):
        return SessionLevel.FULL
    if is_account_session(session):
        return SessionLevel.ACCOUNT
    return SessionLevel.NONE


def decide(path: str, level: SessionLevel) -> GateDecision:
    category = classify_path(path)
    if category in (PathCategory.PUBLIC, PathCategory.TOKEN):
        return ALLOW
    return _TABLE[category][SessionLevel(level)]


async def gatekeeper_middleware(request: Request, call_next):
    """Redirect page requests that do not fit the caller's session level."""
    path = request.url.path
    category = classify_path(path)
    if category in (PathCategory.PUBLIC, PathCategory.TOKEN):
        return await call_next(request)

    level = SessionLevel.NONE
    raw = request.cookies.get(SESSION_COOKIE_NAME)
    if raw:
        from familyhub.service.runtime import get_runtime

        try:
            level = session_level(get_runtime().sessions.read_cookie(raw))
        except Exception as exc:
            logger.warning("gatekeeper_session_decode_failed", error=str(exc))
            level = SessionLevel.NONE

    decision = decide(path, level)
    if decision.allow:
        return await call_next(request)
    logger.debug(
        "gatekeeper_redirect",
        path=path,
        level=level.name,
        redirect_to=decision.redirect_to,
    )
    return RedirectResponse(decision.redirect_to, status_code=307)
